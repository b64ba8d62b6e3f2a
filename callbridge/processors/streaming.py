"""Streaming strategy: forward capture continuously, let the backend drive turns."""

from __future__ import annotations

from typing import Callable, Optional

import structlog

from callbridge.config import AudioConfig
from callbridge.core import events
from callbridge.core.models import AUDIO_RESPONSE_PLACEHOLDER, AudioChunk, CallSession, TurnRole, new_session_id
from callbridge.processors.base import TurnHost, TurnProcessor
from callbridge.transport.codec import MessageType, TransportMessage
from callbridge.transport.session import TransportSession

logger = structlog.get_logger(__name__)


class StreamingTurnProcessor(TurnProcessor):
    name = "streaming"
    uses_chunk_loop = False

    def __init__(
        self,
        transport_factory: Callable[[], TransportSession],
        *,
        playback_sample_rate: int = 16000,
        audio_config: Optional[AudioConfig] = None,
    ):
        self._transport_factory = transport_factory
        self.audio_config = audio_config or AudioConfig()
        self.playback_sample_rate = playback_sample_rate
        self.transport: Optional[TransportSession] = None

    async def start(self, host: TurnHost, call: CallSession) -> bool:
        transport = self._transport_factory()
        call_id = call.call_id
        transport.on_message = lambda message: host.post(events.TransportMessage(call_id, message))
        transport.on_state = lambda connected: host.post(events.TransportStateChanged(call_id, connected))
        transport.on_failure = lambda reason: host.post(events.TransportFailed(call_id, reason))
        self.transport = transport

        if not await transport.connect(new_session_id()):
            self.transport = None
            return False
        call.stream = transport.stream
        return True

    async def handle_chunk(self, host: TurnHost, call: CallSession, chunk: AudioChunk) -> None:
        if self.transport is None:
            return
        await self.transport.send_audio(chunk)

    async def handle_frame(self, host: TurnHost, call: CallSession, frame: bytes) -> None:
        if self.transport is None or not frame:
            return
        capture = self.audio_config
        chunk = AudioChunk(
            data=frame,
            sample_rate=capture.sample_rate,
            channels=capture.channels,
            format=capture.format,
        )
        await self.transport.send_audio(chunk)

    async def handle_message(self, host: TurnHost, call: CallSession, message: TransportMessage) -> None:
        if message.type is MessageType.TRANSCRIPTION:
            text = message.text
            if text:
                host.set_transcription(call, text)
                host.add_turn(call, TurnRole.CALLER, text)
            return

        if message.type is MessageType.RESPONSE:
            if not message.audio:
                if message.text:
                    host.add_turn(call, TurnRole.ASSISTANT, message.text)
                return
            async with host.speaking(call) as granted:
                if not granted:
                    logger.warning("Reply audio dropped, playback not granted", call_id=call.call_id)
                    return
                await host.audio.play(message.audio, message.sample_rate or self.playback_sample_rate)
                host.add_turn(call, TurnRole.ASSISTANT, message.text or AUDIO_RESPONSE_PLACEHOLDER)
            return

        if message.type is MessageType.ERROR:
            detail = message.text or str(message.data.get("error") or "backend error")
            logger.warning("Backend reported error", call_id=call.call_id, error=detail)
            host.set_error(call, detail)
            return

        if message.type is MessageType.CONNECTION_ACK:
            logger.info("Transport session acknowledged", call_id=call.call_id, session_id=message.session_id)
            return

        logger.debug("Control message received", call_id=call.call_id, data=message.data)

    async def stop(self, call: CallSession) -> None:
        transport, self.transport = self.transport, None
        if transport is not None:
            await transport.disconnect()
