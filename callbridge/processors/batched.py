"""
Batched strategy: transcribe each fixed-interval chunk, ask the conversation
backend for a reply and play it locally.

With an interim endpoint configured both requests run concurrently for the
same utterance. The interim reply always plays first: a final reply that is
ready early waits for it, and an interim that finishes first is followed by
the final as soon as it arrives. Ownership is held across both so there is
never more than one playback in flight.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from callbridge.core.models import AUDIO_RESPONSE_PLACEHOLDER, AudioChunk, CallSession, TurnRole, new_session_id
from callbridge.processors.backends import BackendReply, ConversationBackend, Transcriber
from callbridge.processors.base import TurnHost, TurnProcessor

logger = structlog.get_logger(__name__)


class BatchedTurnProcessor(TurnProcessor):
    name = "batched"
    uses_chunk_loop = True

    def __init__(
        self,
        transcriber: Transcriber,
        backend: ConversationBackend,
        *,
        dual_endpoint: bool = False,
        greeting: bool = True,
    ):
        self.transcriber = transcriber
        self.backend = backend
        self.dual_endpoint = dual_endpoint
        self.greeting = greeting
        self.session_id: Optional[str] = None

    async def start(self, host: TurnHost, call: CallSession) -> bool:
        self.session_id = new_session_id()
        if not self.greeting:
            return True
        try:
            reply = await self.backend.greeting(self.session_id)
            await self._speak(host, call, reply)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # A missing greeting does not block the conversation
            logger.warning("Greeting failed", call_id=call.call_id, error=str(exc))
        return True

    async def handle_chunk(self, host: TurnHost, call: CallSession, chunk: AudioChunk) -> None:
        text = await self.transcriber.transcribe(chunk)
        if not host.is_current(call):
            logger.debug("Discarding transcription for ended call", call_id=call.call_id)
            return
        text = (text or "").strip()
        if not text:
            logger.debug("No speech in chunk", call_id=call.call_id, duration_ms=round(chunk.duration_ms))
            return

        host.set_transcription(call, text)
        host.add_turn(call, TurnRole.CALLER, text)

        if self.dual_endpoint:
            await self._respond_dual(host, call, text)
        else:
            reply = await self.backend.respond(text, self.session_id or call.call_id)
            await self._speak(host, call, reply)

    async def stop(self, call: CallSession) -> None:
        self.session_id = None

    async def _respond_dual(self, host: TurnHost, call: CallSession, text: str) -> None:
        session_id = self.session_id or call.call_id
        interim_task = asyncio.create_task(self.backend.interim(text, session_id))
        final_task = asyncio.create_task(self.backend.respond(text, session_id))
        try:
            await asyncio.wait({interim_task, final_task}, return_when=asyncio.FIRST_COMPLETED)
            if not interim_task.done():
                # Final is ready first; it still plays after the interim
                logger.debug("Final reply ready before interim", call_id=call.call_id)
                await asyncio.wait({interim_task})

            interim = self._interim_result(interim_task, call)
            if not host.is_current(call):
                return
            async with host.speaking(call) as granted:
                if not granted:
                    return
                if interim is not None and interim.audio:
                    await self._play(host, call, interim)
                final = await final_task
                if host.is_current(call):
                    await self._play(host, call, final)
        finally:
            for task in (interim_task, final_task):
                if not task.done():
                    task.cancel()

    @staticmethod
    def _interim_result(task: "asyncio.Task[BackendReply]", call: CallSession) -> Optional[BackendReply]:
        exc = task.exception()
        if exc is not None:
            logger.warning("Interim reply failed; waiting for final", call_id=call.call_id, error=str(exc))
            return None
        return task.result()

    async def _speak(self, host: TurnHost, call: CallSession, reply: BackendReply) -> None:
        if not host.is_current(call):
            return
        if not reply.audio:
            if reply.text:
                host.add_turn(call, TurnRole.ASSISTANT, reply.text)
            return
        async with host.speaking(call) as granted:
            if granted:
                await self._play(host, call, reply)

    @staticmethod
    async def _play(host: TurnHost, call: CallSession, reply: BackendReply) -> None:
        if reply.audio:
            await host.audio.play(reply.audio, reply.sample_rate)
        if reply.audio or reply.text:
            host.add_turn(call, TurnRole.ASSISTANT, reply.text or AUDIO_RESPONSE_PLACEHOLDER)
