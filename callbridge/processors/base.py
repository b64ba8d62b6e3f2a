"""
Turn processor contract.

A turn processor is chosen once per call and turns captured audio into
conversation turns and reply audio. It never touches MicOwnership directly:
all ownership changes go through the ``TurnHost`` (the orchestrator), which is
the only place the single-owner invariant is enforced.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncContextManager, Optional, Protocol

import structlog

from callbridge.core.models import AudioChunk, CallSession, TurnRole

if TYPE_CHECKING:  # pragma: no cover - typing only
    from callbridge.audio.device import AudioDeviceAdapter
    from callbridge.core.events import CallEvent
    from callbridge.transport.codec import TransportMessage

logger = structlog.get_logger(__name__)


class TurnHost(Protocol):
    """Callbacks the orchestrator exposes to the active processor."""

    audio: "AudioDeviceAdapter"

    def is_current(self, call: CallSession) -> bool: ...

    def post(self, event: "CallEvent") -> None: ...

    def begin_playback(self, call: CallSession) -> bool: ...

    def end_playback(self, call: CallSession) -> None: ...

    def speaking(self, call: CallSession) -> AsyncContextManager[bool]: ...

    def add_turn(self, call: CallSession, role: TurnRole, text: str) -> None: ...

    def set_transcription(self, call: CallSession, text: str) -> None: ...

    def set_error(self, call: CallSession, message: Optional[str]) -> None: ...


class TurnProcessor(ABC):
    """Strategy for one call's AI turns.

    Attributes:
        name: Strategy name used in logs and metrics
        uses_chunk_loop: True when the orchestrator should slice capture into
            fixed-interval chunks; False when raw frames are forwarded as they
            arrive
    """

    name: str = "base"
    uses_chunk_loop: bool = True

    @abstractmethod
    async def start(self, host: TurnHost, call: CallSession) -> bool:
        """Prepare the AI path for ``call``. False means the path is unavailable."""

    @abstractmethod
    async def handle_chunk(self, host: TurnHost, call: CallSession, chunk: AudioChunk) -> None:
        ...

    async def handle_frame(self, host: TurnHost, call: CallSession, frame: bytes) -> None:
        """Forward one raw capture frame. Only used when ``uses_chunk_loop`` is False."""

    async def handle_message(self, host: TurnHost, call: CallSession, message: "TransportMessage") -> None:
        logger.debug("Transport message ignored by processor", processor=self.name, type=message.type.value)

    @abstractmethod
    async def stop(self, call: CallSession) -> None:
        ...


def create_turn_processor(mode: str, **components: Any) -> TurnProcessor:
    """Build the processor for ``mode`` ("streaming" or "batched")."""
    # Local imports keep the strategies optional for each other
    if mode == "streaming":
        from callbridge.processors.streaming import StreamingTurnProcessor

        return StreamingTurnProcessor(
            transport_factory=components["transport_factory"],
            playback_sample_rate=components.get("playback_sample_rate", 16000),
            audio_config=components.get("audio_config"),
        )
    if mode == "batched":
        from callbridge.processors.batched import BatchedTurnProcessor

        return BatchedTurnProcessor(
            transcriber=components["transcriber"],
            backend=components["backend"],
            dual_endpoint=components.get("dual_endpoint", False),
            greeting=components.get("greeting", True),
        )
    raise ValueError(f"Unknown turn processor mode: {mode}")
