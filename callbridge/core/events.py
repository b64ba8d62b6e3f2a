"""
Inbound events for the orchestrator's single dispatch loop.

Telephony push callbacks, the watchdog poll, the capture pump and the
transport all translate what they observe into one of these and post it to the
orchestrator queue instead of calling into the state machine re-entrantly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Union
import time

from .models import AudioChunk, TelephonyState

if TYPE_CHECKING:  # pragma: no cover - typing only
    from callbridge.transport.codec import TransportMessage as InboundMessage


@dataclass(frozen=True)
class TelephonyEvent:
    state: TelephonyState
    source: str = "push"  # push | poll
    remote_number: Optional[str] = None
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ChunkReady:
    call_id: str
    chunk: AudioChunk


@dataclass(frozen=True)
class TransportMessage:
    call_id: str
    message: "InboundMessage"


@dataclass(frozen=True)
class TransportStateChanged:
    call_id: str
    connected: bool


@dataclass(frozen=True)
class TransportFailed:
    call_id: str
    reason: str


@dataclass(frozen=True)
class CaptureFailed:
    call_id: str
    reason: str
    permission_denied: bool = False


CallEvent = Union[
    TelephonyEvent,
    ChunkReady,
    TransportMessage,
    TransportStateChanged,
    TransportFailed,
    CaptureFailed,
]
