"""
Core data models for the call orchestration core.

The guard flags that keep duplicate telephony notifications idempotent live on
CallSession rather than in module globals, so every check-and-set happens on
the one object the orchestrator owns for the current call.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
import random
import string
import time

from .mic import MicOwnership
from .timer import IntervalTimer


class TelephonyState(str, Enum):
    """Normalised telephony classification fed to the state machine."""
    IDLE = "idle"
    RINGING = "ringing"
    ACTIVE = "active"


class CallState(str, Enum):
    """Orchestrator state as shown to the presentation layer."""
    IDLE = "idle"
    INCOMING = "incoming"
    ACTIVE = "active"
    RECORDING = "recording"
    AI_SPEAKING = "ai_speaking"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class TurnRole(str, Enum):
    CALLER = "caller"
    ASSISTANT = "assistant"


AUDIO_RESPONSE_PLACEHOLDER = "[audio response]"


def new_session_id(now_ms: Optional[int] = None) -> str:
    """Generate a stream session id: ``session_<epoch ms>_<9 base36 chars>``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"session_{now_ms}_{suffix}"


@dataclass(frozen=True)
class AudioChunk:
    """A bounded, immutable buffer of captured PCM."""
    data: bytes
    sample_rate: int = 16000
    channels: int = 1
    format: str = "pcm16"
    captured_at: float = field(default_factory=time.time)

    @property
    def duration_ms(self) -> float:
        bytes_per_sample = 1 if self.format in ("ulaw", "mulaw", "alaw") else 2
        frame_bytes = bytes_per_sample * max(1, self.channels)
        if not self.sample_rate:
            return 0.0
        return (len(self.data) / frame_bytes) * 1000.0 / self.sample_rate

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ConversationTurn:
    role: TurnRole
    text: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role.value, "text": self.text, "timestamp": self.timestamp}


@dataclass
class StreamSession:
    """One transport session lifetime, 1:1 with a streaming CallSession."""
    session_id: str = field(default_factory=new_session_id)
    connection_state: ConnectionState = ConnectionState.CONNECTING
    reconnect_attempt: int = 0


@dataclass
class CallSession:
    """Complete orchestrator state for the one live call."""
    call_id: str
    remote_number: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    state: CallState = CallState.INCOMING
    classification: TelephonyState = TelephonyState.RINGING

    # Guard flags
    answering: bool = False
    in_progress: bool = False
    teardown_done: bool = False
    ai_path_failed: bool = False

    # AI path
    is_connected: bool = False
    turn_count: int = 0
    last_transcription: str = ""
    last_error: Optional[str] = None
    active_since: Optional[float] = None

    mic: MicOwnership = field(default_factory=MicOwnership)
    stream: Optional[StreamSession] = None
    chunk_timer: Optional[IntervalTimer] = None

    @property
    def duration_seconds(self) -> int:
        if self.active_since is None:
            return 0
        return max(0, int(time.time() - self.active_since))

    @property
    def live(self) -> bool:
        return not self.teardown_done and self.classification is TelephonyState.ACTIVE

    def next_turn(self) -> int:
        self.turn_count += 1
        return self.turn_count
