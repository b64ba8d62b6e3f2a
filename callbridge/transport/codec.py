"""
Wire codec for the streaming transport.

Every text frame is a JSON envelope ``{type, sessionId, data, timestamp}``.
Binary frames carry raw reply audio. Parsing never raises: unknown types and
malformed payloads are logged and dropped so a protocol addition on the
backend cannot take the call down.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from callbridge.core.models import AudioChunk

logger = structlog.get_logger(__name__)


class MessageType(str, Enum):
    AUDIO_APPEND = "audio-append"
    TRANSCRIPTION = "transcription"
    RESPONSE = "response"
    CONTROL = "control"
    ERROR = "error"
    CONNECTION_ACK = "connection-ack"


# Older backends still emit these names
TYPE_ALIASES: Dict[str, MessageType] = {
    "connection_established": MessageType.CONNECTION_ACK,
    "input_audio_buffer.append": MessageType.AUDIO_APPEND,
    "audio": MessageType.RESPONSE,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def encode_audio(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_audio(payload: str) -> bytes:
    return base64.b64decode(payload, validate=True)


class Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=_now_ms)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def build_audio_append(chunk: AudioChunk, session_id: Optional[str]) -> str:
    envelope = Envelope(
        type=MessageType.AUDIO_APPEND.value,
        session_id=session_id,
        data={
            "audio": encode_audio(chunk.data),
            "format": chunk.format,
            "sampleRate": chunk.sample_rate,
            "channels": chunk.channels,
            "timestamp": int(chunk.captured_at * 1000),
        },
    )
    return envelope.to_json()


def build_control(action: str, session_id: Optional[str], **extra: Any) -> str:
    data: Dict[str, Any] = {"action": action}
    data.update(extra)
    return Envelope(type=MessageType.CONTROL.value, session_id=session_id, data=data).to_json()


@dataclass(frozen=True)
class TransportMessage:
    """A decoded inbound message."""
    type: MessageType
    session_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    audio: Optional[bytes] = None
    timestamp: Optional[int] = None

    @property
    def text(self) -> str:
        for key in ("text", "transcript", "message"):
            value = self.data.get(key)
            if isinstance(value, str):
                return value.strip()
        return ""

    @property
    def sample_rate(self) -> Optional[int]:
        value = self.data.get("sampleRate")
        return int(value) if isinstance(value, (int, float)) and value > 0 else None


def parse_message(raw: Union[str, bytes, bytearray]) -> Optional[TransportMessage]:
    """Decode one inbound frame. Returns None for anything that should be ignored."""
    if isinstance(raw, (bytes, bytearray)):
        if not raw:
            return None
        return TransportMessage(type=MessageType.RESPONSE, audio=bytes(raw), timestamp=_now_ms())

    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Failed to decode transport payload", payload_preview=str(raw)[:64])
        return None
    if not isinstance(payload, dict):
        logger.warning("Transport payload is not an object", payload_type=type(payload).__name__)
        return None

    try:
        envelope = Envelope.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Invalid transport envelope", errors=exc.error_count())
        return None

    raw_type = envelope.type
    msg_type = TYPE_ALIASES.get(raw_type)
    if msg_type is None:
        try:
            msg_type = MessageType(raw_type)
        except ValueError:
            logger.info("Ignoring unknown transport message type", type=raw_type)
            return None

    if msg_type is MessageType.AUDIO_APPEND:
        # Only ever sent by us
        logger.debug("Ignoring echoed audio-append message")
        return None

    audio: Optional[bytes] = None
    if msg_type is MessageType.RESPONSE:
        audio_b64 = envelope.data.get("audio")
        if isinstance(audio_b64, str) and audio_b64:
            try:
                audio = decode_audio(audio_b64)
            except (binascii.Error, ValueError):
                logger.warning("Invalid base64 audio payload in response", session_id=envelope.session_id)
                return None

    return TransportMessage(
        type=msg_type,
        session_id=envelope.session_id,
        data=envelope.data,
        audio=audio,
        timestamp=envelope.timestamp,
    )
