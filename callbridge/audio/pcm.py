"""PCM helpers shared by the device adapter and the HTTP backends."""

from __future__ import annotations

import wave
from io import BytesIO
from typing import Iterable, Tuple


def bytes_per_sample(encoding: str) -> int:
    fmt = (encoding or "").lower()
    if fmt in ("ulaw", "mulaw", "mu-law", "g711_ulaw", "alaw"):
        return 1
    return 2


def chunk_audio(audio_bytes: bytes, encoding: str, sample_rate: int, chunk_ms: int) -> Iterable[bytes]:
    if not audio_bytes:
        return
    width = bytes_per_sample(encoding)
    frame_size = max(width, int(sample_rate * (chunk_ms / 1000.0) * width))
    # Keep frames sample-aligned
    frame_size -= frame_size % width
    for idx in range(0, len(audio_bytes), frame_size):
        yield audio_bytes[idx : idx + frame_size]


def duration_seconds(audio_bytes: bytes, sample_rate: int, encoding: str = "pcm16", channels: int = 1) -> float:
    if not audio_bytes or sample_rate <= 0:
        return 0.0
    frame_bytes = bytes_per_sample(encoding) * max(1, channels)
    return (len(audio_bytes) / frame_bytes) / float(sample_rate)


def pcm16_to_wav(audio_pcm16: bytes, sample_rate_hz: int, channels: int = 1) -> bytes:
    buf = BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate_hz))
        wf.writeframes(audio_pcm16)
    return buf.getvalue()


def is_wav(payload: bytes) -> bool:
    return len(payload) >= 12 and payload[:4] == b"RIFF" and payload[8:12] == b"WAVE"


def unwrap_wav(payload: bytes, default_rate: int) -> Tuple[bytes, int]:
    """Return (pcm, sample_rate). Non-WAV payloads are passed through as PCM."""
    if not is_wav(payload):
        return payload, default_rate
    with wave.open(BytesIO(payload), "rb") as wf:
        rate = wf.getframerate()
        frames = wf.readframes(wf.getnframes())
    return frames, rate
