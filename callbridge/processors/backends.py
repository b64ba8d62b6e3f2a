"""
HTTP collaborators for the batched strategy.

``WhisperTranscriber`` posts each chunk, wrapped as WAV, to an
OpenAI-compatible ``/audio/transcriptions`` endpoint (OpenAI or Groq).
``HttpConversationBackend`` asks the conversation service for a spoken reply.
Both raise from the ``CallBridgeError`` hierarchy and leave recovery to the
orchestrator.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import aiohttp
import structlog

from callbridge.audio.pcm import pcm16_to_wav
from callbridge.config import BackendConfig, STTConfig
from callbridge.core.models import AudioChunk
from callbridge.errors import BackendError, TranscriptionError

logger = structlog.get_logger(__name__)

_USER_AGENT = "callbridge/0.1"


class _HttpClient:
    """Lazily created aiohttp session shared by one collaborator."""

    def __init__(self, session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None):
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            factory = self._session_factory or aiohttp.ClientSession
            self._session = factory()
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


# Speech-to-text ------------------------------------------------------------------


class Transcriber(ABC):
    @abstractmethod
    async def transcribe(self, chunk: AudioChunk) -> str:
        """Return the chunk's text, or "" when no speech was recognised."""

    async def close(self) -> None:
        pass


class WhisperTranscriber(_HttpClient, Transcriber):
    def __init__(
        self,
        config: STTConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        super().__init__(session_factory)
        self.config = config

    async def transcribe(self, chunk: AudioChunk) -> str:
        if not chunk.data:
            return ""
        if not self.config.api_key:
            raise TranscriptionError(f"No API key configured for {self.config.provider} transcription")

        wav_bytes = pcm16_to_wav(chunk.data, chunk.sample_rate, chunk.channels)
        form = aiohttp.FormData()
        form.add_field("file", wav_bytes, filename="audio.wav", content_type="audio/wav")
        form.add_field("model", self.config.resolved_model())
        form.add_field("response_format", "json")
        if self.config.language:
            form.add_field("language", self.config.language)

        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "User-Agent": _USER_AGENT,
        }
        request_id = f"stt-{uuid.uuid4().hex[:12]}"
        session = await self._ensure_session()
        started_at = time.perf_counter()
        try:
            async with session.post(
                self.config.resolved_url(),
                data=form,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_sec),
            ) as resp:
                raw = await resp.read()
                status = resp.status
        except aiohttp.ClientError as exc:
            raise TranscriptionError(f"{self.config.provider} STT request failed: {exc}") from exc

        body_text = raw.decode("utf-8", errors="ignore")
        if status >= 400:
            logger.error(
                "STT request failed",
                request_id=request_id,
                provider=self.config.provider,
                status=status,
                body_preview=body_text[:200],
            )
            raise TranscriptionError(f"{self.config.provider} STT request failed (status {status})")

        transcript = self._parse_transcript(raw)
        logger.info(
            "STT transcript received",
            request_id=request_id,
            provider=self.config.provider,
            latency_ms=round((time.perf_counter() - started_at) * 1000.0, 2),
            transcript_preview=transcript[:80],
        )
        return transcript

    @staticmethod
    def _parse_transcript(payload: bytes) -> str:
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return payload.decode("utf-8", errors="ignore").strip()
        text = data.get("text") if isinstance(data, dict) else None
        if isinstance(text, str):
            return text.strip()
        return ""


# Conversation backend ------------------------------------------------------------


@dataclass(frozen=True)
class BackendReply:
    audio: bytes = b""
    text: Optional[str] = None
    sample_rate: Optional[int] = None


class ConversationBackend(ABC):
    @abstractmethod
    async def respond(self, utterance: str, session_id: str) -> BackendReply:
        ...

    @abstractmethod
    async def interim(self, utterance: str, session_id: str) -> BackendReply:
        ...

    @abstractmethod
    async def greeting(self, session_id: str) -> BackendReply:
        ...

    async def close(self) -> None:
        pass


class HttpConversationBackend(_HttpClient, ConversationBackend):
    """POSTs ``{question, type, session_id}`` and accepts raw audio or JSON back."""

    def __init__(
        self,
        config: BackendConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        super().__init__(session_factory)
        self.config = config

    async def respond(self, utterance: str, session_id: str) -> BackendReply:
        return await self._request(self.config.main_url, utterance, "final", session_id)

    async def interim(self, utterance: str, session_id: str) -> BackendReply:
        return await self._request(self.config.interim_url, utterance, "interim", session_id)

    async def greeting(self, session_id: str) -> BackendReply:
        return await self._request(self.config.main_url, "", "greeting", session_id)

    async def _request(self, url: Optional[str], question: str, kind: str, session_id: str) -> BackendReply:
        if not url:
            raise BackendError(f"No backend URL configured for {kind} requests")
        headers = {"User-Agent": _USER_AGENT}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        body = {"question": question, "type": kind, "session_id": session_id}

        session = await self._ensure_session()
        started_at = time.perf_counter()
        try:
            async with session.post(
                url,
                json=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_sec),
            ) as resp:
                raw = await resp.read()
                status = resp.status
                content_type = resp.headers.get("Content-Type", "")
        except aiohttp.ClientError as exc:
            raise BackendError(f"Backend {kind} request failed: {exc}") from exc

        if status >= 400:
            logger.error(
                "Backend request failed",
                kind=kind,
                session_id=session_id,
                status=status,
                body_preview=raw[:200].decode("utf-8", errors="ignore"),
            )
            raise BackendError(f"Backend {kind} request failed (status {status})")

        reply = self._parse_reply(raw, content_type)
        logger.info(
            "Backend reply received",
            kind=kind,
            session_id=session_id,
            latency_ms=round((time.perf_counter() - started_at) * 1000.0, 2),
            audio_bytes=len(reply.audio),
            has_text=bool(reply.text),
        )
        return reply

    @staticmethod
    def _parse_reply(raw: bytes, content_type: str) -> BackendReply:
        if "json" not in content_type.lower():
            return BackendReply(audio=raw)
        try:
            data: Dict[str, Any] = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise BackendError("Backend returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise BackendError("Backend returned a non-object JSON reply")

        audio = b""
        audio_b64 = data.get("audio")
        if isinstance(audio_b64, str) and audio_b64:
            try:
                audio = base64.b64decode(audio_b64, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise BackendError("Backend returned invalid base64 audio") from exc
        text = data.get("text") if isinstance(data.get("text"), str) else None
        rate = data.get("sampleRate") or data.get("sample_rate")
        return BackendReply(
            audio=audio,
            text=text,
            sample_rate=int(rate) if isinstance(rate, (int, float)) and rate > 0 else None,
        )
