import base64
import json

import aiohttp
import pytest

from callbridge.config import BackendConfig, STTConfig
from callbridge.core.models import AudioChunk
from callbridge.errors import BackendError, TranscriptionError
from callbridge.processors.backends import HttpConversationBackend, WhisperTranscriber


class FakeResponse:
    def __init__(self, status=200, body=b"", content_type="application/json"):
        self.status = status
        self._body = body
        self.headers = {"Content-Type": content_type}

    async def read(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.requests = []
        self.closed = False

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self):
        self.closed = True


def _json(payload):
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def chunk():
    return AudioChunk(data=b"\x01\x00" * 1600)


@pytest.mark.asyncio
async def test_transcriber_posts_wav_form(chunk):
    session = FakeSession(FakeResponse(body=_json({"text": "  hello there "})))
    stt = WhisperTranscriber(STTConfig(provider="groq", api_key="gsk-test"), session_factory=lambda: session)

    assert await stt.transcribe(chunk) == "hello there"

    url, kwargs = session.requests[0]
    assert url == STTConfig(provider="groq").resolved_url()
    assert isinstance(kwargs["data"], aiohttp.FormData)
    assert kwargs["headers"]["Authorization"] == "Bearer gsk-test"


@pytest.mark.asyncio
async def test_transcriber_empty_chunk_skips_request():
    session = FakeSession()
    stt = WhisperTranscriber(STTConfig(api_key="sk-test"), session_factory=lambda: session)

    assert await stt.transcribe(AudioChunk(data=b"")) == ""
    assert session.requests == []


@pytest.mark.asyncio
async def test_transcriber_without_key_fails(chunk):
    stt = WhisperTranscriber(STTConfig(api_key=None), session_factory=FakeSession)

    with pytest.raises(TranscriptionError):
        await stt.transcribe(chunk)


@pytest.mark.asyncio
async def test_transcriber_http_error(chunk):
    session = FakeSession(FakeResponse(status=503, body=b"overloaded"))
    stt = WhisperTranscriber(STTConfig(api_key="sk-test"), session_factory=lambda: session)

    with pytest.raises(TranscriptionError):
        await stt.transcribe(chunk)


@pytest.mark.asyncio
async def test_transcriber_client_error(chunk):
    session = FakeSession(error=aiohttp.ClientConnectionError("reset"))
    stt = WhisperTranscriber(STTConfig(api_key="sk-test"), session_factory=lambda: session)

    with pytest.raises(TranscriptionError):
        await stt.transcribe(chunk)


def test_transcript_parsing():
    assert WhisperTranscriber._parse_transcript(_json({"text": "ok"})) == "ok"
    assert WhisperTranscriber._parse_transcript(_json({"segments": []})) == ""
    assert WhisperTranscriber._parse_transcript(b"plain words\n") == "plain words"


@pytest.mark.asyncio
async def test_backend_request_body_and_json_reply():
    audio = b"\x02\x00" * 10
    body = _json({"audio": base64.b64encode(audio).decode("ascii"), "text": "Sure.", "sampleRate": 24000})
    session = FakeSession(FakeResponse(body=body))
    config = BackendConfig(main_url="http://backend/ask", api_key="secret")
    backend = HttpConversationBackend(config, session_factory=lambda: session)

    reply = await backend.respond("What time is it?", "session_1_abc")

    assert reply.audio == audio
    assert reply.text == "Sure."
    assert reply.sample_rate == 24000
    url, kwargs = session.requests[0]
    assert url == "http://backend/ask"
    assert kwargs["json"] == {"question": "What time is it?", "type": "final", "session_id": "session_1_abc"}
    assert kwargs["headers"]["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_backend_raw_audio_reply():
    session = FakeSession(FakeResponse(body=b"RIFF....", content_type="audio/wav"))
    backend = HttpConversationBackend(BackendConfig(main_url="http://backend/ask"), session_factory=lambda: session)

    reply = await backend.greeting("s")

    assert reply.audio == b"RIFF...."
    assert reply.text is None
    assert session.requests[0][1]["json"]["type"] == "greeting"
    assert "Authorization" not in session.requests[0][1]["headers"]


@pytest.mark.asyncio
async def test_backend_interim_requires_url():
    backend = HttpConversationBackend(BackendConfig(main_url="http://backend/ask"), session_factory=FakeSession)

    with pytest.raises(BackendError):
        await backend.interim("hi", "s")


@pytest.mark.asyncio
async def test_backend_error_status():
    session = FakeSession(FakeResponse(status=500, body=b"boom"))
    backend = HttpConversationBackend(BackendConfig(main_url="http://backend/ask"), session_factory=lambda: session)

    with pytest.raises(BackendError):
        await backend.respond("hi", "s")


def test_reply_parsing_rejects_bad_payloads():
    with pytest.raises(BackendError):
        HttpConversationBackend._parse_reply(b"{nope", "application/json")
    with pytest.raises(BackendError):
        HttpConversationBackend._parse_reply(_json([1, 2]), "application/json")
    with pytest.raises(BackendError):
        HttpConversationBackend._parse_reply(_json({"audio": "***"}), "application/json")

    text_only = HttpConversationBackend._parse_reply(_json({"text": "ok", "sample_rate": 0}), "application/json")
    assert text_only.audio == b""
    assert text_only.sample_rate is None


@pytest.mark.asyncio
async def test_close_releases_session():
    session = FakeSession(FakeResponse(body=_json({"text": "x"})))
    backend = HttpConversationBackend(BackendConfig(main_url="http://backend/ask"), session_factory=lambda: session)
    await backend.respond("hi", "s")

    await backend.close()

    assert session.closed
