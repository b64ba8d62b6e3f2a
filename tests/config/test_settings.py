"""
Tests for the pydantic config models, load_config and validate_runtime_config.
"""

import pytest
from pydantic import ValidationError

from callbridge.config import AppConfig, load_config, validate_runtime_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "CALLBRIDGE_MODE",
        "TRANSPORT_URL",
        "BACKEND_URL",
        "BACKEND_INTERIM_URL",
        "CHUNK_INTERVAL_SEC",
        "POLL_INTERVAL_SEC",
        "AUTO_ANSWER",
        "GROQ_API_KEY",
        "OPENAI_API_KEY",
        "BACKEND_API_KEY",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = AppConfig()

    assert config.mode == "streaming"
    assert config.conversation.chunk_interval_sec == 5.0
    assert config.conversation.history_limit == 6
    assert config.transport.max_reconnect_attempts == 5
    assert config.transport.reconnect_delay_sec == 2.0
    assert config.audio.playback_sample_rate == 16000
    assert config.telephony.answer_delay_sec == 0.5
    assert config.backend.dual_endpoint is False


def test_invalid_mode_rejected():
    with pytest.raises(ValidationError):
        AppConfig(mode="hybrid")


def test_non_positive_interval_rejected():
    with pytest.raises(ValidationError):
        AppConfig(conversation={"chunk_interval_sec": 0})


def test_stt_provider_resolution():
    groq = AppConfig(stt={"provider": "groq"}).stt
    openai = AppConfig().stt

    assert groq.resolved_url() == "https://api.groq.com/openai/v1/audio/transcriptions"
    assert groq.resolved_model() == "whisper-large-v3"
    assert openai.resolved_url() == "https://api.openai.com/v1/audio/transcriptions"
    assert openai.resolved_model() == "whisper-1"


def test_load_shipped_config():
    config = load_config()

    assert config.mode == "streaming"
    assert config.transport.url.startswith("ws://")
    assert config.stt.api_key is None


def test_load_config_with_env(tmp_path, monkeypatch):
    config_file = tmp_path / "cb.yaml"
    config_file.write_text("mode: streaming\nstt:\n  api_key: leaked\n")
    monkeypatch.setenv("CALLBRIDGE_MODE", "batched")
    monkeypatch.setenv("BACKEND_URL", "https://ai.example.com/ask")
    monkeypatch.setenv("BACKEND_INTERIM_URL", "https://ai.example.com/quick")
    monkeypatch.setenv("GROQ_API_KEY", "gsk_env")

    config = load_config(str(config_file))

    assert config.mode == "batched"
    assert config.backend.main_url == "https://ai.example.com/ask"
    assert config.backend.dual_endpoint is True
    assert config.stt.provider == "groq"
    assert config.stt.api_key == "gsk_env"


class TestValidateRuntimeConfig:
    def test_batched_requires_backend_and_key(self):
        errors, _ = validate_runtime_config(AppConfig(mode="batched"))

        assert any("main_url" in e for e in errors)
        assert any("STT key" in e for e in errors)

    def test_streaming_requires_ws_url(self):
        errors, _ = validate_runtime_config(AppConfig(transport={"url": "http://example.com"}))

        assert errors

    def test_valid_streaming_config(self):
        errors, warnings = validate_runtime_config(AppConfig())

        assert errors == []
        assert warnings == []

    def test_warnings(self):
        config = AppConfig(
            transport={"url": "ws://ai.example.com/ws"},
            conversation={"chunk_interval_sec": 0.5},
            telephony={"poll_interval_sec": 10},
        )
        errors, warnings = validate_runtime_config(config)

        assert errors == []
        assert len(warnings) == 3
