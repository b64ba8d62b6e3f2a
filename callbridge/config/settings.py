"""
Configuration models for callbridge.

Pydantic v2 models validate the YAML configuration after secrets have been
injected from the environment and environment overrides applied.
"""

import os
from typing import Literal, Optional

import structlog
from pydantic import BaseModel, Field

from callbridge.config.loaders import resolve_config_path, load_yaml_with_env_expansion
from callbridge.config.security import inject_stt_credentials, inject_backend_credentials
from callbridge.config.defaults import (
    apply_mode_defaults,
    apply_endpoint_defaults,
    apply_timing_defaults,
)

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/callbridge.yaml"


class TelephonyConfig(BaseModel):
    auto_answer: bool = Field(default=True)
    # Settle delay between the ringing notification and the answer command
    answer_delay_sec: float = Field(default=0.5, ge=0.0)
    # Watchdog poll of get_state(); push notifications can be dropped by the platform
    poll_interval_sec: float = Field(default=2.0, gt=0.0)


class AudioConfig(BaseModel):
    sample_rate: int = Field(default=16000)
    channels: int = Field(default=1)
    format: str = Field(default="pcm16")
    playback_sample_rate: int = Field(default=16000)
    playback_chunk_ms: int = Field(default=20, gt=0)
    # Wait for the in-call audio path to stabilise before capture starts
    settle_delay_sec: float = Field(default=0.5, ge=0.0)


class ConversationConfig(BaseModel):
    chunk_interval_sec: float = Field(default=5.0, gt=0.0)
    history_limit: int = Field(default=6, ge=1)
    # Tick used by the chunk loop while playback owns the microphone
    paused_tick_sec: float = Field(default=0.1, gt=0.0)


class TransportConfig(BaseModel):
    url: str = Field(default="ws://127.0.0.1:8000/api/v1/streaming/ws")
    max_reconnect_attempts: int = Field(default=5, ge=1)
    reconnect_delay_sec: float = Field(default=2.0, ge=0.0)
    connect_timeout_sec: float = Field(default=10.0, gt=0.0)


class STTConfig(BaseModel):
    provider: Literal["openai", "groq"] = Field(default="openai")
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model: Optional[str] = None
    language: Optional[str] = Field(default="en")
    request_timeout_sec: float = Field(default=15.0, gt=0.0)

    def resolved_url(self) -> str:
        if self.base_url:
            return self.base_url
        if self.provider == "groq":
            return "https://api.groq.com/openai/v1/audio/transcriptions"
        return "https://api.openai.com/v1/audio/transcriptions"

    def resolved_model(self) -> str:
        if self.model:
            return self.model
        return "whisper-large-v3" if self.provider == "groq" else "whisper-1"


class BackendConfig(BaseModel):
    main_url: Optional[str] = None
    interim_url: Optional[str] = None
    api_key: Optional[str] = None
    request_timeout_sec: float = Field(default=30.0, gt=0.0)

    @property
    def dual_endpoint(self) -> bool:
        return bool(self.interim_url)


class LoggingConfig(BaseModel):
    level: str = Field(default="info")  # debug|info|warning|error|critical


class AppConfig(BaseModel):
    mode: Literal["streaming", "batched"] = Field(default="streaming")
    telephony: TelephonyConfig = Field(default_factory=TelephonyConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    stt: STTConfig = Field(default_factory=STTConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str = DEFAULT_CONFIG_PATH) -> AppConfig:
    """
    Load and validate configuration from a YAML file.

    Args:
        path: Path to YAML configuration file (absolute or relative to project root)

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
        pydantic.ValidationError: If values fail validation
    """
    # Phase 1: Load YAML file with environment variable expansion
    path = resolve_config_path(path)
    config_data = load_yaml_with_env_expansion(path)

    # Phase 2: Security - credentials from environment variables only
    inject_stt_credentials(config_data)
    inject_backend_credentials(config_data)

    # Phase 3: Environment overrides
    apply_mode_defaults(config_data)
    apply_endpoint_defaults(config_data)
    apply_timing_defaults(config_data)

    # Phase 4: Validate and return
    return AppConfig(**config_data)


def validate_runtime_config(config: AppConfig) -> tuple[list[str], list[str]]:
    """Check a loaded configuration for problems that would break calls.

    Returns:
        (errors, warnings): errors should block startup, warnings are logged.
    """
    errors = []
    warnings = []

    if config.mode == "batched":
        if not config.backend.main_url:
            errors.append("Batched mode requires backend.main_url (or BACKEND_URL)")
        if not config.stt.api_key:
            errors.append("Batched mode requires an STT key (GROQ_API_KEY or OPENAI_API_KEY)")
    else:
        if not config.transport.url.startswith(("ws://", "wss://")):
            errors.append(f"transport.url must be a ws:// or wss:// URL, got {config.transport.url!r}")
        if config.transport.url.startswith("ws://") and not config.transport.url.startswith(("ws://127.", "ws://localhost")):
            warnings.append("Transport uses unencrypted ws:// to a non-local host")

    if config.conversation.chunk_interval_sec < 1.0:
        warnings.append(
            f"Chunk interval very small: {config.conversation.chunk_interval_sec}s (utterances will be cut mid-sentence)"
        )
    if config.telephony.poll_interval_sec > 5.0:
        warnings.append(
            f"Watchdog poll interval {config.telephony.poll_interval_sec}s is slow; missed call-ended events will linger"
        )
    if os.getenv('LOG_LEVEL', 'info').lower() == 'debug':
        warnings.append("Debug logging enabled (logs transcripts of callers)")

    return errors, warnings
