"""
Configuration package for callbridge.

This package contains:
- loaders: YAML file loading and parsing
- security: API key injection from the environment
- defaults: environment overrides
- settings: pydantic models, load_config and runtime validation
"""

from callbridge.config.settings import (
    AppConfig,
    AudioConfig,
    BackendConfig,
    ConversationConfig,
    DEFAULT_CONFIG_PATH,
    LoggingConfig,
    STTConfig,
    TelephonyConfig,
    TransportConfig,
    load_config,
    validate_runtime_config,
)

__all__ = [
    'AppConfig',
    'AudioConfig',
    'BackendConfig',
    'ConversationConfig',
    'DEFAULT_CONFIG_PATH',
    'LoggingConfig',
    'STTConfig',
    'TelephonyConfig',
    'TransportConfig',
    'load_config',
    'validate_runtime_config',
]
