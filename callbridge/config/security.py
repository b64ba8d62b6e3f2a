"""
Security-critical configuration injection.

SECURITY POLICY:
- API keys MUST NEVER be in YAML files
- All credentials come from environment variables only; YAML values are dropped
"""

import os
from typing import Any, Dict, Optional


def _is_nonempty_string(val: Any) -> bool:
    return isinstance(val, str) and val.strip() != ""


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    block = config_data.get(name)
    if not isinstance(block, dict):
        block = {}
    config_data[name] = block
    return block


def _first_env(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if _is_nonempty_string(value):
            return value.strip()
    return None


def inject_stt_credentials(config_data: Dict[str, Any]) -> None:
    """
    Inject the speech-to-text API key from the environment.

    Groq is preferred when GROQ_API_KEY is present (faster Whisper endpoint);
    otherwise OPENAI_API_KEY is used. The provider field follows the key that
    was found unless the YAML pins a provider explicitly.

    Environment variables:
    - GROQ_API_KEY
    - OPENAI_API_KEY
    """
    stt = _section(config_data, 'stt')
    stt.pop('api_key', None)

    pinned = (stt.get('provider') or '').strip().lower()
    groq_key = _first_env('GROQ_API_KEY')
    openai_key = _first_env('OPENAI_API_KEY')

    if pinned == 'groq':
        stt['api_key'] = groq_key
    elif pinned == 'openai':
        stt['api_key'] = openai_key
    elif groq_key:
        stt['provider'] = 'groq'
        stt['api_key'] = groq_key
    elif openai_key:
        stt['provider'] = 'openai'
        stt['api_key'] = openai_key


def inject_backend_credentials(config_data: Dict[str, Any]) -> None:
    """
    Inject the conversation backend API key (optional bearer token).

    Environment variables:
    - BACKEND_API_KEY
    """
    backend = _section(config_data, 'backend')
    backend.pop('api_key', None)
    key = _first_env('BACKEND_API_KEY')
    if key:
        backend['api_key'] = key
