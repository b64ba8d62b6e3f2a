"""
Default value application for configuration.

This module handles environment variable overrides for the settings an
operator most often changes per device:
- Turn processing mode (streaming | batched)
- Transport and backend endpoints
- Chunk interval, watchdog poll interval and auto-answer
"""

import os
from typing import Any, Dict


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    block = config_data.get(name)
    if not isinstance(block, dict):
        block = {}
    config_data[name] = block
    return block


def _env_float(name: str):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def apply_mode_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply the turn processing mode.

    Environment variables:
    - CALLBRIDGE_MODE: 'streaming' or 'batched' (default: streaming)
    """
    mode = os.getenv('CALLBRIDGE_MODE')
    if mode:
        config_data['mode'] = mode.strip().lower()
    config_data.setdefault('mode', 'streaming')


def apply_endpoint_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply transport and backend endpoint overrides.

    Environment variables:
    - TRANSPORT_URL: websocket endpoint for streaming mode
    - BACKEND_URL: main conversation endpoint for batched mode
    - BACKEND_INTERIM_URL: interim endpoint (enables dual-endpoint responses)
    """
    transport = _section(config_data, 'transport')
    backend = _section(config_data, 'backend')

    if os.getenv('TRANSPORT_URL'):
        transport['url'] = os.environ['TRANSPORT_URL'].strip()
    if os.getenv('BACKEND_URL'):
        backend['main_url'] = os.environ['BACKEND_URL'].strip()
    if os.getenv('BACKEND_INTERIM_URL'):
        backend['interim_url'] = os.environ['BACKEND_INTERIM_URL'].strip()


def apply_timing_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply chunk interval, poll interval and auto-answer overrides.

    Environment variables:
    - CHUNK_INTERVAL_SEC
    - POLL_INTERVAL_SEC
    - AUTO_ANSWER: 0|1|true|false
    """
    conversation = _section(config_data, 'conversation')
    telephony = _section(config_data, 'telephony')

    chunk_interval = _env_float('CHUNK_INTERVAL_SEC')
    if chunk_interval is not None:
        conversation['chunk_interval_sec'] = chunk_interval

    poll_interval = _env_float('POLL_INTERVAL_SEC')
    if poll_interval is not None:
        telephony['poll_interval_sec'] = poll_interval

    auto_answer = os.getenv('AUTO_ANSWER')
    if auto_answer is not None and auto_answer.strip():
        telephony['auto_answer'] = auto_answer.strip().lower() in ('1', 'true', 'yes', 'on')
