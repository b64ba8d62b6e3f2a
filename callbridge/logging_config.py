"""
Structured logging for callbridge.

structlog renders every record (including stdlib records from websockets and
aiohttp) as JSON by default or as console text when ``LOG_FORMAT=console``.
Each event carries the service name, the emitting component and, while a call
is live, its call id as ``correlation_id``. Anything that looks like a
credential is redacted before rendering.
"""

import contextvars
import logging
import os
import sys
import uuid

import structlog

SERVICE_NAME = 'callbridge'

_correlation_id = contextvars.ContextVar('callbridge_correlation_id', default=None)

_REDACTED = '***REDACTED***'

# Compared after lowercasing and dropping '_' / '-'; a key matches when it
# equals or ends with one of these
_SECRET_SUFFIXES = (
    'apikey', 'apikeys',
    'token', 'accesstoken', 'refreshtoken', 'authtoken', 'bearer',
    'password', 'passwd', 'pwd',
    'authorization',
    'credential', 'credentials', 'secret', 'secrets',
    'privatekey', 'clientsecret',
)

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ('websockets', 'aiohttp', 'asyncio')


# Correlation id ---------------------------------------------------------------

def get_correlation_id():
    return _correlation_id.get()


def set_correlation_id(value=None):
    """Bind ``value`` (a fresh uuid when omitted) to the current context."""
    value = value or str(uuid.uuid4())
    _correlation_id.set(value)
    return value


def clear_correlation_id():
    _correlation_id.set(None)


def add_correlation_id(logger, method_name, event_dict):
    correlation_id = _correlation_id.get()
    if correlation_id:
        event_dict.setdefault('correlation_id', correlation_id)
    return event_dict


def add_service_context(logger, method_name, event_dict):
    event_dict['service'] = SERVICE_NAME
    if not event_dict.get('component'):
        event_dict['component'] = event_dict.get('logger') or getattr(logger, 'name', None) or 'unknown'
    return event_dict


# Secret redaction ------------------------------------------------------------

def _looks_secret(key) -> bool:
    flat = str(key).lower().replace('_', '').replace('-', '')
    return flat.endswith(_SECRET_SUFFIXES)


def _mask(value):
    if value is None or isinstance(value, bool) or value == '':
        return value
    if isinstance(value, (list, tuple)):
        return [_mask(item) for item in value]
    if isinstance(value, str) and len(value) > 4:
        # Two leading characters ("sk", "gs", "Be") help tell keys apart
        return value[:2] + _REDACTED
    return _REDACTED


def _scrub(obj):
    if isinstance(obj, dict):
        return {k: (_mask(v) if _looks_secret(k) else _scrub(v)) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_scrub(item) for item in obj]
    return obj


def sanitize_secrets(logger, method_name, event_dict):
    """Redact STT/backend keys, bearer headers and passwords, recursively."""
    return _scrub(event_dict)


# Setup -------------------------------------------------------------------------

def configure_logging(log_level="INFO"):
    """
    Install the structlog pipeline on the root logger.

    Environment overrides:
      - LOG_LEVEL: debug|info|warning|error|critical
      - LOG_FORMAT: json|console (default json)
      - LOG_COLOR: 0|1, console only (default 1)
    """
    level_name = (os.getenv('LOG_LEVEL') or str(log_level)).upper()
    level = getattr(logging, level_name, logging.INFO)
    console = os.getenv('LOG_FORMAT', 'json').strip().lower() == 'console'
    colors = os.getenv('LOG_COLOR', '1').strip().lower() not in ('0', 'false')

    shared = [
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt='iso'),
    ]
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            *shared,
            add_service_context,
            add_correlation_id,
            sanitize_secrets,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog.dev.ConsoleRenderer(colors=colors) if console else structlog.processors.JSONRenderer()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str):
    return structlog.get_logger(name)
