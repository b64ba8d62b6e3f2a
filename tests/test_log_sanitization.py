"""
Test log sanitization.

STT and backend API keys travel through config dumps and request headers;
verify they never reach rendered logs.
"""

import logging

import structlog

from callbridge.logging_config import (
    add_correlation_id,
    clear_correlation_id,
    configure_logging,
    get_correlation_id,
    sanitize_secrets,
    set_correlation_id,
)


class TestLogSanitization:
    """Tests for secret sanitization processor."""

    def test_redact_api_key(self):
        event_dict = {
            'event': 'STT request',
            'api_key': 'gsk_1234567890abcdef',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result['api_key'] == 'gs***REDACTED***'
        assert result['event'] == 'STT request'

    def test_redact_prefixed_key_names(self):
        """Suffix match covers names like stt_api_key and backend_token."""
        event_dict = {
            'stt_api_key': 'sk-openai-key',
            'backend_token': 'tok-abcdef',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result['stt_api_key'] == 'sk***REDACTED***'
        assert result['backend_token'] == 'to***REDACTED***'

    def test_redact_authorization_header(self):
        event_dict = {
            'event': 'HTTP request',
            'headers': {
                'Authorization': 'Bearer sk-1234567890abcdef',
                'User-Agent': 'callbridge/0.1',
            },
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result['headers']['Authorization'].startswith('Be***REDACTED***')
        assert result['headers']['User-Agent'] == 'callbridge/0.1'

    def test_short_values_fully_redacted(self):
        result = sanitize_secrets(None, None, {'password': 'abc'})
        assert result['password'] == '***REDACTED***'

    def test_case_insensitive_and_hyphenated(self):
        event_dict = {
            'API_KEY': 'sk-test',
            'Client-Secret': 'secret123',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert 'REDACTED' in result['API_KEY']
        assert 'REDACTED' in result['Client-Secret']

    def test_nested_config_dump(self):
        event_dict = {
            'event': 'Config loaded',
            'stt': {
                'provider': 'groq',
                'api_key': 'gsk_nested',
                'request_timeout_sec': 15,
            },
            'credentials': {'user': 'x', 'password': 'y'},
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result['stt']['provider'] == 'groq'
        assert 'REDACTED' in result['stt']['api_key']
        assert result['stt']['request_timeout_sec'] == 15
        assert result['credentials'] == '***REDACTED***'

    def test_preserve_call_context(self):
        event_dict = {
            'event': 'Chunk boundary',
            'call_id': 'call-abc123',
            'session_id': 'session_1700000000000_abcdefghi',
            'bytes': 160000,
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result == event_dict

    def test_empty_none_and_bool_preserved(self):
        event_dict = {'api_key': '', 'token': None, 'secret': True}
        result = sanitize_secrets(None, None, event_dict)

        assert result['api_key'] == ''
        assert result['token'] is None
        assert result['secret'] is True

    def test_list_of_keys(self):
        result = sanitize_secrets(None, None, {'api_keys': ['sk-key1', 'sk-key2']})
        assert all('REDACTED' in key for key in result['api_keys'])

    def test_no_false_positive_on_passthrough(self):
        event_dict = {
            'passthrough_frames': 12,
            'tokenizer': 'whisper',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result['passthrough_frames'] == 12
        assert result['tokenizer'] == 'whisper'


class TestCorrelationId:
    def teardown_method(self):
        clear_correlation_id()

    def test_set_and_clear(self):
        value = set_correlation_id('call-123')
        assert value == 'call-123'
        assert get_correlation_id() == 'call-123'
        clear_correlation_id()
        assert get_correlation_id() is None

    def test_generated_when_missing(self):
        value = set_correlation_id()
        assert value
        assert get_correlation_id() == value

    def test_processor_adds_id(self):
        set_correlation_id('call-xyz')
        event = add_correlation_id(structlog.get_logger(), 'info', {'event': 'x'})
        assert event['correlation_id'] == 'call-xyz'


class TestConfigureLogging:
    def teardown_method(self):
        logging.getLogger().handlers.clear()
        logging.getLogger().setLevel(logging.WARNING)
        structlog.reset_defaults()

    def test_env_level_and_quiet_third_party(self, monkeypatch):
        monkeypatch.setenv('LOG_LEVEL', 'debug')
        monkeypatch.setenv('LOG_FORMAT', 'console')

        configure_logging('INFO')

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert logging.getLogger('websockets').level == logging.WARNING

    def test_rendered_json_is_redacted(self, monkeypatch, capsys):
        monkeypatch.delenv('LOG_LEVEL', raising=False)
        monkeypatch.setenv('LOG_FORMAT', 'json')
        configure_logging('INFO')
        set_correlation_id('call-json')

        structlog.get_logger('callbridge.test').info('Backend request', api_key='sk-live-123456')
        clear_correlation_id()

        out = capsys.readouterr().out
        assert 'sk-live-123456' not in out
        assert '"correlation_id": "call-json"' in out
        assert '"service": "callbridge"' in out
