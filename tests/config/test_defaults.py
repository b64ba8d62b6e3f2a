"""
Unit tests for config.defaults module (environment overrides).
"""

import pytest

from callbridge.config.defaults import (
    apply_endpoint_defaults,
    apply_mode_defaults,
    apply_timing_defaults,
)


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
    ):
        monkeypatch.delenv(name, raising=False)


class TestModeDefaults:
    def test_default_streaming(self):
        config_data = {}
        apply_mode_defaults(config_data)
        assert config_data['mode'] == 'streaming'

    def test_yaml_value_kept(self):
        config_data = {'mode': 'batched'}
        apply_mode_defaults(config_data)
        assert config_data['mode'] == 'batched'

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CALLBRIDGE_MODE", " Batched ")
        config_data = {'mode': 'streaming'}
        apply_mode_defaults(config_data)
        assert config_data['mode'] == 'batched'


class TestEndpointDefaults:
    def test_env_urls(self, monkeypatch):
        monkeypatch.setenv("TRANSPORT_URL", "wss://ai.example.com/ws")
        monkeypatch.setenv("BACKEND_URL", "https://ai.example.com/ask")
        monkeypatch.setenv("BACKEND_INTERIM_URL", "https://ai.example.com/quick")
        config_data = {}
        apply_endpoint_defaults(config_data)

        assert config_data['transport']['url'] == 'wss://ai.example.com/ws'
        assert config_data['backend']['main_url'] == 'https://ai.example.com/ask'
        assert config_data['backend']['interim_url'] == 'https://ai.example.com/quick'

    def test_yaml_kept_without_env(self):
        config_data = {'transport': {'url': 'ws://127.0.0.1:1/ws'}}
        apply_endpoint_defaults(config_data)

        assert config_data['transport']['url'] == 'ws://127.0.0.1:1/ws'
        assert config_data['backend'] == {}


class TestTimingDefaults:
    def test_numeric_overrides(self, monkeypatch):
        monkeypatch.setenv("CHUNK_INTERVAL_SEC", "3.5")
        monkeypatch.setenv("POLL_INTERVAL_SEC", "1")
        config_data = {}
        apply_timing_defaults(config_data)

        assert config_data['conversation']['chunk_interval_sec'] == 3.5
        assert config_data['telephony']['poll_interval_sec'] == 1.0

    def test_invalid_number_ignored(self, monkeypatch):
        monkeypatch.setenv("CHUNK_INTERVAL_SEC", "five")
        config_data = {'conversation': {'chunk_interval_sec': 5.0}}
        apply_timing_defaults(config_data)

        assert config_data['conversation']['chunk_interval_sec'] == 5.0

    @pytest.mark.parametrize("raw,expected", [("0", False), ("false", False), ("1", True), ("yes", True)])
    def test_auto_answer(self, monkeypatch, raw, expected):
        monkeypatch.setenv("AUTO_ANSWER", raw)
        config_data = {}
        apply_timing_defaults(config_data)

        assert config_data['telephony']['auto_answer'] is expected
