"""Tests for Settings validation and parsing."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from railfeeds.core.config import Settings, is_configured


def test_cors_parsing_accepts_comma_separated():
    settings = Settings(
        _env_file=None,
        CORS_ALLOW_ORIGINS="https://app.example.com, http://localhost:9000",
    )

    assert settings.cors_allow_origins == [
        "https://app.example.com",
        "http://localhost:9000",
    ]


def test_cors_parsing_rejects_wildcard():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, CORS_ALLOW_ORIGINS="http://localhost:3000, *")


def test_valkey_url_accepts_redis_alias(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://example:6379/1")

    settings = Settings(_env_file=None)

    assert settings.valkey_url == "redis://example:6379/1"
    assert settings.effective_realtime_valkey_url == "redis://example:6379/1"


def test_realtime_valkey_url_overrides_shared_url():
    settings = Settings(
        _env_file=None,
        valkey_url="valkey://cache:6379/0",
        realtime_valkey_url="valkey://pubsub:6379/2",
    )

    assert settings.effective_realtime_valkey_url == "valkey://pubsub:6379/2"


def test_td_areas_parsed_from_comma_separated_env(monkeypatch):
    monkeypatch.setenv("TD_AREAS", "sk, ws ,")

    settings = Settings(_env_file=None)

    assert settings.td_areas == ["SK", "WS"]


def test_td_areas_default_to_all_when_blank(monkeypatch):
    monkeypatch.setenv("TD_AREAS", " ")

    assert Settings(_env_file=None).td_areas == ["ALL"]


def test_ldb_token_accepts_darwin_api_key_alias(monkeypatch):
    monkeypatch.setenv("DARWIN_API_KEY", "abc-123")

    settings = Settings(_env_file=None)

    assert settings.ldb_api_token == "abc-123"
    assert settings.ldb_configured is True


def test_reconnect_bounds_enforced():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, STOMP_RECONNECT_BASE_MS=0)


class TestConfiguredFlags:
    """Feeds without usable credentials stay disabled."""

    def test_missing_credentials_disable_every_feed(self, bare_settings):
        assert bare_settings.network_rail_configured is False
        assert bare_settings.push_port_configured is False
        assert bare_settings.bridge_configured is False
        assert bare_settings.ldb_configured is False

    def test_full_credentials_enable_every_feed(self, settings):
        assert settings.network_rail_configured is True
        assert settings.push_port_configured is True
        assert settings.bridge_configured is True
        assert settings.ldb_configured is True

    def test_push_port_requires_enable_flag(self):
        settings = Settings(
            _env_file=None,
            darwin_enabled=False,
            darwin_username="user",
            darwin_password="pass",
        )

        assert settings.push_port_configured is False

    def test_placeholder_credentials_count_as_missing(self):
        settings = Settings(
            _env_file=None,
            network_rail_username="your_network_rail_username",
            network_rail_password="your_network_rail_password",
        )

        assert settings.network_rail_configured is False

    def test_placeholder_rejected_in_production(self):
        with pytest.raises(ValidationError):
            Settings(
                _env_file=None,
                environment="production",
                darwin_username="your_darwin_username",
            )

    @pytest.mark.parametrize(
        "values, expected",
        [
            (("user", "pass"), True),
            (("user", None), False),
            (("user", "   "), False),
            (("your_darwin_api_key",), False),
        ],
    )
    def test_is_configured(self, values, expected):
        assert is_configured(*values) is expected
