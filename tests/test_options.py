"""Tests for ServerOptions configuration."""

import pytest

from knockroom.options import DEFAULT_IDLE_SECONDS, ConfigError, ServerOptions
from knockroom.presence import LIVENESS_WINDOW


class TestDefaults:
    def test_defaults(self):
        options = ServerOptions()
        assert options.db_path == ":memory:"
        assert options.event_bus == "memory"
        assert options.liveness_window == LIVENESS_WINDOW
        assert options.idle_seconds == DEFAULT_IDLE_SECONDS
        assert options.admin_token is None
        assert options.is_in_memory()

    def test_for_testing(self):
        options = ServerOptions.for_testing(admin_token="a")
        assert options.is_in_memory()
        assert options.admin_token == "a"

    def test_for_testing_ignores_environment(self, monkeypatch):
        monkeypatch.setenv("KNOCKROOM_DB", "/tmp/should-not-be-used.sqlite")
        assert ServerOptions.for_testing().db_path == ":memory:"


class TestEnvironment:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("KNOCKROOM_DB", "/data/kr.sqlite")
        monkeypatch.setenv("KNOCKROOM_LIVENESS_WINDOW", "60")
        monkeypatch.setenv("KNOCKROOM_IDLE_SECONDS", "3600")
        monkeypatch.setenv("KNOCKROOM_ADMIN_TOKEN", "adm")
        options = ServerOptions()
        assert options.db_path == "/data/kr.sqlite"
        assert options.liveness_window == 60
        assert options.idle_seconds == 3600
        assert options.admin_token == "adm"
        assert not options.is_in_memory()

    def test_explicit_arguments_win(self, monkeypatch):
        monkeypatch.setenv("KNOCKROOM_DB", "/data/kr.sqlite")
        assert ServerOptions(db_path="/other.sqlite").db_path == "/other.sqlite"

    def test_mercure_from_env(self, monkeypatch):
        monkeypatch.setenv("KNOCKROOM_EVENT_BUS", " Mercure ")
        monkeypatch.setenv("MERCURE_HUB_URL", "https://hub.test/.well-known/mercure")
        monkeypatch.setenv("MERCURE_PUBLISHER_JWT_KEY", "key")
        options = ServerOptions()
        assert options.event_bus == "mercure"
        assert options.mercure_publisher_key == "key"

    def test_bad_integer(self, monkeypatch):
        monkeypatch.setenv("KNOCKROOM_LIVENESS_WINDOW", "soon")
        with pytest.raises(ConfigError, match="KNOCKROOM_LIVENESS_WINDOW"):
            ServerOptions()

    def test_blank_integer_uses_default(self, monkeypatch):
        monkeypatch.setenv("KNOCKROOM_IDLE_SECONDS", " ")
        assert ServerOptions().idle_seconds == DEFAULT_IDLE_SECONDS


class TestValidation:
    def test_unknown_bus(self):
        with pytest.raises(ConfigError, match="event_bus"):
            ServerOptions(event_bus="carrier-pigeon")

    def test_mercure_needs_url_and_key(self):
        with pytest.raises(ConfigError):
            ServerOptions(event_bus="mercure", mercure_hub_url="https://hub.test")

    @pytest.mark.parametrize("field", ["liveness_window", "idle_seconds"])
    def test_non_positive_durations(self, field):
        with pytest.raises(ConfigError):
            ServerOptions(**{field: 0})

    def test_to_dict_masks_secrets(self):
        options = ServerOptions(
            event_bus="mercure",
            mercure_hub_url="https://hub.test",
            mercure_publisher_key="very-secret",
            admin_token="also-secret",
        )
        data = options.to_dict()
        assert "very-secret" not in str(data)
        assert "also-secret" not in str(data)
        assert data["has_mercure_key"] is True
        assert data["has_admin_token"] is True
