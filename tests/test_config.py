"""Tests for knockroom client configuration."""

import stat
import tempfile
from pathlib import Path

import pytest

from knockroom.cli import secret_from_link, share_link
from knockroom.config import (
    DEFAULT_SERVER_URL,
    GlobalConfig,
    ensure_config_dir,
    get_config_dir,
    get_messages_path,
    get_rooms_path,
)
from knockroom.storage import MessageLog, RoomBook


@pytest.fixture
def temp_config_dir(monkeypatch):
    """Use a temporary directory for config."""
    monkeypatch.delenv("KNOCKROOM_URL", raising=False)
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("XDG_CONFIG_HOME", tmpdir)
        yield Path(tmpdir) / "knockroom"


class TestPaths:
    def test_paths_under_config_dir(self, temp_config_dir):
        assert get_config_dir() == temp_config_dir
        assert get_rooms_path() == temp_config_dir / "rooms.yaml"
        assert get_messages_path() == temp_config_dir / "messages.db"

    def test_config_dir_is_private(self, temp_config_dir):
        ensure_config_dir()
        assert stat.S_IMODE(temp_config_dir.stat().st_mode) == 0o700

    def test_default_stores_live_in_config_dir(self, temp_config_dir):
        book = RoomBook()
        assert book.path == temp_config_dir / "rooms.yaml"
        with MessageLog():
            assert (temp_config_dir / "messages.db").exists()


class TestGlobalConfig:
    def test_default_values(self, temp_config_dir):
        assert GlobalConfig().url == DEFAULT_SERVER_URL

    def test_save_and_load(self, temp_config_dir):
        GlobalConfig(url="https://chat.example.com").save()
        assert GlobalConfig.load().url == "https://chat.example.com"

    def test_load_returns_defaults_when_no_file(self, temp_config_dir):
        assert GlobalConfig.load().url == DEFAULT_SERVER_URL

    def test_env_overrides_file(self, temp_config_dir, monkeypatch):
        GlobalConfig(url="https://chat.example.com").save()
        monkeypatch.setenv("KNOCKROOM_URL", "http://localhost:9000")
        assert GlobalConfig.load().url == "http://localhost:9000"

    def test_exists(self, temp_config_dir):
        assert GlobalConfig.exists() is False
        GlobalConfig().save()
        assert GlobalConfig.exists() is True


class TestShareLinks:
    def test_share_link(self):
        assert share_link("https://chat.example.com/", "abc") == "https://chat.example.com/abc"

    @pytest.mark.parametrize(
        "link",
        ["abc", " abc ", "/abc/", "https://chat.example.com/abc", "https://chat.example.com/r/abc/"],
    )
    def test_secret_from_link(self, link):
        assert secret_from_link(link) == "abc"
