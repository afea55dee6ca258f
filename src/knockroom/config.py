"""Client configuration for the knockroom CLI.

Everything a client keeps lives in $XDG_CONFIG_HOME/knockroom/
(~/.config/knockroom/ by default):
- config.yaml: global config (server URL)
- rooms.yaml: the room book (secrets, tokens, handles)
- messages.db: local decrypted message history

The room book holds room secrets, so the directory is created 0700.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SERVER_URL = "http://127.0.0.1:8000"


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "knockroom"


def get_global_config_path() -> Path:
    return get_config_dir() / "config.yaml"


def get_rooms_path() -> Path:
    return get_config_dir() / "rooms.yaml"


def get_messages_path() -> Path:
    return get_config_dir() / "messages.db"


def ensure_config_dir() -> Path:
    """Ensure config directory exists and return its path."""
    config_dir = get_config_dir()
    config_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    return config_dir


@dataclass
class GlobalConfig:
    """Global CLI configuration."""

    url: str = DEFAULT_SERVER_URL

    def save(self) -> None:
        ensure_config_dir()
        data: dict[str, Any] = {"url": self.url}
        with open(get_global_config_path(), "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls) -> "GlobalConfig":
        """Load config from file, or return defaults.

        KNOCKROOM_URL overrides the file.
        """
        env_url = os.environ.get("KNOCKROOM_URL")
        path = get_global_config_path()
        data: dict[str, Any] = {}
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        return cls(url=env_url or data.get("url", DEFAULT_SERVER_URL))

    @classmethod
    def exists(cls) -> bool:
        return get_global_config_path().exists()
