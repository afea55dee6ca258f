"""Configuration options for the knockroom server.

Provides ServerOptions for selecting the store, the event bus and the
presence window. Supports environment variable overrides for containerized
deployments.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from .presence import LIVENESS_WINDOW

EVENT_BUS_KINDS = ("memory", "mercure")
DEFAULT_IDLE_SECONDS = 24 * 60 * 60


class ConfigError(Exception):
    """Raised when ServerOptions configuration is invalid."""

    pass


@dataclass
class ServerOptions:
    """Configuration options for the knockroom server.

    Environment Variables:
        KNOCKROOM_DB: sqlite path (":memory:" for an ephemeral store)
        KNOCKROOM_LIVENESS_WINDOW: presence window in seconds
        KNOCKROOM_EVENT_BUS: "memory" or "mercure"
        KNOCKROOM_IDLE_SECONDS: idle period before a room is swept
        MERCURE_HUB_URL: hub endpoint (mercure bus only)
        MERCURE_PUBLISHER_JWT_KEY: HS256 key for publisher tokens
        KNOCKROOM_ADMIN_TOKEN: token for the /metrics endpoint

    Explicit arguments win over the environment.

    Examples:
        # Everything from the environment
        options = ServerOptions()

        # Ephemeral store for tests
        options = ServerOptions.for_testing()

        # External hub
        options = ServerOptions(
            event_bus="mercure",
            mercure_hub_url="https://hub.example.com/.well-known/mercure",
            mercure_publisher_key="...",
        )
    """

    db_path: str | None = None
    """sqlite database path."""

    liveness_window: int | None = None
    """Seconds a presence row stays live."""

    event_bus: str | None = None
    """Event bus implementation: "memory" or "mercure"."""

    mercure_hub_url: str | None = None
    mercure_publisher_key: str | None = None

    idle_seconds: int | None = None
    """Rooms idle for longer than this are removed by the sweep job."""

    admin_token: str | None = None
    """Required in X-Admin-Token for /metrics. Unset disables the endpoint."""

    def __post_init__(self) -> None:
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self) -> None:
        env = os.environ
        if self.db_path is None:
            self.db_path = env.get("KNOCKROOM_DB", ":memory:")
        if self.liveness_window is None:
            self.liveness_window = _int_env("KNOCKROOM_LIVENESS_WINDOW", LIVENESS_WINDOW)
        if self.event_bus is None:
            self.event_bus = env.get("KNOCKROOM_EVENT_BUS", "memory").strip().lower()
        if self.idle_seconds is None:
            self.idle_seconds = _int_env("KNOCKROOM_IDLE_SECONDS", DEFAULT_IDLE_SECONDS)
        if self.mercure_hub_url is None:
            self.mercure_hub_url = env.get("MERCURE_HUB_URL") or None
        if self.mercure_publisher_key is None:
            self.mercure_publisher_key = env.get("MERCURE_PUBLISHER_JWT_KEY") or None
        if self.admin_token is None:
            self.admin_token = env.get("KNOCKROOM_ADMIN_TOKEN") or None

    def _validate(self) -> None:
        if self.event_bus not in EVENT_BUS_KINDS:
            raise ConfigError(
                f"event_bus must be one of {', '.join(EVENT_BUS_KINDS)}, got {self.event_bus!r}"
            )
        if self.event_bus == "mercure" and not (
            self.mercure_hub_url and self.mercure_publisher_key
        ):
            raise ConfigError(
                "The mercure event bus needs MERCURE_HUB_URL and MERCURE_PUBLISHER_JWT_KEY."
            )
        if self.liveness_window is None or self.liveness_window <= 0:
            raise ConfigError("liveness_window must be a positive number of seconds.")
        if self.idle_seconds is None or self.idle_seconds <= 0:
            raise ConfigError("idle_seconds must be a positive number of seconds.")

    def is_in_memory(self) -> bool:
        return self.db_path == ":memory:"

    @classmethod
    def for_testing(cls, **overrides: Any) -> "ServerOptions":
        """In-memory store and bus, no admin token unless given."""
        values: dict[str, Any] = {
            "db_path": ":memory:",
            "event_bus": "memory",
            "liveness_window": LIVENESS_WINDOW,
            "idle_seconds": DEFAULT_IDLE_SECONDS,
            "admin_token": "",
        }
        values.update(overrides)
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging). Secrets are masked."""
        return {
            "db_path": self.db_path,
            "liveness_window": self.liveness_window,
            "event_bus": self.event_bus,
            "idle_seconds": self.idle_seconds,
            "mercure_hub_url": self.mercure_hub_url,
            "has_mercure_key": self.mercure_publisher_key is not None,
            "has_admin_token": bool(self.admin_token),
        }


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
