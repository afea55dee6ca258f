"""Pytest fixtures for testing with knockroom.

Usage in conftest.py:
    pytest_plugins = ["knockroom.testing"]

Available fixtures:
    - clock: Controllable FakeClock shared by every fixture below
    - store: Fresh in-memory Store with the schema applied
    - presence / registry / bus / admission: Server services over ``store``
    - app: FastAPI app over the same store, bus and clock
    - api: TestClient for ``app``
    - room_client: RoomClient talking to ``app`` through ``api``
    - room_secret / room_hash: A fresh room identity
    - room_book / message_log: Client persistence under tmp_path
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Generator

import pytest
from fastapi.testclient import TestClient

from .admission import AdmissionService
from .api import create_app
from .client import RoomClient
from .crypto import derive_room_hash, generate_room_secret
from .db import Store
from .events import InMemoryEventBus
from .metrics import metrics
from .options import ServerOptions
from .presence import PresenceTracker
from .registry import RoomRegistry
from .storage import MessageLog, RoomBook

if TYPE_CHECKING:
    from pathlib import Path
    from fastapi import FastAPI

TEST_ADMIN_TOKEN = "test-admin-token"
TEST_BASE_URL = "http://testserver"


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[Store, None, None]:
    """Fresh in-memory store. No cleanup needed beyond close."""
    with Store.scoped(":memory:") as s:
        yield s


@pytest.fixture
def presence(store: Store, clock: FakeClock) -> PresenceTracker:
    return PresenceTracker(store, clock=clock)


@pytest.fixture
def registry(store: Store, presence: PresenceTracker) -> RoomRegistry:
    return RoomRegistry(store, presence)


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def admission(
    registry: RoomRegistry, presence: PresenceTracker, bus: InMemoryEventBus
) -> AdmissionService:
    return AdmissionService(registry, presence, bus)


@pytest.fixture
def app(store: Store, bus: InMemoryEventBus, clock: FakeClock) -> "FastAPI":
    """App wired to the shared store, bus and clock.

    Example:
        def test_health(api):
            assert api.get("/health").json() == {"status": "ok"}
    """
    metrics.reset()
    options = ServerOptions.for_testing(admin_token=TEST_ADMIN_TOKEN)
    return create_app(options, store=store, bus=bus, clock=clock)


@pytest.fixture
def api(app: "FastAPI") -> Generator[TestClient, None, None]:
    with TestClient(app, base_url=TEST_BASE_URL) as client:
        yield client


@pytest.fixture
def room_client(api: TestClient) -> RoomClient:
    """RoomClient whose requests go straight into the test app."""
    return RoomClient(TEST_BASE_URL, client=api)


@pytest.fixture
def room_secret() -> str:
    return generate_room_secret()


@pytest.fixture
def room_hash(room_secret: str) -> str:
    return derive_room_hash(room_secret)


@pytest.fixture
def room_book(tmp_path: "Path", clock: FakeClock) -> RoomBook:
    return RoomBook(tmp_path / "rooms.yaml", clock=clock)


@pytest.fixture
def message_log(tmp_path: "Path") -> Generator[MessageLog, None, None]:
    log = MessageLog(tmp_path / "messages.db")
    yield log
    log.close()
