"""Presence tracking for knockroom.

A participant counts as online while it has a presence row younger than the
liveness window. Clients heartbeat every HEARTBEAT_INTERVAL seconds, so two
missed heartbeats are tolerated before a participant drops out.

Expiry is lazy: stale rows are purged when somebody asks for a live count,
not by a background sweep.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from .auth import hash_token
from .db import Store

logger = logging.getLogger(__name__)

LIVENESS_WINDOW = 45
HEARTBEAT_INTERVAL = 20

Clock = Callable[[], float]


class PresenceTracker:
    """Rolling-window liveness per participant token."""

    def __init__(
        self,
        store: Store,
        window: int = LIVENESS_WINDOW,
        clock: Clock = time.time,
    ):
        self._store = store
        self._window = window
        self._clock = clock

    @property
    def window(self) -> int:
        return self._window

    def now(self) -> int:
        return int(self._clock())

    def touch(self, room_hash: str, token: str) -> None:
        """Record a heartbeat (or any authenticated action) for a token."""
        self.touch_hash(room_hash, hash_token(token))

    def touch_hash(self, room_hash: str, token_hash: str) -> None:
        self._store.upsert_presence(token_hash, room_hash, self.now())

    def live_count(self, room_hash: str) -> int:
        """Purge expired rows process-wide, then count the room's live tokens."""
        cutoff = self.now() - self._window
        return self._store.purge_and_count_presence(room_hash, cutoff)

    def is_live(self, room_hash: str) -> bool:
        return self.live_count(room_hash) > 0
