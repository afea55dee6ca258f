"""Room registry: the server's authority over room existence and tokens.

Trust on first use: the first caller to register an unknown room hash is
admitted without challenge and becomes the room's initial authority. Every
later arrival has to knock and be approved by an existing participant.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Literal

from .auth import extract_token, generate_token, hash_token
from .db import Store
from .errors import InvalidInput, RoomNotFound, Unauthenticated, Unauthorized
from .presence import PresenceTracker

logger = logging.getLogger(__name__)

ROOM_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def validate_room_hash(room_hash: object) -> str:
    """Check that a room hash is 64 lowercase hex chars.

    Raises:
        InvalidInput: For anything else.
    """
    if not isinstance(room_hash, str) or not ROOM_HASH_RE.match(room_hash):
        raise InvalidInput("room_hash must be 64 lowercase hex characters", error="invalid_room_hash")
    return room_hash


@dataclass
class Registration:
    """Outcome of register_or_inspect."""

    status: Literal["created", "exists"]
    has_participants: bool
    participant_token: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"status": self.status, "has_participants": self.has_participants}
        if self.participant_token is not None:
            data["participant_token"] = self.participant_token
        return data


class RoomRegistry:
    """Room existence, token minting and token checks."""

    def __init__(self, store: Store, presence: PresenceTracker):
        self._store = store
        self._presence = presence

    @property
    def store(self) -> Store:
        return self._store

    def register_or_inspect(self, room_hash: str) -> Registration:
        """Create the room if unknown, otherwise report whether anyone is live.

        A concurrent create that loses the insert race sees "exists", which
        is a normal outcome rather than an error.
        """
        validate_room_hash(room_hash)
        now = self._presence.now()

        if self._store.insert_room(room_hash, now):
            token = self.mint_token(room_hash)
            self._presence.touch(room_hash, token)
            logger.info("Room %s created", room_hash[:12])
            return Registration(status="created", has_participants=True, participant_token=token)

        count = self._presence.live_count(room_hash)
        return Registration(status="exists", has_participants=count > 0)

    def room_exists(self, room_hash: str) -> bool:
        return self._store.room_exists(room_hash)

    def require_room(self, room_hash: str) -> None:
        """Raise RoomNotFound unless the room exists."""
        if not self._store.room_exists(room_hash):
            raise RoomNotFound("Room not found")

    def touch(self, room_hash: str) -> None:
        """Refresh the room's last activity time."""
        self._store.touch_room(room_hash, self._presence.now())

    def mint_token(self, room_hash: str) -> str:
        """Issue a new participant token. Only its hash is stored.

        Raises:
            RoomNotFound: If the room was disbanded in the meantime.
        """
        token = generate_token()
        try:
            self._store.insert_participant(hash_token(token), room_hash, self._presence.now())
        except sqlite3.IntegrityError as e:
            raise RoomNotFound("Room not found") from e
        return token

    def require_participant(self, room_hash: str, token: str | None) -> str:
        """Check a bearer token against the room.

        Returns:
            The token's hash.

        Raises:
            Unauthenticated: No token supplied (blank counts as none).
            Unauthorized: Token unknown or belongs to another room.
        """
        token = extract_token(token)
        if not token:
            raise Unauthenticated("X-Chat-Token header required")
        token_hash = hash_token(token)
        if not self._store.is_participant(token_hash, room_hash):
            raise Unauthorized("Invalid participant token")
        return token_hash

    def disband(self, room_hash: str) -> bool:
        """Delete the room and, by cascade, its participants and presence.

        Deleting a room that is already gone is a no-op.

        Returns:
            True if a room row was removed.
        """
        deleted = self._store.delete_room(room_hash)
        if deleted:
            logger.info("Room %s disbanded", room_hash[:12])
        return deleted
