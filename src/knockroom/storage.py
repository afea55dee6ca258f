"""Local client persistence.

RoomBook keeps the rooms a client has opened, keyed by room hash, in a
YAML file: the secret (so the room can be reopened), the participant token
once admitted, the chosen handle, and when the room was last seen.

MessageLog keeps decrypted chat history in a small sqlite database,
ordered by timestamp within each room. Nothing in either store is ever
sent to the server.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Literal

import yaml

from .config import ensure_config_dir, get_messages_path, get_rooms_path
from .db import _row_to_dict, connect

logger = logging.getLogger(__name__)


@dataclass
class StoredRoom:
    """One entry in the room book."""

    room_hash: str
    secret: str
    last_seen: int
    handle: str | None = None
    token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"secret": self.secret, "last_seen": self.last_seen}
        if self.handle:
            data["handle"] = self.handle
        if self.token:
            data["token"] = self.token
        return data

    @classmethod
    def from_dict(cls, room_hash: str, data: dict) -> "StoredRoom":
        return cls(
            room_hash=room_hash,
            secret=data["secret"],
            last_seen=int(data.get("last_seen", 0)),
            handle=data.get("handle"),
            token=data.get("token"),
        )


class RoomBook:
    """Recently opened rooms, stored as YAML.

    Every mutation rewrites the file; the book is small.
    """

    def __init__(self, path: str | Path | None = None, clock: Callable[[], float] = time.time):
        self._path = Path(path) if path is not None else get_rooms_path()
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, StoredRoom]:
        if not self._path.exists():
            return {}
        with open(self._path) as f:
            data = yaml.safe_load(f) or {}
        rooms: dict[str, StoredRoom] = {}
        for room_hash, entry in (data.get("rooms") or {}).items():
            if not isinstance(entry, dict) or "secret" not in entry:
                logger.warning("Skipping malformed room book entry %s", str(room_hash)[:12])
                continue
            rooms[room_hash] = StoredRoom.from_dict(room_hash, entry)
        return rooms

    def _write(self, rooms: dict[str, StoredRoom]) -> None:
        self._path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        data = {"rooms": {h: r.to_dict() for h, r in rooms.items()}}
        tmp = self._path.with_suffix(".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        os.replace(tmp, self._path)

    def _now(self) -> int:
        return int(self._clock())

    def upsert(self, room_hash: str, secret: str, handle: str | None = None) -> StoredRoom:
        """Record that a room was opened. Keeps any stored token."""
        with self._lock:
            rooms = self._read()
            room = rooms.get(room_hash)
            if room is None:
                room = StoredRoom(room_hash=room_hash, secret=secret, last_seen=self._now())
                rooms[room_hash] = room
            room.secret = secret
            room.last_seen = self._now()
            if handle is not None:
                room.handle = handle
            self._write(rooms)
            return room

    def get(self, room_hash: str) -> StoredRoom | None:
        with self._lock:
            return self._read().get(room_hash)

    def list(self) -> list[StoredRoom]:
        """All rooms, most recently seen first."""
        with self._lock:
            rooms = list(self._read().values())
        return sorted(rooms, key=lambda r: r.last_seen, reverse=True)

    def remove(self, room_hash: str) -> bool:
        """Forget a room, its token and its handle."""
        with self._lock:
            rooms = self._read()
            if rooms.pop(room_hash, None) is None:
                return False
            self._write(rooms)
            return True

    def _update(self, room_hash: str, **changes: Any) -> None:
        with self._lock:
            rooms = self._read()
            room = rooms.get(room_hash)
            if room is None:
                raise KeyError(room_hash)
            for key, value in changes.items():
                setattr(room, key, value)
            self._write(rooms)

    def get_token(self, room_hash: str) -> str | None:
        room = self.get(room_hash)
        return room.token if room else None

    def set_token(self, room_hash: str, token: str) -> None:
        self._update(room_hash, token=token)

    def clear_token(self, room_hash: str) -> None:
        """Drop the token but keep the room in the book."""
        with self._lock:
            rooms = self._read()
            room = rooms.get(room_hash)
            if room is None or room.token is None:
                return
            room.token = None
            self._write(rooms)

    def get_handle(self, room_hash: str) -> str | None:
        room = self.get(room_hash)
        return room.handle if room else None

    def set_handle(self, room_hash: str, handle: str) -> None:
        self._update(room_hash, handle=handle, last_seen=self._now())


# --- Message history ---


MESSAGES_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        room_hash TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        content TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'chat',
        direction TEXT NOT NULL DEFAULT 'in',
        from_hash TEXT,
        handle TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_messages_room_ts ON messages(room_hash, timestamp);
"""


@dataclass
class ChatMessage:
    """A decrypted chat line or a local system notice."""

    id: str
    room_hash: str
    timestamp: int
    content: str
    type: Literal["chat", "system"] = "chat"
    direction: Literal["in", "out"] = "in"
    from_hash: str | None = None
    handle: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "room_hash": self.room_hash,
            "timestamp": self.timestamp,
            "content": self.content,
            "type": self.type,
            "direction": self.direction,
            "from": self.from_hash,
            "handle": self.handle,
        }

    @classmethod
    def from_row(cls, row: dict) -> "ChatMessage":
        return cls(
            id=row["id"],
            room_hash=row["room_hash"],
            timestamp=row["timestamp"],
            content=row["content"],
            type=row["type"],
            direction=row["direction"],
            from_hash=row["from_hash"],
            handle=row["handle"],
        )


class MessageLog:
    """Local message history keyed by message id, ordered by timestamp."""

    def __init__(self, path: str | Path | None = None):
        if path is None:
            ensure_config_dir()
            path = get_messages_path()
        self._conn = connect(path)
        self._lock = threading.Lock()
        with self._lock:
            self._conn.executescript(MESSAGES_SCHEMA_SQL)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "MessageLog":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def put(self, message: ChatMessage) -> None:
        """Insert or replace by id."""
        with self._lock:
            self._conn.execute(
                """INSERT OR REPLACE INTO messages
                   (id, room_hash, timestamp, content, type, direction, from_hash, handle)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    message.id,
                    message.room_hash,
                    message.timestamp,
                    message.content,
                    message.type,
                    message.direction,
                    message.from_hash,
                    message.handle,
                ),
            )
            self._conn.commit()

    def get(self, message_id: str) -> ChatMessage | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        data = _row_to_dict(row)
        return ChatMessage.from_row(data) if data else None

    def has(self, message_id: str) -> bool:
        with self._lock:
            row = self._conn.execute("SELECT 1 FROM messages WHERE id = ?", (message_id,)).fetchone()
        return row is not None

    def delete(self, message_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            self._conn.commit()
        return cursor.rowcount > 0

    def clear_room(self, room_hash: str) -> int:
        """Delete a room's history. Returns the number of messages removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM messages WHERE room_hash = ?", (room_hash,))
            self._conn.commit()
        return cursor.rowcount

    def list_room(self, room_hash: str) -> list[ChatMessage]:
        """A room's messages, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM messages WHERE room_hash = ? ORDER BY timestamp, rowid",
                (room_hash,),
            ).fetchall()
        return [ChatMessage.from_row(dict(row)) for row in rows]

