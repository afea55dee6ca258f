"""Database layer for knockroom.

The server keeps exactly three kinds of rows:

    rooms         room_hash, created_at, last_activity_at
    participants  token_hash, room_hash, joined_at
    presence      token_hash, room_hash, last_seen

Participants and presence rows cascade away when their room is deleted.
Timestamps are integer Unix seconds supplied by the caller, so services can
run against an injected clock.

Connection Management:
    # File-backed
    store = Store("/data/knockroom.sqlite")
    store.init_schema()

    # In-memory for testing
    with Store.scoped(":memory:") as store:
        ...

A Store owns a single connection guarded by a lock. FastAPI runs sync
handlers in a threadpool, so every statement group goes through
``transaction()``.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

logger = logging.getLogger(__name__)

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 1


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    """Convert a database row to a dictionary."""
    if row is None:
        return None
    return dict(row)


def _rows_to_dicts(rows: list) -> list[dict]:
    """Convert database rows to a list of dictionaries."""
    return [dict(row) for row in rows]


# --- Schema Definition ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS rooms (
        room_hash TEXT PRIMARY KEY,
        created_at INTEGER NOT NULL,
        last_activity_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS participants (
        token_hash TEXT PRIMARY KEY,
        room_hash TEXT NOT NULL REFERENCES rooms(room_hash) ON DELETE CASCADE,
        joined_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_participants_room ON participants(room_hash);

    CREATE TABLE IF NOT EXISTS presence (
        token_hash TEXT PRIMARY KEY
            REFERENCES participants(token_hash) ON DELETE CASCADE,
        room_hash TEXT NOT NULL REFERENCES rooms(room_hash) ON DELETE CASCADE,
        last_seen INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_presence_room ON presence(room_hash);
"""


# --- Migration Functions ---


def _migrate_001_add_activity_index(conn: sqlite3.Connection) -> None:
    """Migration 001: Index rooms by last activity for the idle sweep."""
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_rooms_last_activity ON rooms(last_activity_at)"
    )


# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Index rooms by last_activity_at", _migrate_001_add_activity_index),
]


def connect(db_path: str | Path) -> sqlite3.Connection:
    """Open a sqlite connection with the pragmas knockroom relies on.

    Foreign keys must be on: disbanding a room relies on the cascade.
    """
    if str(db_path) == ":memory:":
        conn = sqlite3.connect(":memory:", check_same_thread=False)
    else:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path), check_same_thread=False)
        # Enable WAL mode for better concurrent read/write performance
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


class Store:
    """Key-indexed persistence for rooms, participants and presence."""

    def __init__(self, db_path: str | Path = ":memory:"):
        self._path = str(db_path)
        self._conn = connect(db_path)
        self._lock = threading.RLock()

    @classmethod
    @contextmanager
    def scoped(cls, db_path: str | Path = ":memory:") -> Iterator["Store"]:
        """Context manager for a store that is initialized and closed automatically."""
        store = cls(db_path)
        try:
            store.init_schema()
            yield store
        finally:
            store.close()

    @property
    def path(self) -> str:
        return self._path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a group of statements atomically.

        Commits on success, rolls back on any exception.
        """
        with self._lock:
            try:
                yield self._conn
            except Exception:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()

    # --- Schema and Migrations ---

    def _ensure_schema_version_table(self) -> None:
        """Create the schema_version table if it doesn't exist."""
        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    description TEXT
                )
            """)

    def get_schema_version(self) -> int:
        """Get the current schema version from the database.

        Returns 0 if no migrations have been applied yet.
        """
        self._ensure_schema_version_table()
        with self.transaction() as conn:
            row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] if row and row[0] is not None else 0

    def record_migration(self, version: int, description: str) -> None:
        """Record that a migration has been applied."""
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                (version, description),
            )

    def run_migrations(self) -> list[int]:
        """Run any pending migrations.

        Returns a list of migration versions that were applied.
        """
        current_version = self.get_schema_version()
        applied: list[int] = []

        for version, description, migrate_fn in MIGRATIONS:
            if version > current_version:
                try:
                    with self.transaction() as conn:
                        migrate_fn(conn)
                except Exception as e:
                    raise RuntimeError(f"Migration {version} failed: {e}") from e
                self.record_migration(version, description)
                applied.append(version)
                logger.info("Applied migration %d: %s", version, description)

        return applied

    def init_schema(self) -> None:
        """Create tables and apply migrations."""
        with self._lock:
            self._conn.executescript(SCHEMA_SQL)
            self._conn.commit()
        self.run_migrations()

    def reset(self) -> None:
        """Drop everything and recreate the schema (for testing)."""
        with self._lock:
            self._conn.executescript("""
                DROP TABLE IF EXISTS presence;
                DROP TABLE IF EXISTS participants;
                DROP TABLE IF EXISTS rooms;
                DROP TABLE IF EXISTS schema_version;
            """)
            self._conn.commit()
        self.init_schema()

    # --- Room Operations ---

    def insert_room(self, room_hash: str, now: int) -> bool:
        """Create a room row if absent.

        Returns:
            True if this call created the room, False if it already existed.
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO rooms (room_hash, created_at, last_activity_at)
                   VALUES (?, ?, ?)""",
                (room_hash, now, now),
            )
        return cursor.rowcount > 0

    def get_room(self, room_hash: str) -> dict | None:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT room_hash, created_at, last_activity_at FROM rooms WHERE room_hash = ?",
                (room_hash,),
            ).fetchone()
        return _row_to_dict(row)

    def room_exists(self, room_hash: str) -> bool:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM rooms WHERE room_hash = ?", (room_hash,)
            ).fetchone()
        return row is not None

    def touch_room(self, room_hash: str, now: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE rooms SET last_activity_at = ? WHERE room_hash = ?",
                (now, room_hash),
            )

    def delete_room(self, room_hash: str) -> bool:
        """Delete a room; participants and presence go with it.

        Returns:
            True if deleted, False if not found
        """
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM rooms WHERE room_hash = ?", (room_hash,))
        return cursor.rowcount > 0

    def list_idle_rooms(self, cutoff: int, limit: int = 1000) -> list[dict]:
        """Rooms with no activity since ``cutoff``."""
        with self.transaction() as conn:
            rows = conn.execute(
                """SELECT room_hash, created_at, last_activity_at FROM rooms
                   WHERE last_activity_at < ?
                   ORDER BY last_activity_at LIMIT ?""",
                (cutoff, limit),
            ).fetchall()
        return _rows_to_dicts(rows)

    # --- Participant Operations ---

    def insert_participant(self, token_hash: str, room_hash: str, now: int) -> None:
        """Record a participant token hash for a room.

        Raises:
            sqlite3.IntegrityError: If the room no longer exists.
        """
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO participants (token_hash, room_hash, joined_at) VALUES (?, ?, ?)",
                (token_hash, room_hash, now),
            )

    def is_participant(self, token_hash: str, room_hash: str) -> bool:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM participants WHERE token_hash = ? AND room_hash = ?",
                (token_hash, room_hash),
            ).fetchone()
        return row is not None

    def count_participants(self, room_hash: str) -> int:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM participants WHERE room_hash = ?", (room_hash,)
            ).fetchone()
        return row[0]

    # --- Presence Operations ---

    def upsert_presence(self, token_hash: str, room_hash: str, now: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO presence (token_hash, room_hash, last_seen) VALUES (?, ?, ?)
                   ON CONFLICT(token_hash) DO UPDATE SET last_seen = excluded.last_seen""",
                (token_hash, room_hash, now),
            )

    def get_presence(self, token_hash: str) -> dict | None:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT token_hash, room_hash, last_seen FROM presence WHERE token_hash = ?",
                (token_hash,),
            ).fetchone()
        return _row_to_dict(row)

    def purge_and_count_presence(self, room_hash: str, cutoff: int) -> int:
        """Drop every presence row older than ``cutoff``, then count the room's.

        Both statements run in one transaction so the count reflects the
        purge that preceded it.
        """
        with self.transaction() as conn:
            purged = conn.execute("DELETE FROM presence WHERE last_seen < ?", (cutoff,)).rowcount
            row = conn.execute(
                "SELECT COUNT(*) FROM presence WHERE room_hash = ? AND last_seen >= ?",
                (room_hash, cutoff),
            ).fetchone()
        if purged:
            logger.debug("Purged %d stale presence rows", purged)
        return row[0]

    def stats(self) -> dict[str, Any]:
        """Row counts, for the metrics endpoint."""
        with self.transaction() as conn:
            rooms = conn.execute("SELECT COUNT(*) FROM rooms").fetchone()[0]
            participants = conn.execute("SELECT COUNT(*) FROM participants").fetchone()[0]
            presence = conn.execute("SELECT COUNT(*) FROM presence").fetchone()[0]
        return {"rooms": rooms, "participants": participants, "presence": presence}
