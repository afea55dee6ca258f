"""Tests for the store schema, migrations and row operations."""

import sqlite3

import pytest

from knockroom.db import MIGRATIONS, SCHEMA_VERSION, Store

ROOM = "a" * 64
OTHER_ROOM = "b" * 64


class TestSchemaVersionTracking:
    """Tests for schema version tracking."""

    def test_fresh_store_is_current(self, store):
        assert store.get_schema_version() == SCHEMA_VERSION

    def test_uninitialized_store_is_version_zero(self):
        s = Store(":memory:")
        try:
            assert s.get_schema_version() == 0
        finally:
            s.close()

    def test_migrations_applied_once(self, store):
        assert store.run_migrations() == []

    def test_init_schema_is_idempotent(self, store):
        store.init_schema()
        store.init_schema()
        assert store.get_schema_version() == SCHEMA_VERSION

    def test_latest_migration_matches_schema_version(self):
        assert MIGRATIONS[-1][0] == SCHEMA_VERSION

    def test_reset_clears_rows(self, store):
        store.insert_room(ROOM, 100)
        store.reset()
        assert not store.room_exists(ROOM)
        assert store.get_schema_version() == SCHEMA_VERSION

    def test_file_store(self, tmp_path):
        path = tmp_path / "nested" / "knockroom.sqlite"
        with Store.scoped(path) as s:
            s.insert_room(ROOM, 100)
        with Store.scoped(path) as s:
            assert s.room_exists(ROOM)


class TestRooms:
    def test_insert_room_once(self, store):
        assert store.insert_room(ROOM, 100) is True
        assert store.insert_room(ROOM, 200) is False
        room = store.get_room(ROOM)
        assert room == {"room_hash": ROOM, "created_at": 100, "last_activity_at": 100}

    def test_touch_room(self, store):
        store.insert_room(ROOM, 100)
        store.touch_room(ROOM, 150)
        assert store.get_room(ROOM)["last_activity_at"] == 150

    def test_delete_room(self, store):
        store.insert_room(ROOM, 100)
        assert store.delete_room(ROOM) is True
        assert store.delete_room(ROOM) is False
        assert store.get_room(ROOM) is None

    def test_list_idle_rooms(self, store):
        store.insert_room(ROOM, 100)
        store.insert_room(OTHER_ROOM, 300)
        idle = store.list_idle_rooms(cutoff=200)
        assert [r["room_hash"] for r in idle] == [ROOM]

    def test_list_idle_rooms_limit(self, store):
        store.insert_room(ROOM, 100)
        store.insert_room(OTHER_ROOM, 110)
        assert len(store.list_idle_rooms(cutoff=500, limit=1)) == 1


class TestParticipantsAndPresence:
    def test_participant_needs_room(self, store):
        with pytest.raises(sqlite3.IntegrityError):
            store.insert_participant("t1", ROOM, 100)

    def test_participant_scoped_to_room(self, store):
        store.insert_room(ROOM, 100)
        store.insert_room(OTHER_ROOM, 100)
        store.insert_participant("t1", ROOM, 100)
        assert store.is_participant("t1", ROOM)
        assert not store.is_participant("t1", OTHER_ROOM)
        assert store.count_participants(ROOM) == 1

    def test_upsert_presence_updates_last_seen(self, store):
        store.insert_room(ROOM, 100)
        store.insert_participant("t1", ROOM, 100)
        store.upsert_presence("t1", ROOM, 100)
        store.upsert_presence("t1", ROOM, 130)
        assert store.get_presence("t1")["last_seen"] == 130
        assert store.stats()["presence"] == 1

    def test_delete_room_cascades(self, store):
        store.insert_room(ROOM, 100)
        store.insert_participant("t1", ROOM, 100)
        store.upsert_presence("t1", ROOM, 100)
        store.delete_room(ROOM)
        assert not store.is_participant("t1", ROOM)
        assert store.get_presence("t1") is None
        assert store.stats() == {"rooms": 0, "participants": 0, "presence": 0}

    def test_purge_and_count(self, store):
        store.insert_room(ROOM, 100)
        store.insert_room(OTHER_ROOM, 100)
        for token, room, seen in [
            ("fresh", ROOM, 200),
            ("stale", ROOM, 150),
            ("elsewhere-stale", OTHER_ROOM, 100),
        ]:
            store.insert_participant(token, room, 100)
            store.upsert_presence(token, room, seen)

        assert store.purge_and_count_presence(ROOM, cutoff=180) == 1
        # Purge is process-wide, not limited to the counted room
        assert store.get_presence("stale") is None
        assert store.get_presence("elsewhere-stale") is None
        assert store.get_presence("fresh") is not None
