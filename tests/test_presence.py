"""Tests for presence tracking."""

from knockroom.auth import hash_token
from knockroom.presence import LIVENESS_WINDOW, PresenceTracker


class TestPresence:
    def _participant(self, store, room_hash, clock, token):
        store.insert_room(room_hash, int(clock()))
        store.insert_participant(hash_token(token), room_hash, int(clock()))

    def test_touch_counts_as_live(self, store, presence, clock, room_hash):
        self._participant(store, room_hash, clock, "tok")
        presence.touch(room_hash, "tok")
        assert presence.live_count(room_hash) == 1
        assert presence.is_live(room_hash)

    def test_expires_after_window(self, store, presence, clock, room_hash):
        self._participant(store, room_hash, clock, "tok")
        presence.touch(room_hash, "tok")
        clock.advance(LIVENESS_WINDOW + 1)
        assert presence.live_count(room_hash) == 0
        assert store.get_presence(hash_token("tok")) is None

    def test_edge_of_window_is_live(self, store, presence, clock, room_hash):
        self._participant(store, room_hash, clock, "tok")
        presence.touch(room_hash, "tok")
        clock.advance(LIVENESS_WINDOW)
        assert presence.live_count(room_hash) == 1

    def test_heartbeats_keep_token_live(self, store, presence, clock, room_hash):
        """Heartbeats at 10s and 30s keep a token live at 40s; a silent one drops."""
        self._participant(store, room_hash, clock, "beating")
        store.insert_participant(hash_token("silent"), room_hash, int(clock()))
        start = clock.now
        presence.touch(room_hash, "silent")

        clock.now = start + 10
        presence.touch(room_hash, "beating")
        clock.now = start + 30
        presence.touch(room_hash, "beating")
        clock.now = start + 40
        assert presence.live_count(room_hash) == 2

        clock.now = start + 46
        assert presence.live_count(room_hash) == 1

    def test_custom_window(self, store, clock, room_hash):
        tracker = PresenceTracker(store, window=5, clock=clock)
        self._participant(store, room_hash, clock, "tok")
        tracker.touch(room_hash, "tok")
        clock.advance(6)
        assert tracker.live_count(room_hash) == 0

    def test_now_is_integer_seconds(self, presence, clock):
        clock.advance(0.7)
        assert presence.now() == int(clock.now)
