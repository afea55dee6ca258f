"""Tests for the knockroom HTTP API."""

import pytest

from knockroom.api import _endpoint_name, build_event_bus, create_app, sse_frames
from knockroom.events import InMemoryEventBus, KnockEvent, SSEDecoder, parse_event
from knockroom.options import ConfigError, ServerOptions
from knockroom.presence import LIVENESS_WINDOW
from knockroom.testing import TEST_ADMIN_TOKEN


@pytest.fixture
def admin_headers():
    """Admin auth headers."""
    return {"X-Admin-Token": TEST_ADMIN_TOKEN}


@pytest.fixture
def created(api, room_hash):
    """A room created through the API; returns the creator's token."""
    response = api.post("/rooms", json={"room_hash": room_hash})
    assert response.status_code == 201
    return response.json()["participant_token"]


def auth(token):
    return {"X-Chat-Token": token}


class TestHealth:
    def test_health_check(self, api):
        response = api.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_response_time_header(self, api):
        assert "X-Response-Time-Ms" in api.get("/health").headers


class TestCreateRoom:
    def test_create(self, api, room_hash):
        response = api.post("/rooms", json={"room_hash": room_hash})
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "created"
        assert data["has_participants"] is True
        assert data["participant_token"]

    def test_exists(self, api, room_hash, created):
        response = api.post("/rooms", json={"room_hash": room_hash})
        assert response.status_code == 200
        assert response.json() == {"status": "exists", "has_participants": True}

    def test_exists_nobody_online(self, api, clock, room_hash, created):
        clock.advance(LIVENESS_WINDOW + 1)
        response = api.post("/rooms", json={"room_hash": room_hash})
        assert response.json() == {"status": "exists", "has_participants": False}

    @pytest.mark.parametrize(
        "body",
        [{}, {"room_hash": "xyz"}, {"room_hash": "A" * 64}, {"room_hash": 123}, {"room_hash": ["x"]}],
    )
    def test_invalid_hash(self, api, body):
        response = api.post("/rooms", json=body)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_room_hash"


class TestKnock:
    def test_knock(self, api, room_hash, created):
        response = api.post(f"/rooms/{room_hash}/knock", json={"message": "hi"})
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_knock_without_body(self, api, room_hash, created):
        assert api.post(f"/rooms/{room_hash}/knock").status_code == 200

    def test_knock_unknown_room(self, api, room_hash):
        response = api.post(f"/rooms/{room_hash}/knock", json={})
        assert response.status_code == 404
        assert response.json() == {"error": "room_not_found", "detail": "Room not found"}

    def test_knock_bad_hash(self, api):
        assert api.post("/rooms/nothex/knock", json={}).status_code == 400


class TestApproveReject:
    def test_approve(self, api, room_hash, created):
        response = api.post(f"/rooms/{room_hash}/approve", headers=auth(created))
        assert response.status_code == 200
        new_token = response.json()["new_participant_token"]

        presence = api.post(f"/rooms/{room_hash}/presence", headers=auth(new_token))
        assert presence.status_code == 200

    def test_approve_without_token(self, api, room_hash, created):
        response = api.post(f"/rooms/{room_hash}/approve")
        assert response.status_code == 401
        assert response.json()["error"] == "missing_token"

    def test_approve_with_wrong_token(self, api, room_hash, created):
        response = api.post(f"/rooms/{room_hash}/approve", headers=auth("bogus"))
        assert response.status_code == 403
        assert response.json()["error"] == "invalid_token"

    def test_approve_unknown_room(self, api, room_hash):
        response = api.post(f"/rooms/{room_hash}/approve", headers=auth("bogus"))
        assert response.status_code == 404

    def test_reject(self, api, room_hash, created):
        response = api.post(
            f"/rooms/{room_hash}/reject", json={"message": "later"}, headers=auth(created)
        )
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_reject_needs_token(self, api, room_hash, created):
        assert api.post(f"/rooms/{room_hash}/reject", json={}).status_code == 401


class TestMessage:
    def test_send(self, api, room_hash, created):
        response = api.post(
            f"/rooms/{room_hash}/message",
            json={"msg_id": "m1", "encrypted_payload": '{"v":0}'},
            headers=auth(created),
        )
        assert response.status_code == 200

    def test_send_inline_object(self, api, room_hash, created):
        response = api.post(
            f"/rooms/{room_hash}/message",
            json={"msg_id": "m1", "encrypted_payload": {"v": 0, "ct": "abc"}},
            headers=auth(created),
        )
        assert response.status_code == 200

    def test_missing_payload(self, api, room_hash, created):
        response = api.post(
            f"/rooms/{room_hash}/message", json={"msg_id": "m1"}, headers=auth(created)
        )
        assert response.status_code == 400
        assert response.json()["error"] == "missing_payload"

    def test_token_checked_before_payload(self, api, room_hash, created):
        response = api.post(f"/rooms/{room_hash}/message", json={"msg_id": "m1"})
        assert response.status_code == 401

    def test_message_after_disband(self, api, room_hash, created):
        api.post(f"/rooms/{room_hash}/disband", headers=auth(created))
        response = api.post(
            f"/rooms/{room_hash}/message",
            json={"msg_id": "m1", "encrypted_payload": "x"},
            headers=auth(created),
        )
        assert response.status_code == 404


class TestPresence:
    def test_count(self, api, room_hash, created):
        new_token = api.post(f"/rooms/{room_hash}/approve", headers=auth(created)).json()[
            "new_participant_token"
        ]
        assert api.post(f"/rooms/{room_hash}/presence", headers=auth(created)).json() == {
            "status": "ok",
            "active_participants": 1,
        }
        response = api.post(f"/rooms/{room_hash}/presence", headers=auth(new_token))
        assert response.json()["active_participants"] == 2

    def test_stale_participants_drop_out(self, api, clock, room_hash, created):
        new_token = api.post(f"/rooms/{room_hash}/approve", headers=auth(created)).json()[
            "new_participant_token"
        ]
        clock.advance(LIVENESS_WINDOW + 1)
        response = api.post(f"/rooms/{room_hash}/presence", headers=auth(new_token))
        assert response.json()["active_participants"] == 1

    def test_presence_needs_token(self, api, room_hash, created):
        assert api.post(f"/rooms/{room_hash}/presence").status_code == 401


class TestDisband:
    def test_disband(self, api, room_hash, created):
        response = api.post(f"/rooms/{room_hash}/disband", headers=auth(created))
        assert response.status_code == 200
        assert api.post(f"/rooms/{room_hash}/knock", json={}).status_code == 404

    def test_disband_twice(self, api, room_hash, created):
        api.post(f"/rooms/{room_hash}/disband", headers=auth(created))
        response = api.post(f"/rooms/{room_hash}/disband", headers=auth(created))
        assert response.status_code == 404

    def test_room_can_be_recreated(self, api, room_hash, created):
        api.post(f"/rooms/{room_hash}/disband", headers=auth(created))
        response = api.post("/rooms", json={"room_hash": room_hash})
        assert response.status_code == 201


class TestEvents:
    def test_unknown_room(self, api, room_hash):
        response = api.get(f"/rooms/{room_hash}/events")
        assert response.status_code == 404

    def test_bad_hash(self, api):
        assert api.get("/rooms/zzz/events").status_code == 400

    @pytest.mark.asyncio
    async def test_frames_start_with_connected(self, bus, room_hash):
        subscription = bus.stream(room_hash)
        event = KnockEvent(room_hash=room_hash, ts=1)
        await bus.publish(event)

        frames = sse_frames(subscription)
        decoder = SSEDecoder()

        def decode(text):
            result = None
            for line in text.split("\n"):
                result = decoder.feed(line) or result
            return result

        assert decode(await frames.__anext__()) == ("connected", "{}")
        kind, data = decode(await frames.__anext__())
        assert kind == "knock"
        assert parse_event(data) == event

        await frames.aclose()
        assert bus.subscriber_count(room_hash) == 0

    @pytest.mark.asyncio
    async def test_frames_stop_on_disconnect(self, bus, room_hash):
        subscription = bus.stream(room_hash)
        await bus.publish(KnockEvent(room_hash=room_hash, ts=1))

        async def disconnected():
            return True

        frames = [f async for f in sse_frames(subscription, disconnected)]
        assert len(frames) == 1
        assert bus.subscriber_count(room_hash) == 0


class TestMetrics:
    def test_requires_admin_token(self, api):
        assert api.get("/metrics").status_code == 401
        assert api.get("/metrics", headers={"X-Admin-Token": "wrong"}).status_code == 401

    def test_metrics(self, api, admin_headers, room_hash, created):
        api.post(f"/rooms/{room_hash}/knock", json={})
        response = api.get("/metrics", headers=admin_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["store"] == {"rooms": 1, "participants": 1, "presence": 1}
        assert data["publish"]["knock"] == {"ok": 1, "failed": 0}
        assert "rooms/create" in data["requests"]
        assert "rooms/knock" in data["requests"]

    def test_disabled_without_admin_token(self, store, bus):
        from fastapi.testclient import TestClient

        app = create_app(ServerOptions.for_testing(), store=store, bus=bus)
        with TestClient(app) as client:
            response = client.get("/metrics", headers={"X-Admin-Token": ""})
            assert response.status_code == 401


class TestEndpointName:
    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/rooms", "rooms/create"),
            ("/rooms/" + "a" * 64 + "/knock", "rooms/knock"),
            ("/rooms/" + "a" * 64, "rooms/other"),
            ("/health", "health"),
            ("/metrics", "metrics"),
            ("/", "other"),
            ("/docs", "other"),
        ],
    )
    def test_names(self, path, expected):
        assert _endpoint_name(path) == expected


class TestBuildEventBus:
    def test_memory_by_default(self):
        assert isinstance(build_event_bus(ServerOptions.for_testing()), InMemoryEventBus)

    def test_mercure_without_key(self):
        options = ServerOptions.for_testing(
            event_bus="mercure",
            mercure_hub_url="https://hub.example.com/.well-known/mercure",
            mercure_publisher_key="k" * 32,
        )
        options.mercure_publisher_key = None
        with pytest.raises(ConfigError):
            build_event_bus(options)
