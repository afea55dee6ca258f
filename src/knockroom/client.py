"""HTTP client for a knockroom server.

RoomClient wraps every room endpoint and the room event stream. Error
responses come back as the same typed errors the server raised
(RoomNotFound, Unauthorized, ...), so callers handle them without looking
at status codes.

Usage:
    with RoomClient("https://chat.example.com") as client:
        registration = client.create_room(room_hash)
        for event in client.events(room_hash):
            ...
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterator

import httpx
from pydantic import ValidationError

from .auth import TOKEN_HEADER
from .errors import KnockroomError, error_for_status
from .events import EVENT_TYPES, RoomEvent, SSEDecoder, parse_event
from .registry import Registration

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 30.0


def _is_retryable(status_code: int) -> bool:
    """Statuses worth reconnecting after: overload and server-side failures."""
    return status_code == 429 or status_code >= 500


class RoomClient:
    """Synchronous client for the room endpoints."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
        reconnect_delay: float = RECONNECT_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the client.

        Args:
            url: Base URL of the knockroom server
            timeout: Request timeout for non-streaming calls
            client: Pre-built httpx client (tests pass a TestClient here)
            reconnect_delay: Initial back-off between event stream reconnects
            sleep: Back-off sleep function
        """
        self._url = url.rstrip("/")
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self._reconnect_delay = reconnect_delay
        self._sleep = sleep

    @property
    def url(self) -> str:
        return self._url

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "RoomClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _raise_for_error(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        error: str | None = None
        detail: str | None = None
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            error = data.get("error")
            raw_detail = data.get("detail")
            detail = raw_detail if isinstance(raw_detail, str) else None
        raise error_for_status(response.status_code, error, detail or response.text or None)

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> Any:
        """Make an HTTP request."""
        headers = {TOKEN_HEADER: token} if token else {}
        response = self._client.request(
            method,
            f"{self._url}{path}",
            json=json,
            headers=headers,
            timeout=self._timeout,
        )
        self._raise_for_error(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # --- Room endpoints ---

    def create_room(self, room_hash: str) -> Registration:
        """Create the room, or learn whether anyone is in it."""
        data = self._request("POST", "/rooms", json={"room_hash": room_hash})
        return Registration(
            status=data["status"],
            has_participants=bool(data["has_participants"]),
            participant_token=data.get("participant_token"),
        )

    def knock(self, room_hash: str, message: str | None = None) -> None:
        self._request("POST", f"/rooms/{room_hash}/knock", json={"message": message})

    def approve(self, room_hash: str, token: str) -> str:
        """Approve a knocker. Returns the token that was broadcast."""
        data = self._request("POST", f"/rooms/{room_hash}/approve", token=token)
        return data["new_participant_token"]

    def reject(self, room_hash: str, token: str, message: str | None = None) -> None:
        self._request(
            "POST", f"/rooms/{room_hash}/reject", json={"message": message}, token=token
        )

    def send_message(
        self, room_hash: str, token: str, msg_id: str, encrypted_payload: str
    ) -> None:
        self._request(
            "POST",
            f"/rooms/{room_hash}/message",
            json={"msg_id": msg_id, "encrypted_payload": encrypted_payload},
            token=token,
        )

    def presence(self, room_hash: str, token: str) -> int:
        """Heartbeat. Returns the number of live participants."""
        data = self._request("POST", f"/rooms/{room_hash}/presence", token=token)
        return int(data["active_participants"])

    def disband(self, room_hash: str, token: str) -> None:
        self._request("POST", f"/rooms/{room_hash}/disband", token=token)

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/health")

    # --- Event stream ---

    def _stream_once(self, room_hash: str) -> Iterator[RoomEvent]:
        decoder = SSEDecoder()
        timeout = httpx.Timeout(self._timeout, read=None)
        with self._client.stream(
            "GET", f"{self._url}/rooms/{room_hash}/events", timeout=timeout
        ) as response:
            if response.status_code >= 400:
                response.read()
                self._raise_for_error(response)
            for line in response.iter_lines():
                frame = decoder.feed(line)
                if frame is None:
                    continue
                event_type, data = frame
                if event_type == "connected":
                    logger.debug("Event stream for room %s connected", room_hash[:12])
                    continue
                if event_type not in EVENT_TYPES:
                    continue
                try:
                    yield parse_event(data)
                except ValidationError:
                    logger.warning("Dropping malformed %s event", event_type, exc_info=True)

    def events(
        self,
        room_hash: str,
        *,
        reconnect: bool = True,
        stop: threading.Event | None = None,
    ) -> Iterator[RoomEvent]:
        """Yield a room's events as they are published.

        Transport errors, 429 and 5xx responses reconnect with exponential
        back-off. Events published while disconnected are lost. Other
        errors (for example RoomNotFound after a disband) end the stream
        by raising.

        Args:
            room_hash: Room to follow
            reconnect: Reconnect on transient failures and on end of stream
            stop: Set to stop following between events
        """
        delay = self._reconnect_delay
        while stop is None or not stop.is_set():
            try:
                for event in self._stream_once(room_hash):
                    delay = self._reconnect_delay
                    yield event
                    if stop is not None and stop.is_set():
                        return
            except httpx.TransportError as e:
                if not reconnect:
                    raise
                logger.warning("Event stream dropped (%s); reconnecting in %.1fs", e, delay)
            except KnockroomError as e:
                if not reconnect or not _is_retryable(e.status_code):
                    raise
                logger.warning(
                    "Event stream refused with %d (%s); reconnecting in %.1fs", e.status_code, e, delay
                )
            else:
                if not reconnect:
                    return
                logger.info("Event stream ended; reconnecting in %.1fs", delay)
            self._sleep(delay)
            delay = min(delay * 2, MAX_RECONNECT_DELAY)
