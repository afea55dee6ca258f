"""Room events and the event bus.

Every room has one topic, "room:{room_hash}". Events are typed JSON objects:

    {v, type, room_hash, from, ts, body}

where ``type`` selects the body shape (knock, approve, reject, destroy, chat).
Events are ephemeral: a subscriber sees what is published while it is
connected and nothing else.

Architecture:
    - EventBus ABC defines the interface
    - InMemoryEventBus fans out with asyncio queues for single-instance deployments
    - MercureEventBus publishes to an external Mercure hub
    - SSEDecoder turns text/event-stream lines back into (event, data) pairs
      for both the server-side Mercure subscriber and the HTTP client
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Annotated, Any, AsyncIterator, Literal, Union

import httpx
from jose import jwt
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

logger = logging.getLogger(__name__)

EVENT_VERSION = 0
EVENT_TYPES = ("chat", "knock", "approve", "reject", "destroy")


def topic_for(room_hash: str) -> str:
    """Topic key for a room."""
    return f"room:{room_hash}"


# --- Event bodies ---


class KnockBody(BaseModel):
    message: str | None = None


class ApproveBody(BaseModel):
    new_participant_token: str


class RejectBody(BaseModel):
    message: str | None = None


class DestroyBody(BaseModel):
    pass


class ChatBody(BaseModel):
    msg_id: str | None = None
    encrypted_payload: str | dict[str, Any]


# --- Event variants ---


class _RoomEventBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    v: int = EVENT_VERSION
    room_hash: str
    from_: str | None = Field(default=None, alias="from")
    ts: int = Field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class KnockEvent(_RoomEventBase):
    type: Literal["knock"] = "knock"
    body: KnockBody = Field(default_factory=KnockBody)


class ApproveEvent(_RoomEventBase):
    type: Literal["approve"] = "approve"
    body: ApproveBody


class RejectEvent(_RoomEventBase):
    type: Literal["reject"] = "reject"
    body: RejectBody = Field(default_factory=RejectBody)


class DestroyEvent(_RoomEventBase):
    type: Literal["destroy"] = "destroy"
    body: DestroyBody = Field(default_factory=DestroyBody)


class ChatEvent(_RoomEventBase):
    type: Literal["chat"] = "chat"
    body: ChatBody


RoomEvent = Annotated[
    Union[KnockEvent, ApproveEvent, RejectEvent, DestroyEvent, ChatEvent],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[RoomEvent] = TypeAdapter(RoomEvent)


def parse_event(data: str | bytes | dict) -> RoomEvent:
    """Decode a RoomEvent by its ``type`` discriminant.

    Raises:
        pydantic.ValidationError: Unknown type or malformed body.
    """
    if isinstance(data, dict):
        return _event_adapter.validate_python(data)
    return _event_adapter.validate_json(data)


# --- Server-sent events ---


class SSEDecoder:
    """Incremental text/event-stream decoder.

    Feed it one line at a time (without the trailing newline). It returns
    an (event, data) pair whenever a blank line completes an event.
    """

    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []

    def feed(self, line: str) -> tuple[str, str] | None:
        if line == "":
            if not self._data and self._event is None:
                return None
            result = (self._event or "message", "\n".join(self._data))
            self._event = None
            self._data = []
            return result
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None


def format_sse(event: str, data: str) -> str:
    """Encode one server-sent event."""
    lines = "".join(f"data: {part}\n" for part in data.split("\n"))
    return f"event: {event}\n{lines}\n"


# --- Bus interface ---


class EventBus(ABC):
    """Abstract room event bus.

    Implementations must be async-compatible. Publishing is best-effort:
    callers log failures and carry on.
    """

    @abstractmethod
    async def publish(self, event: RoomEvent) -> None:
        """Publish an event to its room's topic."""

    @abstractmethod
    def stream(self, room_hash: str) -> AsyncIterator[RoomEvent]:
        """Yield events published to a room from now on, in order."""

    async def close(self) -> None:
        """Release any resources held by the bus."""


class Subscription:
    """One subscriber's view of a topic on the in-memory bus.

    The queue is registered when the subscription is created, not when it
    is first iterated, so nothing published after ``stream()`` returns is
    missed.
    """

    def __init__(self, bus: "InMemoryEventBus", topic: str):
        self._bus = bus
        self._topic = topic
        self._queue: asyncio.Queue[RoomEvent] = asyncio.Queue()
        self._closed = False

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def queue(self) -> asyncio.Queue[RoomEvent]:
        return self._queue

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> RoomEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self._queue.get()

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            self._bus._unsubscribe(self._topic, self._queue)


class InMemoryEventBus(EventBus):
    """In-memory event bus using asyncio queues.

    Suitable for single-instance deployments. Each subscriber gets its own
    unbounded queue.

    All operations go through the event loop, which is single-threaded, so
    the subscriber registry needs no lock.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue[RoomEvent]]] = defaultdict(set)

    async def publish(self, event: RoomEvent) -> None:
        topic = topic_for(event.room_hash)
        for queue in list(self._subscribers.get(topic, ())):
            queue.put_nowait(event)

    def stream(self, room_hash: str) -> Subscription:
        subscription = Subscription(self, topic_for(room_hash))
        self._subscribers[subscription.topic].add(subscription.queue)
        return subscription

    def _unsubscribe(self, topic: str, queue: asyncio.Queue[RoomEvent]) -> None:
        subscribers = self._subscribers.get(topic)
        if subscribers is not None:
            subscribers.discard(queue)
            if not subscribers:
                del self._subscribers[topic]

    def subscriber_count(self, room_hash: str) -> int:
        """Number of live subscriptions on a room's topic."""
        return len(self._subscribers.get(topic_for(room_hash), ()))


class MercureEventBus(EventBus):
    """Event bus backed by an external Mercure hub.

    Publishing is an authenticated form POST; the JWT grants publish rights
    on exactly the event's topic.
    """

    def __init__(
        self,
        hub_url: str,
        publisher_key: str,
        timeout: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._hub_url = hub_url
        self._publisher_key = publisher_key
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def publisher_jwt(self, topic: str) -> str:
        """HS256 capability token scoped to one topic."""
        return jwt.encode(
            {"mercure": {"publish": [topic]}},
            self._publisher_key,
            algorithm="HS256",
        )

    async def publish(self, event: RoomEvent) -> None:
        topic = topic_for(event.room_hash)
        response = await self._client.post(
            self._hub_url,
            data={"topic": topic, "data": event.to_json(), "type": event.type},
            headers={"Authorization": f"Bearer {self.publisher_jwt(topic)}"},
            timeout=self._timeout,
        )
        response.raise_for_status()

    async def stream(self, room_hash: str) -> AsyncIterator[RoomEvent]:
        decoder = SSEDecoder()
        async with self._client.stream(
            "GET",
            self._hub_url,
            params={"topic": topic_for(room_hash)},
            timeout=None,
        ) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                frame = decoder.feed(line)
                if frame is None or frame[0] not in EVENT_TYPES:
                    continue
                try:
                    yield parse_event(frame[1])
                except ValueError:
                    logger.warning("Dropping malformed event from hub", exc_info=True)

    async def close(self) -> None:
        await self._client.aclose()

