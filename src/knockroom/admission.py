"""Admission protocol: knock, approve, reject, and the other room actions.

Every action that mutates the store commits first and publishes second.
Publishing is best-effort; a hub outage delays peer notification but never
undoes a committed token or deletion, and never fails the request.

Approval is a broadcast. The ``approve`` event carries the freshly minted
token to every subscriber of the room, and whichever waiting client sees it
first adopts it. Two clients knocking at the same time can therefore race
for one approval; the loser keeps waiting for the next.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, AsyncIterator, Callable, TypeVar

from .errors import InvalidInput
from .events import (
    ApproveBody,
    ApproveEvent,
    ChatBody,
    ChatEvent,
    DestroyEvent,
    EventBus,
    KnockBody,
    KnockEvent,
    RejectBody,
    RejectEvent,
    RoomEvent,
)
from .metrics import metrics, timed_store_operation
from .presence import PresenceTracker
from .registry import Registration, RoomRegistry, validate_room_hash

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdmissionService:
    """Server-side room actions composed from registry, presence and bus."""

    def __init__(self, registry: RoomRegistry, presence: PresenceTracker, bus: EventBus):
        self._registry = registry
        self._presence = presence
        self._bus = bus

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    @property
    def presence(self) -> PresenceTracker:
        return self._presence

    @property
    def bus(self) -> EventBus:
        return self._bus

    async def _run_sync(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a store-bound call off the event loop."""
        loop = asyncio.get_running_loop()
        with timed_store_operation(fn.__name__):
            return await loop.run_in_executor(None, functools.partial(fn, *args))

    async def _publish(self, event: RoomEvent) -> None:
        """Publish, logging instead of raising on failure."""
        try:
            await self._bus.publish(event)
        except Exception:
            metrics.record_publish(event.type, ok=False)
            logger.warning(
                "Failed to publish %s event for room %s",
                event.type,
                event.room_hash[:12],
                exc_info=True,
            )
        else:
            metrics.record_publish(event.type, ok=True)

    async def _require_room(self, room_hash: str) -> None:
        validate_room_hash(room_hash)
        await self._run_sync(self._registry.require_room, room_hash)

    async def _require_participant(self, room_hash: str, token: str | None) -> str:
        """Room must exist (404) before the token is checked (401/403)."""
        await self._require_room(room_hash)
        return await self._run_sync(self._registry.require_participant, room_hash, token)

    def _now(self) -> int:
        return self._presence.now()

    # --- Actions ---

    async def register(self, room_hash: str) -> Registration:
        """Create the room (caller auto-admitted) or report its liveness."""
        return await self._run_sync(self._registry.register_or_inspect, room_hash)

    async def knock(self, room_hash: str, message: str | None = None) -> None:
        """Ask to be let in. No token needed."""
        await self._require_room(room_hash)
        await self._publish(
            KnockEvent(room_hash=room_hash, ts=self._now(), body=KnockBody(message=message))
        )
        await self._run_sync(self._registry.touch, room_hash)

    async def approve(self, room_hash: str, token: str | None) -> str:
        """Admit one knocker. Returns the new participant token."""
        approver_hash = await self._require_participant(room_hash, token)
        await self._run_sync(self._presence.touch_hash, room_hash, approver_hash)
        new_token = await self._run_sync(self._registry.mint_token, room_hash)
        logger.info("Room %s: participant approved", room_hash[:12])
        await self._publish(
            ApproveEvent(
                room_hash=room_hash,
                from_=approver_hash,
                ts=self._now(),
                body=ApproveBody(new_participant_token=new_token),
            )
        )
        await self._run_sync(self._registry.touch, room_hash)
        return new_token

    async def reject(self, room_hash: str, token: str | None, message: str | None = None) -> None:
        """Tell waiting knockers to stop waiting. Revokes nothing."""
        sender_hash = await self._require_participant(room_hash, token)
        await self._publish(
            RejectEvent(
                room_hash=room_hash,
                from_=sender_hash,
                ts=self._now(),
                body=RejectBody(message=message),
            )
        )
        await self._run_sync(self._presence.touch_hash, room_hash, sender_hash)
        await self._run_sync(self._registry.touch, room_hash)

    async def send_message(
        self,
        room_hash: str,
        token: str | None,
        msg_id: str | None,
        encrypted_payload: str | dict | None,
    ) -> None:
        """Relay an encrypted chat payload. The server cannot read it."""
        sender_hash = await self._require_participant(room_hash, token)
        if not encrypted_payload:
            raise InvalidInput("encrypted_payload is required", error="missing_payload")
        await self._publish(
            ChatEvent(
                room_hash=room_hash,
                from_=sender_hash,
                ts=self._now(),
                body=ChatBody(msg_id=msg_id, encrypted_payload=encrypted_payload),
            )
        )
        await self._run_sync(self._presence.touch_hash, room_hash, sender_hash)
        await self._run_sync(self._registry.touch, room_hash)

    async def heartbeat(self, room_hash: str, token: str | None) -> int:
        """Refresh the caller's presence. Returns the live participant count."""
        token_hash = await self._require_participant(room_hash, token)
        await self._run_sync(self._presence.touch_hash, room_hash, token_hash)
        return await self._run_sync(self._presence.live_count, room_hash)

    async def disband(self, room_hash: str, token: str | None) -> None:
        """Delete the room and every token in it, then tell everyone."""
        sender_hash = await self._require_participant(room_hash, token)
        await self._run_sync(self._registry.disband, room_hash)
        await self._publish(DestroyEvent(room_hash=room_hash, from_=sender_hash, ts=self._now()))

    async def destroy_swept(self, room_hash: str) -> bool:
        """Disband a room on behalf of the idle sweep (no token)."""
        deleted = await self._run_sync(self._registry.disband, room_hash)
        if deleted:
            await self._publish(DestroyEvent(room_hash=room_hash, ts=self._now()))
        return deleted

    async def subscribe(self, room_hash: str) -> AsyncIterator[RoomEvent]:
        """Open an event stream for a room that exists."""
        await self._require_room(room_hash)
        return self._bus.stream(room_hash)
