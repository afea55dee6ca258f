"""Maintenance jobs for knockroom.

Idle room sweep:
- Run periodically (cron) or on demand via `knockroom jobs sweep`
- A room whose last_activity_at is older than the idle period is deleted;
  participants and presence rows go with it by cascade
- A destroy event is published for every swept room, so any client still
  listening learns that its token is gone
"""

from __future__ import annotations

import asyncio
import logging

from .admission import AdmissionService
from .api import build_event_bus
from .db import Store
from .events import EventBus
from .metrics import metrics
from .options import DEFAULT_IDLE_SECONDS, ServerOptions
from .presence import LIVENESS_WINDOW, PresenceTracker
from .registry import RoomRegistry

logger = logging.getLogger(__name__)


async def sweep_idle_rooms(
    admission: AdmissionService,
    idle_seconds: int,
    dry_run: bool = False,
    batch_size: int = 1000,
) -> list[str]:
    """
    Delete rooms that have been idle for longer than ``idle_seconds``.

    Args:
        admission: Service whose store and bus the sweep acts on
        idle_seconds: Inactivity threshold
        dry_run: If True, just list without deleting
        batch_size: Maximum rooms handled in one call

    Returns:
        Hashes of the rooms swept (or that would be swept)
    """
    store = admission.registry.store
    cutoff = admission.presence.now() - idle_seconds
    idle = [row["room_hash"] for row in store.list_idle_rooms(cutoff, limit=batch_size)]

    if not idle or dry_run:
        return idle

    swept = []
    for room_hash in idle:
        if await admission.destroy_swept(room_hash):
            swept.append(room_hash)

    metrics.record_sweep(len(swept))
    logger.info("Swept %d idle rooms", len(swept))
    return swept


def run_sweep(
    options: ServerOptions,
    dry_run: bool = False,
    bus: EventBus | None = None,
) -> list[str]:
    """Open the configured store and bus, sweep once, and close them."""

    async def _sweep() -> list[str]:
        event_bus = bus or build_event_bus(options)
        try:
            with Store.scoped(options.db_path or ":memory:") as store:
                presence = PresenceTracker(store, window=options.liveness_window or LIVENESS_WINDOW)
                admission = AdmissionService(RoomRegistry(store, presence), presence, event_bus)
                return await sweep_idle_rooms(
                    admission, options.idle_seconds or DEFAULT_IDLE_SECONDS, dry_run=dry_run
                )
        finally:
            await event_bus.close()

    return asyncio.run(_sweep())
