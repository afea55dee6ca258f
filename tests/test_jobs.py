"""Tests for knockroom scheduled jobs."""

import asyncio

import pytest

from knockroom import jobs
from knockroom.crypto import derive_room_hash, generate_room_secret
from knockroom.db import Store
from knockroom.events import InMemoryEventBus
from knockroom.metrics import metrics
from knockroom.options import ServerOptions

IDLE = 3600


def new_room_hash():
    return derive_room_hash(generate_room_secret())


class TestIdleSweep:
    @pytest.mark.asyncio
    async def test_nothing_idle(self, admission, room_hash):
        await admission.register(room_hash)
        assert await jobs.sweep_idle_rooms(admission, IDLE) == []

    @pytest.mark.asyncio
    async def test_sweeps_idle_rooms_only(self, admission, clock):
        stale, fresh = new_room_hash(), new_room_hash()
        await admission.register(stale)
        clock.advance(IDLE)
        await admission.register(fresh)
        clock.advance(1)

        metrics.reset()
        assert await jobs.sweep_idle_rooms(admission, IDLE) == [stale]
        assert not admission.registry.room_exists(stale)
        assert admission.registry.room_exists(fresh)
        assert metrics.swept_rooms == 1

    @pytest.mark.asyncio
    async def test_activity_keeps_room(self, admission, clock, room_hash):
        await admission.register(room_hash)
        clock.advance(IDLE - 10)
        await admission.knock(room_hash)
        clock.advance(20)
        assert await jobs.sweep_idle_rooms(admission, IDLE) == []

    @pytest.mark.asyncio
    async def test_dry_run(self, admission, clock, room_hash):
        await admission.register(room_hash)
        clock.advance(IDLE + 1)
        assert await jobs.sweep_idle_rooms(admission, IDLE, dry_run=True) == [room_hash]
        assert admission.registry.room_exists(room_hash)

    @pytest.mark.asyncio
    async def test_publishes_destroy(self, admission, bus, clock, room_hash):
        await admission.register(room_hash)
        events = await admission.subscribe(room_hash)
        clock.advance(IDLE + 1)
        await jobs.sweep_idle_rooms(admission, IDLE)
        destroy = await asyncio.wait_for(events.__anext__(), timeout=1)
        assert destroy.type == "destroy"
        assert destroy.from_ is None

    @pytest.mark.asyncio
    async def test_batch_size(self, admission, clock):
        for _ in range(3):
            await admission.register(new_room_hash())
        clock.advance(IDLE + 1)
        assert len(await jobs.sweep_idle_rooms(admission, IDLE, batch_size=2)) == 2


class TestRunSweep:
    def test_run_sweep_against_file_store(self, tmp_path):
        path = tmp_path / "kr.sqlite"
        room_hash = new_room_hash()
        with Store.scoped(path) as store:
            store.insert_room(room_hash, 0)

        options = ServerOptions.for_testing(db_path=str(path), idle_seconds=60)
        assert jobs.run_sweep(options, dry_run=True, bus=InMemoryEventBus()) == [room_hash]
        assert jobs.run_sweep(options, bus=InMemoryEventBus()) == [room_hash]

        with Store.scoped(path) as store:
            assert not store.room_exists(room_hash)
