import asyncio
import time
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.core.config import OutboxSettings, get_outbox_settings
from app.services import outbox_worker
from app.services.broadcast import InMemoryBroadcaster
from app.services.outbox_worker import (
    outbox_worker_loop,
    run_delivery_tick,
    run_maintenance,
    start_outbox_worker_task,
)


def _settings(**overrides):
    base = dict(
        batch_size=10,
        max_attempts=3,
        poll_seconds=0.05,
        run_budget_seconds=5.0,
        maintenance_seconds=0.0,
        broadcast_backend="memory",
        worker_enabled=True,
    )
    base.update(overrides)
    return OutboxSettings(**base)


def test_delivery_tick_covers_every_pending_tenant(seed_events):
    org_a = uuid.uuid4()
    org_b = uuid.uuid4()
    ids_a = seed_events(org_a, 12)
    ids_b = seed_events(org_b, 1)
    broadcaster = InMemoryBroadcaster()

    results = run_delivery_tick(_settings(), broadcaster)

    assert set(results) == {org_a, org_b}
    assert results[org_a].processed == 12
    assert results[org_a].batches == 2
    assert broadcaster.published_ids(org_a) == ids_a
    assert broadcaster.published_ids(org_b) == ids_b


def test_failing_tenant_does_not_block_others(seed_events, monkeypatch):
    org_bad = uuid.uuid4()
    org_ok = uuid.uuid4()
    seed_events(org_bad, 1)
    ids_ok = seed_events(org_ok, 2)
    broadcaster = InMemoryBroadcaster()

    real_process = outbox_worker.process_tenant

    def _process(organization_id, **kwargs):
        if organization_id == org_bad:
            raise RuntimeError("tenant blew up")
        return real_process(organization_id, **kwargs)

    monkeypatch.setattr(outbox_worker, "process_tenant", _process)

    results = run_delivery_tick(_settings(), broadcaster)

    assert org_bad not in results
    assert results[org_ok].processed == 2
    assert broadcaster.published_ids(org_ok) == ids_ok


def test_maintenance_runs_each_step_independently(org_id, seed_events, monkeypatch):
    long_ago = datetime.now(timezone.utc) - timedelta(days=10)
    seed_events(org_id, 4, created_at=long_ago, delivered_at=long_ago)

    def _broken(**_kwargs):
        raise RuntimeError("dead-letter table unavailable")

    monkeypatch.setattr(outbox_worker, "migrate_to_dead_letter", _broken)

    report = run_maintenance(_settings())

    assert report.dead_letter is None
    assert report.pruned.deleted_count == 4
    assert report.dead_letters_pruned.deleted_count == 0


def test_worker_loop_delivers_until_cancelled(org_id, seed_events):
    ids = seed_events(org_id, 3)
    broadcaster = InMemoryBroadcaster()

    async def _run():
        task = asyncio.create_task(outbox_worker_loop(settings=_settings(), broadcaster=broadcaster))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(_run())

    assert broadcaster.published_ids(org_id) == ids


class _SlowBroadcaster(InMemoryBroadcaster):
    def send(self, channel, message):
        time.sleep(0.02)
        super().send(channel, message)


def test_worker_loop_keeps_event_loop_responsive_during_slow_publishes(org_id, seed_events):
    ids = seed_events(org_id, 20)
    broadcaster = _SlowBroadcaster()
    gaps = []

    async def _heartbeat():
        last = time.monotonic()
        while True:
            await asyncio.sleep(0.01)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    async def _run():
        beat = asyncio.create_task(_heartbeat())
        task = asyncio.create_task(outbox_worker_loop(settings=_settings(), broadcaster=broadcaster))
        deadline = time.monotonic() + 5.0
        while broadcaster.published_ids(org_id) != ids and time.monotonic() < deadline:
            await asyncio.sleep(0.02)
        task.cancel()
        beat.cancel()
        for t in (task, beat):
            with pytest.raises(asyncio.CancelledError):
                await t

    asyncio.run(_run())

    assert broadcaster.published_ids(org_id) == ids
    # 20 sends at 20ms each would stall the loop for 0.4s if run inline.
    assert gaps and max(gaps) < 0.2


def test_worker_is_disabled_under_pytest():
    assert get_outbox_settings().worker_enabled is False

    async def _start():
        return start_outbox_worker_task(_settings(worker_enabled=False))

    assert asyncio.run(_start()) is None
