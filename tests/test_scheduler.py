"""
tests/test_scheduler.py — Unit tests for the cycle scheduler and housekeeping.

Run:
    pytest tests/test_scheduler.py -v
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import seed_negative_review
from models import Alert, AlertStatus
from src.services.monitor import ALREADY_RUNNING, AutoDefenseConfig, CycleResult, MonitorService
from src.services.scheduler import CycleScheduler, seconds_until_midnight


def _monitor() -> MagicMock:
    monitor = MagicMock()
    monitor.run_cycle = AsyncMock(return_value=CycleResult(relations_checked=2))
    monitor.get_status.return_value = {"is_running": False, "last_run_at": None}
    return monitor


def test_seconds_until_midnight():
    now = datetime(2024, 6, 1, 23, 30, tzinfo=timezone.utc)
    assert seconds_until_midnight(now) == 1800
    assert seconds_until_midnight(datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc)) == 86_400


@pytest.mark.asyncio
async def test_trigger_manually_runs_a_cycle(session_factory):
    monitor = _monitor()
    scheduler = CycleScheduler(monitor, interval_minutes=5, session_factory=session_factory)

    result = await scheduler.trigger_manually()

    assert result.relations_checked == 2
    monitor.run_cycle.assert_awaited_once()


@pytest.mark.asyncio
async def test_warmup_cycle_runs_after_start(session_factory):
    monitor = _monitor()
    scheduler = CycleScheduler(monitor, interval_minutes=5, warmup_seconds=0, session_factory=session_factory)

    scheduler.start()
    assert scheduler.is_scheduled
    for _ in range(5):
        await asyncio.sleep(0)
    scheduler.stop()

    assert not scheduler.is_scheduled
    monitor.run_cycle.assert_awaited_once()


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_stop_lets_in_flight_cycle_finish(session_factory):
    started, release = asyncio.Event(), asyncio.Event()

    async def slow_cycle():
        started.set()
        await release.wait()
        return CycleResult(relations_checked=3)

    monitor = _monitor()
    monitor.run_cycle = AsyncMock(side_effect=slow_cycle)
    scheduler = CycleScheduler(monitor, warmup_seconds=0, session_factory=session_factory)
    scheduler.interval_minutes = 0.002  # ticks every 120ms

    scheduler.start()
    await asyncio.wait_for(started.wait(), timeout=1)
    scheduler.stop()
    cycles = list(scheduler._cycles)
    release.set()
    results = await asyncio.wait_for(asyncio.gather(*cycles), timeout=1)

    assert [r.relations_checked for r in results] == [3]
    await asyncio.sleep(0.3)
    assert monitor.run_cycle.await_count == 1


@pytest.mark.asyncio
async def test_manual_trigger_skipped_while_scheduled_cycle_runs(session_factory):
    release = asyncio.Event()

    async def blocked_vouches(*args, **kwargs):
        await release.wait()
        return []

    client = MagicMock()
    client.get_vouches = AsyncMock(side_effect=blocked_vouches)
    monitor = MonitorService(
        client, MagicMock(), user_key="profileId:1", session_factory=session_factory,
        auto_defense=AutoDefenseConfig(),
    )
    scheduler = CycleScheduler(monitor, interval_minutes=5, warmup_seconds=0, session_factory=session_factory)

    scheduler.start()
    await _wait_until(lambda: monitor.is_running)
    manual = await scheduler.trigger_manually()
    scheduler.stop()
    release.set()
    await asyncio.wait_for(asyncio.gather(*scheduler._cycles), timeout=1)

    assert manual.errors == [ALREADY_RUNNING]
    assert client.get_vouches.await_count == 1
    assert not monitor.is_running


@pytest.mark.asyncio
async def test_status_merges_monitor_status(session_factory):
    scheduler = CycleScheduler(_monitor(), interval_minutes=7, session_factory=session_factory)
    status = scheduler.get_status()

    assert status["interval_minutes"] == 7
    assert status["is_scheduled"] is False
    assert status["is_running"] is False


@pytest.mark.asyncio
async def test_housekeeping_expires_only_stale_pending_alerts(session_factory):
    await seed_negative_review(session_factory, review_id="review_1", alert_id="old")
    await seed_negative_review(session_factory, review_id="review_2", relation_id="vouch-2", alert_id="fresh")
    async with session_factory() as db:
        old = await db.get(Alert, "old")
        old.sent_at = datetime.now(timezone.utc) - timedelta(hours=100)
        await db.commit()

    scheduler = CycleScheduler(_monitor(), alert_expiry_hours=72, session_factory=session_factory)
    expired = await scheduler.run_housekeeping()

    assert expired == 1
    assert scheduler.last_housekeeping_at is not None
    async with session_factory() as db:
        assert (await db.get(Alert, "old")).status == AlertStatus.EXPIRED.value
        assert (await db.get(Alert, "fresh")).status == AlertStatus.PENDING.value
