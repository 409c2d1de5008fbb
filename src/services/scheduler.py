"""
src/services/scheduler.py — Timers that drive the monitor cycle.

Three asyncio tasks:
  - warm-up      one cycle shortly after startup
  - interval     one cycle every `interval_minutes`
  - housekeeping daily at 00:00 UTC, expires stale PENDING alerts

Timer ticks launch the cycle in its own task, so stop() cancels the timers
without interrupting a cycle that is already running. Overlap protection
lives in MonitorService.run_cycle().
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import AsyncSessionLocal
from src.services import store
from src.services.monitor import CycleResult, MonitorService

logger = logging.getLogger(__name__)


def seconds_until_midnight(now: datetime | None = None) -> float:
    """Seconds from `now` until the next 00:00 UTC."""
    now = now or datetime.now(timezone.utc)
    target = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return (target - now).total_seconds()


class CycleScheduler:
    def __init__(
        self,
        monitor: MonitorService,
        interval_minutes: int | None = None,
        warmup_seconds: float | None = None,
        alert_expiry_hours: int | None = None,
        session_factory=AsyncSessionLocal,
    ):
        self.monitor = monitor
        self.interval_minutes = interval_minutes or settings.monitor_interval_minutes
        self.warmup_seconds = settings.monitor_warmup_seconds if warmup_seconds is None else warmup_seconds
        self.alert_expiry_hours = alert_expiry_hours or settings.alert_expiry_hours
        self._session_factory = session_factory
        self._timers: list[asyncio.Task] = []
        self._cycles: set[asyncio.Task] = set()
        self.last_housekeeping_at: datetime | None = None

    @property
    def is_scheduled(self) -> bool:
        return any(not t.done() for t in self._timers)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self.is_scheduled:
            logger.warning("Scheduler already started")
            return
        self._timers = [
            asyncio.create_task(self._warmup(), name="monitor_warmup"),
            asyncio.create_task(self._interval_loop(), name="monitor_interval"),
            asyncio.create_task(self._housekeeping_loop(), name="daily_housekeeping"),
        ]
        logger.info(
            "Scheduler started — monitor every %d min (first run in %.0fs), housekeeping daily at 00:00 UTC",
            self.interval_minutes, self.warmup_seconds,
        )

    def stop(self) -> None:
        """Cancel the timers. An in-flight cycle keeps running to completion."""
        for task in self._timers:
            task.cancel()
        self._timers = []
        logger.info("Scheduler stopped")

    async def trigger_manually(self) -> CycleResult:
        logger.info("Manual monitor trigger")
        return await self.monitor.run_cycle()

    def get_status(self) -> dict:
        return {
            "is_scheduled": self.is_scheduled,
            "interval_minutes": self.interval_minutes,
            "last_housekeeping_at": (
                self.last_housekeeping_at.isoformat() if self.last_housekeeping_at else None
            ),
            **self.monitor.get_status(),
        }

    # ── Timers ────────────────────────────────────────────────────────────────

    def _spawn_cycle(self) -> None:
        task = asyncio.create_task(self.monitor.run_cycle(), name="monitor_cycle")
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)

    async def _warmup(self) -> None:
        try:
            await asyncio.sleep(self.warmup_seconds)
        except asyncio.CancelledError:
            return
        self._spawn_cycle()

    async def _interval_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval_minutes * 60)
            except asyncio.CancelledError:
                return
            self._spawn_cycle()

    async def _housekeeping_loop(self) -> None:
        while True:
            sleep_secs = seconds_until_midnight()
            logger.info("Housekeeping: sleeping %.0fs until 00:00 UTC", sleep_secs)
            try:
                await asyncio.sleep(sleep_secs)
            except asyncio.CancelledError:
                return

            await self.run_housekeeping()

            try:
                await asyncio.sleep(1)  # small buffer before recalculating next target
            except asyncio.CancelledError:
                return

    async def run_housekeeping(self) -> int:
        """Expire PENDING alerts older than `alert_expiry_hours`. Returns the count."""
        try:
            async with self._session_factory() as db:
                expired = await store.expire_stale_alerts(db, self.alert_expiry_hours)
                await db.commit()
        except SQLAlchemyError as exc:
            logger.error("Housekeeping error: %s", exc)
            return 0
        self.last_housekeeping_at = datetime.now(timezone.utc)
        logger.info("Housekeeping: %d stale alerts expired", expired)
        return expired
