"""Rebalance scheduler — fires cycles on a fixed interval.

A tick that lands while a cycle is still running is dropped, not queued.
The skip decision belongs to the orchestrator's lock; APScheduler is only
the timer, so it is allowed to start overlapping ticks.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.vault.orchestrator import RebalanceOrchestrator

log = structlog.get_logger()

JOB_ID = "rebalance"


class RebalanceScheduler:
    def __init__(self, orchestrator: RebalanceOrchestrator, tz: str = "UTC") -> None:
        self._orchestrator = orchestrator
        self._scheduler = AsyncIOScheduler(timezone=tz)
        self._ticks = 0
        self._skipped = 0

    @property
    def ticks(self) -> int:
        return self._ticks

    @property
    def skipped(self) -> int:
        return self._skipped

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def tick(self) -> bool:
        """Run one cycle if none is in flight. Returns False when the tick was dropped."""
        self._ticks += 1
        ran = await self._orchestrator.run_if_idle()
        if not ran:
            self._skipped += 1
        return ran

    def start(self, interval_seconds: float, first_run_delay_seconds: float = 10.0) -> None:
        """Must be called from inside a running event loop."""
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
        self._scheduler.add_job(
            self.tick, IntervalTrigger(seconds=interval_seconds),
            id=JOB_ID, name="Rebalance Cycle",
            max_instances=2,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=first_run_delay_seconds),
        )
        self._scheduler.start()
        log.info("scheduler.started", interval_seconds=interval_seconds,
                 first_run_in=first_run_delay_seconds)

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            log.info("scheduler.stopped", ticks=self._ticks, skipped=self._skipped)
