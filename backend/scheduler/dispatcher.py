"""Dispatch loop: find due schedules and trigger each one exactly once.

Correctness across processes comes from the store's claim protocol, not
from this loop, so several dispatchers (the in-process loop, Celery beat
workers) may run against the same database at the same time.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from core import metrics
from core.exceptions import ExecutionDispatchError
from scheduler.engine import SchedulerEngine
from services.schedule_store import ScheduleStore

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    """Outcome counts of one dispatch pass."""

    due: int = 0
    dispatched: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return {
            "due": self.due,
            "dispatched": self.dispatched,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class DispatchLoop:
    """Periodically triggers due schedules with bounded parallelism.

    Args:
        engine: Engine whose ``trigger_scheduled`` does the claim and dispatch.
        store: Source of due schedules.
        interval: Seconds between ticks.
        batch_size: Most schedules looked at per tick.
        max_concurrency: Most dispatches in flight at once.
    """

    def __init__(
        self,
        engine: SchedulerEngine,
        store: ScheduleStore,
        interval: float = 30.0,
        batch_size: int = 25,
        max_concurrency: int = 5,
    ):
        self.engine = engine
        self.store = store
        self.interval = interval
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        """Trigger every schedule due at ``now`` (defaults to the engine clock).

        Failures are isolated per schedule; nothing raised by one schedule
        stops the others or escapes the tick.
        """
        start = time.perf_counter()
        now = now or self.engine.clock()
        due = await self.store.list_due(now, limit=self.batch_size)
        result = TickResult(due=len(due))
        metrics.gauge_set("scheduler_due_schedules", len(due))
        if not due:
            return result

        logger.info(f"[dispatcher] {len(due)} due schedule(s) at {now.isoformat()}")
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_one(schedule_id: str) -> str:
            async with semaphore:
                try:
                    execution_id = await self.engine.trigger_scheduled(schedule_id)
                except ExecutionDispatchError as exc:
                    logger.warning(f"[dispatcher] Schedule {schedule_id} dispatch failed: {exc.message}")
                    return "failed"
                except Exception as exc:
                    logger.error(f"[dispatcher] Schedule {schedule_id} errored: {exc}", exc_info=True)
                    return "failed"
                return "dispatched" if execution_id else "skipped"

        outcomes = await asyncio.gather(*(run_one(schedule.id) for schedule in due))
        for outcome in outcomes:
            setattr(result, outcome, getattr(result, outcome) + 1)
            metrics.inc("scheduler_dispatch_total", labels={"outcome": outcome})

        metrics.observe("scheduler_tick_duration_seconds", time.perf_counter() - start)
        logger.info(f"[dispatcher] Tick done: {result.as_dict()}")
        return result

    async def run_forever(self) -> None:
        """Tick every ``interval`` seconds until ``stop()`` is called."""
        logger.info(
            f"[dispatcher] Started (interval={self.interval}s, batch={self.batch_size}, "
            f"concurrency={self.max_concurrency})"
        )
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception as exc:
                # Store unavailable and the like; try again next interval
                logger.error(f"[dispatcher] Tick failed: {exc}", exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("[dispatcher] Stopped")

    def start(self) -> asyncio.Task:
        """Run the loop as a background task of the current event loop."""
        if not self.running:
            self._stopping.clear()
            self._task = asyncio.create_task(self.run_forever(), name="schedule-dispatcher")
        return self._task

    async def stop(self) -> None:
        """Ask the loop to stop and wait for the current tick to finish."""
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
