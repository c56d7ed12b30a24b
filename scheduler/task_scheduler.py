"""APScheduler-driven polling loop that dispatches due and run-now tasks."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from scheduler.cron import is_due
from scheduler.models import ScheduledTask

if TYPE_CHECKING:
    from engine.runner import TaskRunner
    from scheduler.task_store import TaskStore

logger = logging.getLogger(__name__)

TICK_JOB_ID = "task-scheduler-tick"


class TaskScheduler:
    """Checks the task store on a fixed cadence and starts due tasks.

    Each tick:
      1. drains the run-now queue,
      2. dispatches every queued task that still exists,
      3. dispatches every due task not already dispatched in step 2.

    Dispatched runs are independent asyncio tasks; the tick never waits for
    them.  A task with a run still in flight is not dispatched again until
    that run has finished; a run-now request for it stays queued meanwhile.
    """

    def __init__(
        self,
        runner: TaskRunner,
        store: TaskStore,
        tick_seconds: float = 60.0,
    ):
        self._runner = runner
        self._store = store
        self._tick_seconds = tick_seconds
        self._aps = AsyncIOScheduler(timezone=timezone.utc)

        self._queue: list[str] = []
        self._queue_lock = asyncio.Lock()
        self._in_flight: set[str] = set()
        self._running: set[asyncio.Task] = set()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the tick job; the first pass runs immediately."""
        self._aps.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._tick_seconds, timezone=timezone.utc),
            id=TICK_JOB_ID,
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._aps.start()
        logger.info("TaskScheduler started", extra={"tick_s": self._tick_seconds})

    async def shutdown(self) -> None:
        """Stop ticking; runs already in flight are left to finish."""
        if self._aps.running:
            self._aps.shutdown(wait=False)
        logger.info("TaskScheduler stopped", extra={"in_flight": len(self._in_flight)})

    @property
    def running(self) -> bool:
        return self._aps.running

    # ── Run-now queue ────────────────────────────────────────────────────────

    async def queue_run_now(self, task_id: str) -> None:
        """Ask for *task_id* to run on the next tick. Idempotent, no existence check."""
        async with self._queue_lock:
            if task_id not in self._queue:
                self._queue.append(task_id)

    async def run_now(self, task_id: str) -> ScheduledTask:
        """Validate that the task exists (raising TaskNotFound), then queue it."""
        task = await self._store.get(task_id)
        await self.queue_run_now(task_id)
        logger.info("Run-now queued", extra={"task_id": task_id})
        return task

    async def pending_run_now(self) -> list[str]:
        async with self._queue_lock:
            return list(self._queue)

    def in_flight(self) -> set[str]:
        return set(self._in_flight)

    # ── Tick ─────────────────────────────────────────────────────────────────

    async def tick(self) -> list[str]:
        """One scheduling pass. Returns the ids dispatched; never raises."""
        dispatched: list[str] = []
        try:
            async with self._queue_lock:
                run_now_ids, self._queue = self._queue, []

            deferred: list[str] = []
            for task_id in run_now_ids:
                try:
                    task = await self._store.get(task_id)
                except KeyError:
                    # Deleted between the request and this tick
                    logger.debug("Run-now task vanished", extra={"task_id": task_id})
                    continue
                if self._dispatch(task):
                    dispatched.append(task.id)
                else:
                    deferred.append(task_id)

            if deferred:
                # Still running: keep the request for a later tick
                async with self._queue_lock:
                    self._queue.extend(t for t in deferred if t not in self._queue)

            now = datetime.now(timezone.utc)
            for task in await self._store.list():
                if task.id in run_now_ids or not is_due(task, now):
                    continue
                if self._dispatch(task):
                    dispatched.append(task.id)
        except Exception:
            logger.exception("Scheduler tick failed")

        if dispatched:
            logger.info("Tick dispatched tasks", extra={"task_ids": dispatched})
        return dispatched

    def tick_soon(self) -> None:
        """Start an extra scheduling pass in the background."""
        self._track(asyncio.create_task(self.tick(), name="task-scheduler-tick-now"))

    async def wait_idle(self) -> None:
        """Wait for every dispatched run to finish."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    # ── Internal ─────────────────────────────────────────────────────────────

    def _dispatch(self, task: ScheduledTask) -> bool:
        if task.id in self._in_flight:
            logger.info("Task still running, not dispatched", extra={"task_id": task.id})
            return False
        self._in_flight.add(task.id)
        self._track(asyncio.create_task(self._execute(task), name=f"task-run-{task.id}"))
        return True

    def _track(self, job: asyncio.Task) -> None:
        self._running.add(job)
        job.add_done_callback(self._running.discard)

    async def _execute(self, task: ScheduledTask) -> None:
        try:
            await self._runner.execute(task)
        except Exception:
            logger.exception("Task run crashed", extra={"task_id": task.id})
        finally:
            self._in_flight.discard(task.id)
