"""Task runner — executes a ScheduledTask's steps in order."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.event_bus import EventBus
from core.logging_config import run_context
from engine import events
from engine.events import TaskEvent
from executors.base import StepOutcome
from executors.registry import ExecutorRegistry
from scheduler.models import (
    Retry,
    RunStatus,
    ScheduledTask,
    StepResult,
    StepStatus,
    Stop,
    TaskRun,
    TaskStep,
    utcnow,
)

if TYPE_CHECKING:
    from scheduler.task_store import TaskStore

logger = logging.getLogger(__name__)

SKIPPED_DEPENDENCY = "Skipped: previous step failed"
SKIPPED_STOPPED = "Skipped: task stopped due to earlier failure"


class TaskRunner:
    def __init__(
        self,
        registry: ExecutorRegistry,
        store: TaskStore | None = None,
        event_bus: EventBus | None = None,
    ):
        self.registry = registry
        self.store = store
        self.event_bus = event_bus

    # ── Public API ───────────────────────────────────────────────────────────

    async def execute(self, task: ScheduledTask) -> TaskRun:
        """Run every step of *task* and record the finished run.

        Steps run strictly in order.  The task's failure policy decides what
        happens after a step that did not succeed:

            stop               remaining steps are marked skipped
            skip_and_continue  move on to the next step
            retry              re-attempt the same step up to max_attempts
                               times, then move on

        A step with ``depends_on_previous`` is skipped without being attempted
        once any earlier step of the run has failed.

        Overall status: success when nothing failed, or when the only failure
        was the first attempted step and everything after it was a dependency
        skip; otherwise partial_success if any step succeeded, else failed.
        """
        run = TaskRun(task_id=task.id)
        with run_context(run.run_id):
            logger.info("Task started", extra={"task_id": task.id, "task_name": task.name})
            await self._emit(events.started(task, run.run_id))

            run.status = await self._run_steps(task, run)
            run.finished_at = utcnow()

            log = logger.info if run.status == RunStatus.SUCCESS else logger.warning
            log(
                "Task finished",
                extra={"task_id": task.id, "status": run.status.value,
                       "duration_s": run.duration_seconds},
            )
            await self._emit(events.finished(task, run.run_id, run.status))
            await self._record(task, run)
        return run

    # ── Core loop ────────────────────────────────────────────────────────────

    async def _run_steps(self, task: ScheduledTask, run: TaskRun) -> RunStatus:
        max_attempts = task.on_failure.max_attempts if isinstance(task.on_failure, Retry) else 1

        successes = failures = 0
        # Dependency skips since the most recent attempted step
        trailing_skips = 0

        for i, step in enumerate(task.steps):
            if failures and step.depends_on_previous:
                await self._add(task, run, _skipped(step, SKIPPED_DEPENDENCY))
                logger.info("Step skipped", extra={"step": step.name, "reason": "dependency"})
                trailing_skips += 1
                continue

            result = await self._attempt(task, step, max_attempts)
            await self._add(task, run, result)
            trailing_skips = 0

            if result.status == StepStatus.SUCCESS:
                successes += 1
                continue

            failures += 1

            if isinstance(task.on_failure, Stop):
                for remaining in task.steps[i + 1:]:
                    await self._add(task, run, _skipped(remaining, SKIPPED_STOPPED))
                break

        return _overall_status(successes, failures, trailing_skips)

    async def _attempt(self, task: ScheduledTask, step: TaskStep, max_attempts: int) -> StepResult:
        """Attempt a step up to *max_attempts* times; only the final attempt is kept."""
        for attempt in range(1, max_attempts + 1):
            started_at = utcnow()
            outcome = await self._invoke(task, step)
            result = StepResult(
                step_id=step.id,
                status=outcome.status,
                output=outcome.output,
                error=outcome.error,
                started_at=started_at,
                finished_at=utcnow(),
            )

            if outcome.status == StepStatus.FAILED and attempt < max_attempts:
                logger.warning(
                    "Step retry",
                    extra={"step": step.name, "attempt": attempt, "max": max_attempts,
                           "error": outcome.error},
                )
                continue

            if outcome.status == StepStatus.SUCCESS:
                logger.info(
                    "Step completed",
                    extra={"step": step.name, "duration_s": result.duration_seconds},
                )
            else:
                logger.warning(
                    "Step failed",
                    extra={"step": step.name, "attempts": attempt,
                           "status": outcome.status.value, "error": outcome.error},
                )
            return result

        raise AssertionError("unreachable: max_attempts must be >= 1")

    async def _invoke(self, task: ScheduledTask, step: TaskStep) -> StepOutcome:
        try:
            executor = self.registry.get(step.executor)
            return await executor.execute(step, task)
        except Exception as e:
            logger.exception("Executor raised", extra={"step": step.name})
            return StepOutcome.failure(f"Executor error: {e}")

    # ── Side effects ─────────────────────────────────────────────────────────

    async def _add(self, task: ScheduledTask, run: TaskRun, result: StepResult) -> None:
        run.step_results.append(result)
        await self._emit(events.step_completed(task, run.run_id, result))

    async def _emit(self, event: TaskEvent) -> None:
        if self.event_bus:
            await self.event_bus.publish(event.task_id, event.model_dump(mode="json"))

    async def _record(self, task: ScheduledTask, run: TaskRun) -> None:
        if not self.store:
            return
        try:
            await self.store.record_run(task.id, run)
        except Exception:
            logger.exception("Failed to record run", extra={"task_id": task.id})


# ── Module-level helpers ──────────────────────────────────────────────────────

def _skipped(step: TaskStep, reason: str) -> StepResult:
    now = utcnow()
    return StepResult(
        step_id=step.id,
        status=StepStatus.SKIPPED,
        error=reason,
        started_at=now,
        finished_at=now,
    )


def _overall_status(successes: int, failures: int, trailing_skips: int) -> RunStatus:
    """Success also covers a run whose single failure only led to dependency skips."""
    if not failures:
        return RunStatus.SUCCESS
    if failures == 1 and not successes and trailing_skips:
        return RunStatus.SUCCESS
    if successes:
        return RunStatus.PARTIAL_SUCCESS
    return RunStatus.FAILED
