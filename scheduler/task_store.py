"""TaskStore — JSON-file persistence for scheduled tasks and their run history.

The whole store lives in memory and is rewritten to disk after every mutation.
A single asyncio.Lock serialises every operation, reads included, and the disk
write happens while the lock is held.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from scheduler.cron import next_run_time
from scheduler.models import (
    RunStatus,
    ScheduledTask,
    TaskHistory,
    TaskRun,
    TaskStoreDocument,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20


class TaskNotFound(KeyError):
    """Raised when an operation references a task id absent from the store."""

    def __init__(self, task_id: str):
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task not found: {self.task_id}"


class PersistenceError(RuntimeError):
    """Raised when the store document cannot be written."""


def load_document(path: Path) -> TaskStoreDocument:
    """Read the store document; missing or unreadable content yields an empty store."""
    if not path.exists():
        return TaskStoreDocument()
    try:
        return TaskStoreDocument.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValueError, ValidationError) as e:
        logger.warning("Task store unreadable, starting empty", extra={"path": str(path), "error": str(e)})
        return TaskStoreDocument()


class TaskStore:
    def __init__(self, path: str | Path, history_limit: int = DEFAULT_HISTORY_LIMIT):
        self.path = Path(path)
        self.history_limit = history_limit
        self._lock = asyncio.Lock()
        self._doc = load_document(self.path)
        logger.info(
            "TaskStore ready",
            extra={"path": str(self.path), "tasks": len(self._doc.tasks)},
        )

    # ── CRUD ─────────────────────────────────────────────────────────────────

    async def create(self, task: ScheduledTask) -> ScheduledTask:
        """Assign ids and timestamps, compute next_run, append and persist."""
        task = task.model_copy(deep=True)
        if not task.id:
            task.id = new_id()
        for step in task.steps:
            if not step.id:
                step.id = new_id()

        now = utcnow()
        task.created_at = now
        task.updated_at = now
        task.next_run = next_run_time(task.cron_expression, now)

        async with self._lock:
            self._doc.tasks.append(task)
            self._persist()
        logger.info("Task created", extra={"task_id": task.id, "task_name": task.name})
        return task.model_copy(deep=True)

    async def update(self, task: ScheduledTask) -> ScheduledTask:
        """Replace an existing task. Raises TaskNotFound if its id is unknown."""
        task = task.model_copy(deep=True)
        for step in task.steps:
            if not step.id:
                step.id = new_id()

        async with self._lock:
            pos = self._index(task.id)
            task.updated_at = utcnow()
            task.next_run = next_run_time(task.cron_expression, task.updated_at)
            self._doc.tasks[pos] = task
            self._persist()
        logger.info("Task updated", extra={"task_id": task.id})
        return task.model_copy(deep=True)

    async def delete(self, task_id: str) -> None:
        """Remove a task and its history. Raises TaskNotFound if absent."""
        async with self._lock:
            pos = self._index(task_id)
            del self._doc.tasks[pos]
            self._doc.history = [h for h in self._doc.history if h.task_id != task_id]
            self._persist()
        logger.info("Task deleted", extra={"task_id": task_id})

    async def toggle(self, task_id: str) -> ScheduledTask:
        """Flip ``enabled``; re-enabling recomputes next_run."""
        async with self._lock:
            task = self._doc.tasks[self._index(task_id)]
            task.enabled = not task.enabled
            task.updated_at = utcnow()
            if task.enabled:
                task.next_run = next_run_time(task.cron_expression, task.updated_at)
            self._persist()
            result = task.model_copy(deep=True)
        logger.info("Task toggled", extra={"task_id": task_id, "enabled": result.enabled})
        return result

    async def get(self, task_id: str) -> ScheduledTask:
        async with self._lock:
            return self._doc.tasks[self._index(task_id)].model_copy(deep=True)

    async def list(self, project_id: str | None = None) -> list[ScheduledTask]:
        async with self._lock:
            return [
                t.model_copy(deep=True)
                for t in self._doc.tasks
                if project_id is None or t.project_id == project_id
            ]

    async def history(self, task_id: str) -> list[TaskRun]:
        """Return the task's recorded runs, oldest first."""
        async with self._lock:
            self._index(task_id)
            entry = self._history_entry(task_id)
            return [r.model_copy(deep=True) for r in entry.runs] if entry else []

    async def counts(self) -> dict[str, int]:
        async with self._lock:
            tasks = self._doc.tasks
            failing = {RunStatus.FAILED, RunStatus.PARTIAL_SUCCESS}
            return {
                "total": len(tasks),
                "active": sum(1 for t in tasks if t.enabled),
                "failing": sum(1 for t in tasks if t.last_run and t.last_run.status in failing),
            }

    # ── Runs ─────────────────────────────────────────────────────────────────

    async def record_run(self, task_id: str, run: TaskRun) -> None:
        """Store a finished run: set last_run, advance next_run, append to history."""
        run = run.model_copy(deep=True)
        async with self._lock:
            task = next((t for t in self._doc.tasks if t.id == task_id), None)
            if task is None:
                logger.warning("Run recorded for unknown task, dropped", extra={"task_id": task_id})
                return

            task.last_run = run
            task.next_run = next_run_time(task.cron_expression)

            entry = self._history_entry(task_id)
            if entry is None:
                entry = TaskHistory(task_id=task_id)
                self._doc.history.append(entry)
            entry.runs.append(run)
            if len(entry.runs) > self.history_limit:
                entry.runs = entry.runs[-self.history_limit:]
            self._persist()
        logger.info(
            "Run recorded",
            extra={"task_id": task_id, "run_id": run.run_id, "status": run.status.value},
        )

    # ── Internal ─────────────────────────────────────────────────────────────

    def _index(self, task_id: str) -> int:
        for pos, task in enumerate(self._doc.tasks):
            if task.id == task_id:
                return pos
        raise TaskNotFound(task_id)

    def _history_entry(self, task_id: str) -> TaskHistory | None:
        return next((h for h in self._doc.history if h.task_id == task_id), None)

    def _persist(self) -> None:
        """Atomically rewrite the whole document (temp file + rename)."""
        data = self._doc.model_dump_json(indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".tasks-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(data)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write task store {self.path}: {e}") from e
