"""FastAPI service layer for the task engine."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from api.models import RunNowResponse, TaskCounts
from core.config import get_settings
from core.event_bus import ALL, EventBus
from engine.runner import TaskRunner
from executors.registry import default_registry
from scheduler.models import ScheduledTask, TaskRun
from scheduler.task_scheduler import TaskScheduler
from scheduler.task_store import PersistenceError, TaskNotFound, TaskStore

logger = logging.getLogger(__name__)

# ── Singletons ────────────────────────────────────────────────────────────────
# Built at import so routes work even when ASGITransport skips the lifespan
# (e.g. in tests, which swap these module attributes for isolated ones).

_settings = get_settings()
_store = TaskStore(_settings.tasks_file, history_limit=_settings.history_limit)
_event_bus = EventBus()
_registry = default_registry(_settings)
_runner = TaskRunner(_registry, store=_store, event_bus=_event_bus)
_scheduler = TaskScheduler(_runner, _store, tick_seconds=_settings.tick_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _scheduler.start()
    yield
    await _scheduler.shutdown()


app = FastAPI(
    title="Task Engine API",
    description="Scheduled multi-step automations with cron triggers.",
    version="0.1.0",
    lifespan=lifespan,
)


def _not_found(e: TaskNotFound) -> HTTPException:
    return HTTPException(404, detail=str(e))


def _persistence_failed(e: PersistenceError) -> HTTPException:
    logger.error("Persistence failure", extra={"error": str(e)})
    return HTTPException(500, detail=str(e))


# ── Routes ────────────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "scheduler_running": _scheduler.running,
        "runs_in_flight": len(_scheduler.in_flight()),
    }


@app.get("/tasks", response_model=list[ScheduledTask])
async def list_tasks(project_id: str | None = None):
    """List tasks, optionally limited to one project."""
    return await _store.list(project_id=project_id)


@app.get("/tasks/summary", response_model=TaskCounts)
async def task_summary():
    """Total, enabled and failing task counts."""
    return TaskCounts(**await _store.counts())


@app.post("/tasks", response_model=ScheduledTask, status_code=201)
async def create_task(task: ScheduledTask):
    """Create a task; ids, timestamps and next_run are assigned server-side."""
    try:
        return await _store.create(task)
    except PersistenceError as e:
        raise _persistence_failed(e)


@app.get("/tasks/{task_id}", response_model=ScheduledTask)
async def get_task(task_id: str):
    try:
        return await _store.get(task_id)
    except TaskNotFound as e:
        raise _not_found(e)


@app.put("/tasks/{task_id}", response_model=ScheduledTask)
async def update_task(task_id: str, task: ScheduledTask):
    """Replace a task. The id in the path wins over any id in the body."""
    task.id = task_id
    try:
        return await _store.update(task)
    except TaskNotFound as e:
        raise _not_found(e)
    except PersistenceError as e:
        raise _persistence_failed(e)


@app.delete("/tasks/{task_id}", status_code=204)
async def delete_task(task_id: str):
    """Delete a task together with its run history."""
    try:
        await _store.delete(task_id)
    except TaskNotFound as e:
        raise _not_found(e)
    except PersistenceError as e:
        raise _persistence_failed(e)


@app.post("/tasks/{task_id}/toggle", response_model=ScheduledTask)
async def toggle_task(task_id: str):
    """Enable a disabled task or disable an enabled one."""
    try:
        return await _store.toggle(task_id)
    except TaskNotFound as e:
        raise _not_found(e)
    except PersistenceError as e:
        raise _persistence_failed(e)


@app.post("/tasks/{task_id}/run", response_model=RunNowResponse, status_code=202)
async def run_task_now(task_id: str):
    """Queue a task for immediate execution and kick off a scheduling pass.

    A task that is already running keeps the request queued; it runs again
    on the first tick after the current run finishes.
    """
    try:
        await _scheduler.run_now(task_id)
    except TaskNotFound as e:
        raise _not_found(e)
    _scheduler.tick_soon()
    return RunNowResponse(task_id=task_id, status="queued")


@app.get("/tasks/{task_id}/history", response_model=list[TaskRun])
async def task_history(task_id: str):
    """Recorded runs for a task, oldest first."""
    try:
        return await _store.history(task_id)
    except TaskNotFound as e:
        raise _not_found(e)


_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _event_stream(key: str, stop_on_finish: bool) -> StreamingResponse:
    async def generator():
        q = _event_bus.subscribe(key)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(q.get(), timeout=30.0)
                    yield f"data: {json.dumps(event)}\n\n"
                    if stop_on_finish and event["event_type"]["type"] == "finished":
                        return
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
        except asyncio.CancelledError:
            pass
        finally:
            _event_bus.unsubscribe(key, q)

    return StreamingResponse(generator(), media_type="text/event-stream", headers=_SSE_HEADERS)


@app.get("/events")
async def stream_all_events():
    """Stream every task notification as Server-Sent Events.

    Each event is a JSON-encoded TaskEvent on a ``data:`` line.  A comment
    line (``: heartbeat``) is sent every 30 s to keep the connection alive.
    """
    return _event_stream(ALL, stop_on_finish=False)


@app.get("/tasks/{task_id}/events")
async def stream_task_events(task_id: str):
    """Stream one task's notifications until its next run finishes."""
    try:
        await _store.get(task_id)
    except TaskNotFound as e:
        raise _not_found(e)
    return _event_stream(task_id, stop_on_finish=True)
