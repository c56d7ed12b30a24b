"""Tests for the FastAPI task endpoints."""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

import api.server as server_module
from core.event_bus import EventBus
from engine.runner import TaskRunner
from scheduler.task_scheduler import TaskScheduler
from scheduler.task_store import TaskStore
from fakes import scripted_registry


@pytest.fixture(autouse=True)
def isolated_engine(tmp_path):
    """Point the server singletons at a throwaway store and scripted executors."""
    saved = (
        server_module._store,
        server_module._event_bus,
        server_module._runner,
        server_module._scheduler,
    )
    store = TaskStore(tmp_path / "tasks.json")
    bus = EventBus()
    runner = TaskRunner(scripted_registry(), store=store, event_bus=bus)
    server_module._store = store
    server_module._event_bus = bus
    server_module._runner = runner
    server_module._scheduler = TaskScheduler(runner, store, tick_seconds=3600)
    yield
    (
        server_module._store,
        server_module._event_bus,
        server_module._runner,
        server_module._scheduler,
    ) = saved


@pytest.fixture
async def client():
    async with AsyncClient(
        transport=ASGITransport(app=server_module.app),
        base_url="http://test",
    ) as c:
        yield c


def task_payload(name: str = "nightly", **fields) -> dict:
    payload = {
        "name": name,
        "cron_expression": "0 2 * * *",
        "on_failure": {"type": "skip_and_continue"},
        "steps": [
            {
                "name": "build",
                "executor": "local",
                "action": {"type": "run_command", "command": "ok"},
            },
            {
                "name": "deploy",
                "executor": "local",
                "action": {"type": "run_command", "command": "fail"},
                "depends_on_previous": True,
            },
        ],
    }
    payload.update(fields)
    return payload


async def wait_for_history(client, task_id: str, timeout: float = 2.0) -> list[dict]:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        resp = await client.get(f"/tasks/{task_id}/history")
        if resp.json():
            return resp.json()
        await asyncio.sleep(0.02)
    raise AssertionError(f"no run recorded for {task_id}")


# ── Health ────────────────────────────────────────────────────────────────────

async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "scheduler_running": False, "runs_in_flight": 0}


async def test_openapi_schema_available(client):
    resp = await client.get("/openapi.json")
    assert resp.status_code == 200
    paths = resp.json()["paths"]
    assert "/tasks" in paths
    assert "/tasks/{task_id}/run" in paths
    assert "/tasks/{task_id}/history" in paths


# ── CRUD ──────────────────────────────────────────────────────────────────────

async def test_create_task(client):
    resp = await client.post("/tasks", json=task_payload())
    assert resp.status_code == 201
    data = resp.json()
    assert data["id"]
    assert all(s["id"] for s in data["steps"])
    assert data["enabled"] is True
    assert data["next_run"] is not None
    assert data["on_failure"] == {"type": "skip_and_continue"}


async def test_create_rejects_unknown_action(client):
    payload = task_payload()
    payload["steps"][0]["action"] = {"type": "teleport"}
    resp = await client.post("/tasks", json=payload)
    assert resp.status_code == 422


async def test_create_rejects_zero_retry_attempts(client):
    resp = await client.post(
        "/tasks", json=task_payload(on_failure={"type": "retry", "max_attempts": 0})
    )
    assert resp.status_code == 422


async def test_list_tasks(client):
    assert (await client.get("/tasks")).json() == []
    await client.post("/tasks", json=task_payload("a", project_id="site"))
    await client.post("/tasks", json=task_payload("b"))

    all_tasks = (await client.get("/tasks")).json()
    assert [t["name"] for t in all_tasks] == ["a", "b"]

    site = (await client.get("/tasks", params={"project_id": "site"})).json()
    assert [t["name"] for t in site] == ["a"]


async def test_get_task(client):
    created = (await client.post("/tasks", json=task_payload())).json()
    resp = await client.get(f"/tasks/{created['id']}")
    assert resp.status_code == 200
    assert resp.json() == created


async def test_get_task_not_found(client):
    resp = await client.get("/tasks/ghost")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Task not found: ghost"


async def test_update_task_path_id_wins(client):
    created = (await client.post("/tasks", json=task_payload())).json()
    body = dict(created, id="something-else", name="renamed", cron_expression="*/5 * * * *")

    resp = await client.put(f"/tasks/{created['id']}", json=body)

    assert resp.status_code == 200
    data = resp.json()
    assert data["id"] == created["id"]
    assert data["name"] == "renamed"
    assert [t["id"] for t in (await client.get("/tasks")).json()] == [created["id"]]


async def test_update_task_not_found(client):
    resp = await client.put("/tasks/ghost", json=task_payload())
    assert resp.status_code == 404


async def test_delete_task(client):
    created = (await client.post("/tasks", json=task_payload())).json()
    resp = await client.delete(f"/tasks/{created['id']}")
    assert resp.status_code == 204
    assert (await client.get(f"/tasks/{created['id']}")).status_code == 404


async def test_delete_task_not_found(client):
    assert (await client.delete("/tasks/ghost")).status_code == 404


async def test_toggle_task(client):
    created = (await client.post("/tasks", json=task_payload())).json()

    off = await client.post(f"/tasks/{created['id']}/toggle")
    assert off.status_code == 200
    assert off.json()["enabled"] is False

    on = await client.post(f"/tasks/{created['id']}/toggle")
    assert on.json()["enabled"] is True


async def test_toggle_not_found(client):
    assert (await client.post("/tasks/ghost/toggle")).status_code == 404


# ── Run now / history ─────────────────────────────────────────────────────────

async def test_run_now_accepted_and_recorded(client):
    created = (await client.post("/tasks", json=task_payload())).json()

    resp = await client.post(f"/tasks/{created['id']}/run")
    assert resp.status_code == 202
    assert resp.json() == {"task_id": created["id"], "status": "queued"}

    history = await wait_for_history(client, created["id"])
    assert len(history) == 1
    run = history[0]
    # Nothing failed before deploy, so it runs and fails
    assert [r["status"] for r in run["step_results"]] == ["success", "failed"]
    assert run["status"] == "partial_success"


async def test_run_now_tick_is_tracked(client):
    created = (await client.post("/tasks", json=task_payload())).json()

    await client.post(f"/tasks/{created['id']}/run")
    await server_module._scheduler.wait_idle()

    history = (await client.get(f"/tasks/{created['id']}/history")).json()
    assert len(history) == 1


async def test_run_now_not_found(client):
    assert (await client.post("/tasks/ghost/run")).status_code == 404


async def test_history_empty(client):
    created = (await client.post("/tasks", json=task_payload())).json()
    resp = await client.get(f"/tasks/{created['id']}/history")
    assert resp.status_code == 200
    assert resp.json() == []


async def test_history_not_found(client):
    assert (await client.get("/tasks/ghost/history")).status_code == 404


async def test_summary(client):
    a = (await client.post("/tasks", json=task_payload("a"))).json()
    b = (await client.post("/tasks", json=task_payload("b"))).json()
    await client.post(f"/tasks/{b['id']}/toggle")
    await client.post(f"/tasks/{a['id']}/run")
    await wait_for_history(client, a["id"])

    resp = await client.get("/tasks/summary")
    assert resp.status_code == 200
    assert resp.json() == {"total": 2, "active": 1, "failing": 1}


# ── Events ────────────────────────────────────────────────────────────────────

async def test_task_events_not_found(client):
    assert (await client.get("/tasks/ghost/events")).status_code == 404
