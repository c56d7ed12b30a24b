"""Tests for TaskRunner: step ordering, failure policies and notifications."""

import asyncio

from core.event_bus import EventBus
from engine.runner import SKIPPED_DEPENDENCY, SKIPPED_STOPPED, TaskRunner
from scheduler.models import (
    Executor,
    Retry,
    RunStatus,
    SkipAndContinue,
    StepStatus,
    Stop,
    TaskStep,
    RunCommand,
)
from scheduler.task_store import TaskStore
from fakes import ScriptedExecutor, make_task, scripted_registry, step


def make_runner(store=None, bus=None):
    executor = ScriptedExecutor()
    return TaskRunner(scripted_registry(executor), store=store, event_bus=bus), executor


def drain(q: asyncio.Queue) -> list[dict]:
    events = []
    while not q.empty():
        events.append(q.get_nowait())
    return events


def statuses(run) -> list[StepStatus]:
    return [r.status for r in run.step_results]


# ── Happy path ────────────────────────────────────────────────────────────────

async def test_all_steps_succeed():
    runner, executor = make_runner()
    task = make_task(step("a"), step("b"), step("c"))

    run = await runner.execute(task)

    assert run.status == RunStatus.SUCCESS
    assert statuses(run) == [StepStatus.SUCCESS] * 3
    assert [r.step_id for r in run.step_results] == ["a", "b", "c"]
    assert executor.order == ["a", "b", "c"]
    assert run.task_id == "task-1"
    assert run.finished_at >= run.started_at
    assert run.step_results[0].output == "ok"


async def test_empty_task_succeeds():
    runner, _ = make_runner()
    run = await runner.execute(make_task())
    assert run.status == RunStatus.SUCCESS
    assert run.step_results == []


async def test_events_in_order():
    bus = EventBus()
    q = bus.subscribe("task-1")
    runner, _ = make_runner(bus=bus)

    run = await runner.execute(make_task(step("a"), step("b")))

    events = drain(q)
    kinds = [e["event_type"]["type"] for e in events]
    assert kinds == ["started", "step_completed", "step_completed", "finished"]
    assert {e["run_id"] for e in events} == {run.run_id}
    assert events[1]["event_type"]["step_name"] == "a"
    assert events[1]["event_type"]["status"] == "success"
    assert events[-1]["event_type"]["status"] == "success"
    assert events[0]["task_name"] == "test-task"


async def test_wildcard_subscriber_sees_events():
    bus = EventBus()
    q = bus.subscribe()
    runner, _ = make_runner(bus=bus)
    await runner.execute(make_task(step("a")))
    assert len(drain(q)) == 3


async def test_one_step_event_per_result():
    bus = EventBus()
    q = bus.subscribe("task-1")
    runner, _ = make_runner(bus=bus)

    run = await runner.execute(make_task(step("a", "fail"), step("b"), step("c")))

    step_events = [e for e in drain(q) if e["event_type"]["type"] == "step_completed"]
    assert len(step_events) == len(run.step_results) == 3
    assert [e["event_type"]["status"] for e in step_events] == ["failed", "skipped", "skipped"]


# ── Stop policy ───────────────────────────────────────────────────────────────

async def test_stop_on_first_step_failure():
    runner, executor = make_runner()
    task = make_task(step("a", "fail"), step("b"), step("c"), on_failure=Stop())

    run = await runner.execute(task)

    assert run.status == RunStatus.FAILED
    assert statuses(run) == [StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.SKIPPED]
    assert run.step_results[0].error == "boom"
    assert all(r.error == SKIPPED_STOPPED for r in run.step_results[1:])
    assert executor.order == ["a"]


async def test_stop_is_default_policy():
    runner, executor = make_runner()
    run = await runner.execute(make_task(step("a", "fail"), step("b")))
    assert run.status == RunStatus.FAILED
    assert executor.order == ["a"]


async def test_stop_after_success_is_partial():
    runner, executor = make_runner()
    task = make_task(step("a"), step("b", "fail"), step("c"), on_failure=Stop())

    run = await runner.execute(task)

    assert run.status == RunStatus.PARTIAL_SUCCESS
    assert statuses(run) == [StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.SKIPPED]
    assert executor.order == ["a", "b"]


async def test_stop_skips_dependent_step_with_stop_reason():
    runner, _ = make_runner()
    task = make_task(step("a", "fail"), step("b", depends=True), on_failure=Stop())

    run = await runner.execute(task)

    assert run.status == RunStatus.FAILED
    assert run.step_results[1].error == SKIPPED_STOPPED


async def test_single_failing_step_fails_run():
    runner, _ = make_runner()
    run = await runner.execute(make_task(step("only", "fail")))
    assert run.status == RunStatus.FAILED
    assert len(run.step_results) == 1


# ── Skip-and-continue policy ──────────────────────────────────────────────────

async def test_skip_and_continue_runs_remaining_steps():
    runner, executor = make_runner()
    task = make_task(step("a", "fail"), step("b"), on_failure=SkipAndContinue())

    run = await runner.execute(task)

    assert run.status == RunStatus.PARTIAL_SUCCESS
    assert statuses(run) == [StepStatus.FAILED, StepStatus.SUCCESS]
    assert executor.order == ["a", "b"]


async def test_skip_and_continue_all_failing():
    runner, _ = make_runner()
    task = make_task(step("a", "fail"), step("b", "fail"), on_failure=SkipAndContinue())
    run = await runner.execute(task)
    assert run.status == RunStatus.FAILED


# ── Retry policy ──────────────────────────────────────────────────────────────

async def test_retry_recovers_within_attempts():
    runner, executor = make_runner()
    task = make_task(step("a", "flaky:2"), step("b"), on_failure=Retry(max_attempts=3))

    run = await runner.execute(task)

    assert run.status == RunStatus.SUCCESS
    assert len(run.step_results) == 2
    assert run.step_results[0].status == StepStatus.SUCCESS
    assert run.step_results[0].output == "recovered"
    assert executor.calls["a"] == 3


async def test_retry_exhausted_moves_on():
    runner, executor = make_runner()
    task = make_task(step("a", "fail"), step("b"), on_failure=Retry(max_attempts=3))

    run = await runner.execute(task)

    assert run.status == RunStatus.PARTIAL_SUCCESS
    assert statuses(run) == [StepStatus.FAILED, StepStatus.SUCCESS]
    assert executor.calls["a"] == 3
    assert executor.calls["b"] == 1


async def test_retry_one_attempt_means_no_retry():
    runner, executor = make_runner()
    task = make_task(step("a", "fail"), on_failure=Retry(max_attempts=1))
    run = await runner.execute(task)
    assert run.status == RunStatus.FAILED
    assert executor.calls["a"] == 1


async def test_retry_keeps_only_final_attempt():
    runner, _ = make_runner()
    task = make_task(step("a", "flaky:5"), on_failure=Retry(max_attempts=2))
    run = await runner.execute(task)
    assert len(run.step_results) == 1
    assert run.step_results[0].error == "attempt 2 failed"


async def test_non_failed_status_is_not_retried():
    runner, executor = make_runner()
    task = make_task(step("a", "weird"), step("b"), on_failure=Retry(max_attempts=3))

    run = await runner.execute(task)

    assert executor.calls["a"] == 1
    assert run.step_results[0].status == StepStatus.SKIPPED
    assert run.status == RunStatus.PARTIAL_SUCCESS


# ── depends_on_previous ───────────────────────────────────────────────────────

async def test_failure_followed_by_dependent_steps_is_success():
    runner, executor = make_runner()
    task = make_task(
        step("a", "fail"),
        step("b", depends=True),
        step("c", depends=True),
        on_failure=SkipAndContinue(),
    )

    run = await runner.execute(task)

    assert run.status == RunStatus.SUCCESS
    assert statuses(run) == [StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.SKIPPED]
    assert all(r.error == SKIPPED_DEPENDENCY for r in run.step_results[1:])
    assert executor.order == ["a"]


async def test_dependent_skip_after_non_adjacent_failure():
    runner, executor = make_runner()
    task = make_task(
        step("a", "fail"),
        step("b"),
        step("c", depends=True),
        on_failure=SkipAndContinue(),
    )

    run = await runner.execute(task)

    assert statuses(run) == [StepStatus.FAILED, StepStatus.SUCCESS, StepStatus.SKIPPED]
    assert run.step_results[2].error == SKIPPED_DEPENDENCY
    assert run.status == RunStatus.PARTIAL_SUCCESS
    assert executor.order == ["a", "b"]


async def test_dependent_step_runs_when_nothing_failed():
    runner, executor = make_runner()
    run = await runner.execute(make_task(step("a"), step("b", depends=True)))
    assert run.status == RunStatus.SUCCESS
    assert executor.order == ["a", "b"]


async def test_success_then_failure_then_dependent_skip_is_partial():
    runner, _ = make_runner()
    task = make_task(
        step("a"),
        step("b", "fail"),
        step("c", depends=True),
        on_failure=SkipAndContinue(),
    )

    run = await runner.execute(task)

    assert statuses(run) == [StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.SKIPPED]
    assert run.status == RunStatus.PARTIAL_SUCCESS


async def test_two_failures_each_followed_by_dependent_skip_is_failed():
    runner, executor = make_runner()
    task = make_task(
        step("a", "fail"),
        step("b", depends=True),
        step("c", "fail"),
        step("d", depends=True),
        on_failure=SkipAndContinue(),
    )

    run = await runner.execute(task)

    assert statuses(run) == [
        StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.FAILED, StepStatus.SKIPPED,
    ]
    assert run.status == RunStatus.FAILED
    assert executor.order == ["a", "c"]


async def test_retry_exhausted_then_dependent_skip_is_success():
    runner, executor = make_runner()
    task = make_task(
        step("a", "fail"),
        step("b", depends=True),
        on_failure=Retry(max_attempts=2),
    )

    run = await runner.execute(task)

    assert run.status == RunStatus.SUCCESS
    assert executor.calls["a"] == 2


async def test_failure_after_dependent_skip_is_failed():
    runner, _ = make_runner()
    task = make_task(
        step("a", "fail"),
        step("b", depends=True),
        step("c", "fail"),
        on_failure=SkipAndContinue(),
    )
    run = await runner.execute(task)
    assert run.status == RunStatus.FAILED


# ── Executor problems ─────────────────────────────────────────────────────────

async def test_executor_exception_becomes_failed_step():
    runner, _ = make_runner()
    task = make_task(step("a", "raise"), step("b"), on_failure=SkipAndContinue())

    run = await runner.execute(task)

    assert run.step_results[0].status == StepStatus.FAILED
    assert run.step_results[0].error == "Executor error: executor bug"
    assert run.status == RunStatus.PARTIAL_SUCCESS


async def test_unregistered_executor_fails_step():
    runner, _ = make_runner()
    web_step = TaskStep(
        id="w", name="w", executor=Executor.WEB, action=RunCommand(command="ok")
    )
    run = await runner.execute(make_task(web_step))

    assert run.status == RunStatus.FAILED
    assert run.step_results[0].error.startswith("Executor error:")
    assert "not registered" in run.step_results[0].error


# ── Recording ─────────────────────────────────────────────────────────────────

async def test_run_is_recorded_in_store(tmp_path):
    store = TaskStore(tmp_path / "tasks.json")
    task = await store.create(make_task(step("a"), id="rec"))
    runner, _ = make_runner(store=store)

    run = await runner.execute(task)

    history = await store.history("rec")
    assert [r.run_id for r in history] == [run.run_id]
    stored = await store.get("rec")
    assert stored.last_run.status == RunStatus.SUCCESS


async def test_recording_for_deleted_task_does_not_raise(tmp_path):
    store = TaskStore(tmp_path / "tasks.json")
    runner, _ = make_runner(store=store)
    run = await runner.execute(make_task(step("a"), id="gone"))
    assert run.status == RunStatus.SUCCESS
    assert await store.list() == []


async def test_finished_event_published_before_history_write(tmp_path):
    store = TaskStore(tmp_path / "tasks.json")
    task = await store.create(make_task(step("a"), id="order"))
    bus = EventBus()
    q = bus.subscribe("order")
    seen_history = []

    original_publish = bus.publish

    async def spy(key, event):
        if event["event_type"]["type"] == "finished":
            seen_history.append(len(await store.history("order")))
        await original_publish(key, event)

    bus.publish = spy
    runner, _ = make_runner(store=store, bus=bus)
    await runner.execute(task)

    assert seen_history == [0]
    assert drain(q)[-1]["event_type"]["type"] == "finished"
