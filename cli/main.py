"""Task Engine CLI — interact with a running Task Engine API server."""

from __future__ import annotations

import json
import sys
from typing import Any

import click
import httpx
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

_STATUS_COLOR: dict[str, str] = {
    "success": "green",
    "partial_success": "yellow",
    "failed": "red",
    "running": "yellow",
    "pending": "blue",
    "skipped": "dim",
    "enabled": "green",
    "disabled": "dim",
}


# ── Internal helpers ──────────────────────────────────────────────────────────


def _color(status: str) -> str:
    return _STATUS_COLOR.get(status, "white")


def _client(url: str) -> httpx.Client:
    return httpx.Client(base_url=url.rstrip("/"), timeout=30)


def _load_file(path: str) -> dict:
    with open(path) as f:
        return yaml.safe_load(f) if path.endswith((".yaml", ".yml")) else json.load(f)


def _die(msg: str, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/] {msg}")
    sys.exit(code)


def _check(resp: httpx.Response) -> None:
    if resp.status_code == 404:
        _die(resp.json().get("detail", "Not found"))
    if resp.is_error:
        _die(f"HTTP {resp.status_code}: {resp.text}")


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _policy(on_failure: dict) -> str:
    kind = on_failure.get("type", "stop")
    if kind == "retry":
        return f"retry x{on_failure.get('max_attempts')}"
    return kind


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.option(
    "--url", "-u",
    default="http://localhost:8000",
    envvar="ENGINE_URL",
    show_default=True,
    help="Task Engine API base URL.",
)
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")
@click.pass_context
def cli(ctx: click.Context, url: str, json_output: bool) -> None:
    """Task Engine — scheduled automation CLI."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["json_output"] = json_output


# ── task-engine list ──────────────────────────────────────────────────────────


@cli.command("list")
@click.option("--project", help="Only tasks belonging to this project.")
@click.pass_obj
def list_tasks(obj: dict, project: str | None) -> None:
    """List scheduled tasks."""
    params: dict[str, Any] = {}
    if project:
        params["project_id"] = project
    with _client(obj["url"]) as c:
        resp = c.get("/tasks", params=params)
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    if not data:
        click.echo("No tasks found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Task ID", style="cyan")
    table.add_column("Name")
    table.add_column("Project")
    table.add_column("Cron")
    table.add_column("State")
    table.add_column("Last Run")
    table.add_column("Next Run")
    for row in data:
        state = "enabled" if row.get("enabled") else "disabled"
        last = (row.get("last_run") or {}).get("status", "-")
        table.add_row(
            row["id"],
            row.get("name", ""),
            row.get("project_id") or "-",
            row.get("cron_expression", ""),
            f"[{_color(state)}]{state}[/]",
            f"[{_color(last)}]{last}[/]",
            row.get("next_run") or "-",
        )
    console.print(table)


# ── task-engine show ──────────────────────────────────────────────────────────


@cli.command("show")
@click.argument("task_id")
@click.pass_obj
def show(obj: dict, task_id: str) -> None:
    """Show a task and its steps."""
    with _client(obj["url"]) as c:
        resp = c.get(f"/tasks/{task_id}")
    _check(resp)
    task = resp.json()

    if obj["json_output"]:
        _echo_json(task)
        return

    state = "enabled" if task.get("enabled") else "disabled"
    console.print(f"[bold]{task['name']}[/]  ({task['id']})")
    if task.get("description"):
        console.print(task["description"])
    console.print(
        f"Schedule: {task.get('schedule') or '-'}  [dim]{task['cron_expression']}[/]\n"
        f"State: [{_color(state)}]{state}[/]   On failure: {_policy(task.get('on_failure', {}))}\n"
        f"Next run: {task.get('next_run') or '-'}\n"
    )

    table = Table(box=box.SIMPLE)
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Executor")
    table.add_column("Action")
    table.add_column("Depends")
    for i, step in enumerate(task.get("steps", []), start=1):
        table.add_row(
            str(i),
            step.get("name", ""),
            step.get("executor", ""),
            step.get("action", {}).get("type", ""),
            "yes" if step.get("depends_on_previous") else "",
        )
    console.print(table)


# ── task-engine create / update ───────────────────────────────────────────────


@cli.command("create")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def create(obj: dict, file: str) -> None:
    """Create a task from a YAML or JSON file.

    \b
    File format (YAML example):
      name: nightly-backup
      cron_expression: "0 2 * * *"
      on_failure: {type: retry, max_attempts: 3}
      steps:
        - name: copy
          executor: local
          action: {type: backup_files, source: ~/notes, destination: ~/backup}
    """
    payload = _load_file(file)
    with _client(obj["url"]) as c:
        resp = c.post("/tasks", json=payload)
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    click.echo(f"Created  {data['id']}  next: {data.get('next_run') or '-'}")


@cli.command("update")
@click.argument("task_id")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def update(obj: dict, task_id: str, file: str) -> None:
    """Replace a task with the definition in a YAML or JSON file."""
    payload = _load_file(file)
    with _client(obj["url"]) as c:
        resp = c.put(f"/tasks/{task_id}", json=payload)
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    click.echo(f"Updated  {task_id}  next: {data.get('next_run') or '-'}")


# ── task-engine delete / toggle / run ─────────────────────────────────────────


@cli.command("delete")
@click.argument("task_id")
@click.pass_obj
def delete(obj: dict, task_id: str) -> None:
    """Delete a task and its history."""
    with _client(obj["url"]) as c:
        resp = c.delete(f"/tasks/{task_id}")
    _check(resp)
    click.echo(f"Deleted  {task_id}")


@cli.command("toggle")
@click.argument("task_id")
@click.pass_obj
def toggle(obj: dict, task_id: str) -> None:
    """Enable or disable a task."""
    with _client(obj["url"]) as c:
        resp = c.post(f"/tasks/{task_id}/toggle")
    _check(resp)
    data = resp.json()
    state = "Enabled" if data.get("enabled") else "Disabled"
    click.echo(f"{state}  {task_id}")


@cli.command("run")
@click.argument("task_id")
@click.pass_obj
def run(obj: dict, task_id: str) -> None:
    """Run a task now, outside its schedule."""
    with _client(obj["url"]) as c:
        resp = c.post(f"/tasks/{task_id}/run")
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    click.echo(f"Queued  {task_id}  [{data['status']}]")


# ── task-engine history ───────────────────────────────────────────────────────


@cli.command("history")
@click.argument("task_id")
@click.option("--steps", is_flag=True, help="Show per-step results of each run.")
@click.pass_obj
def history(obj: dict, task_id: str, steps: bool) -> None:
    """Show recorded runs of a task (oldest first)."""
    with _client(obj["url"]) as c:
        resp = c.get(f"/tasks/{task_id}/history")
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    if not data:
        click.echo("No runs recorded.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Started")
    table.add_column("Finished")
    table.add_column("Status")
    table.add_column("Steps", justify="right")
    for run_ in data:
        s = run_.get("status", "?")
        table.add_row(
            run_.get("started_at", ""),
            run_.get("finished_at") or "-",
            f"[{_color(s)}]{s}[/]",
            str(len(run_.get("step_results", []))),
        )
    console.print(table)

    if steps:
        latest = data[-1]
        detail = Table(box=box.SIMPLE, title="Latest run")
        detail.add_column("Step", style="cyan")
        detail.add_column("Status")
        detail.add_column("Error")
        for result in latest.get("step_results", []):
            s = result.get("status", "?")
            err = (result.get("error") or "")[:60]
            detail.add_row(
                result["step_id"],
                f"[{_color(s)}]{s}[/]",
                f"[red]{err}[/]" if err else "",
            )
        console.print(detail)


# ── task-engine summary ───────────────────────────────────────────────────────


@cli.command("summary")
@click.pass_obj
def summary(obj: dict) -> None:
    """Show task counts."""
    with _client(obj["url"]) as c:
        resp = c.get("/tasks/summary")
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    console.print(
        f"Tasks: {data['total']}   Active: [green]{data['active']}[/]   "
        f"Failing: [red]{data['failing']}[/]"
    )


# ── task-engine stream ────────────────────────────────────────────────────────


@cli.command("stream")
@click.argument("task_id", required=False)
@click.pass_obj
def stream(obj: dict, task_id: str | None) -> None:
    """Stream live task notifications (SSE); one task or all of them."""
    path = f"/tasks/{task_id}/events" if task_id else "/events"
    url = obj["url"].rstrip("/") + path
    try:
        with httpx.Client(timeout=None) as c:
            with c.stream("GET", url) as resp:
                if resp.status_code == 404:
                    _die(f"Task '{task_id}' not found")
                resp.raise_for_status()
                for line in resp.iter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        event = json.loads(line[6:])
                    except json.JSONDecodeError:
                        continue
                    if obj["json_output"]:
                        click.echo(json.dumps(event))
                    else:
                        _print_event(event)
                    if task_id and event["event_type"]["type"] == "finished":
                        break
    except httpx.ConnectError:
        _die(f"Cannot connect to {obj['url']}")


def _print_event(event: dict) -> None:
    kind = event["event_type"]
    name = event.get("task_name", event.get("task_id"))
    if kind["type"] == "started":
        console.print(f"[blue]▶[/] {name} started")
    elif kind["type"] == "step_completed":
        s = kind.get("status", "?")
        line = f"  {kind.get('step_name') or kind['step_id']}: [{_color(s)}]{s}[/]"
        if kind.get("error"):
            line += f"  [dim]{kind['error'][:80]}[/]"
        console.print(line)
    else:
        s = kind.get("status", "?")
        console.print(f"[{_color(s)}]■[/] {name} finished: [{_color(s)}]{s}[/]")
