"""Local executor — shell commands, git, file and script operations."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import subprocess
import sys
from pathlib import Path

from core.projects import ProjectResolver
from executors.base import BaseExecutor, StepOutcome
from scheduler.models import (
    BackupFiles,
    DeleteFiles,
    Executor,
    GitCommit,
    GitPush,
    RunCommand,
    RunScript,
    ScheduledTask,
    StepStatus,
    TaskStep,
)

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# Interpreter prefix per script extension; None means run the file directly
_INTERPRETERS: dict[str, list[str] | None] = {
    ".sh": ["bash"],
    ".bash": ["bash"],
    ".py": ["python3"],
    ".js": ["node"],
    ".ps1": ["powershell", "-File"],
    ".bat": None,
    ".cmd": None,
}


def quote(arg: str) -> str:
    if IS_WINDOWS:
        return '"' + arg.replace('"', '\\"') + '"'
    return shlex.quote(arg)


def shell_argv(command: str) -> list[str]:
    if IS_WINDOWS:
        return ["cmd.exe", "/D", "/S", "/C", command]
    return ["/bin/sh", "-c", command]


async def run_shell(command: str, cwd: str | Path, timeout: float | None = None) -> StepOutcome:
    """Run *command* through the platform shell in *cwd*.

    Exit code 0 is a success carrying trimmed stdout; anything else is a failure
    carrying trimmed stderr (or the exit code when stderr is empty).
    """
    logger.debug("Running shell command", extra={"command": command, "cwd": str(cwd)})
    try:
        proc = await asyncio.to_thread(
            subprocess.run,
            shell_argv(command),
            cwd=str(cwd),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
    except subprocess.TimeoutExpired:
        return StepOutcome.failure(f"Command timed out after {timeout}s")
    except OSError as e:
        return StepOutcome.failure(f"Failed to execute: {e}")

    stdout = proc.stdout.strip() or None
    if proc.returncode == 0:
        return StepOutcome.success(stdout)
    error = proc.stderr.strip() or f"Command exited with code {proc.returncode}"
    return StepOutcome.failure(error, output=stdout)


def script_command(path: str) -> str:
    """Pick an interpreter for *path* from its extension."""
    suffix = Path(path).suffix.lower()
    if suffix in _INTERPRETERS:
        prefix = _INTERPRETERS[suffix]
    else:
        prefix = None if IS_WINDOWS else ["bash"]
    return " ".join([*(prefix or []), quote(path)])


class LocalExecutor(BaseExecutor):
    kind = Executor.LOCAL

    def __init__(self, resolver: ProjectResolver | None = None, timeout: float | None = None):
        self.resolver = resolver or ProjectResolver()
        self.timeout = timeout

    def work_dir(self, task: ScheduledTask, explicit: str | None = None) -> Path:
        """Explicit cwd, else the task's project directory, else the home directory."""
        if explicit:
            return Path(explicit).expanduser()
        project_dir = self.resolver.resolve(task.project_id)
        return project_dir or Path.home()

    async def execute(self, step: TaskStep, task: ScheduledTask) -> StepOutcome:
        action = step.action

        if isinstance(action, RunCommand):
            return await self._shell(action.command, self.work_dir(task, action.cwd))

        if isinstance(action, BackupFiles):
            src, dst = quote(action.source), quote(action.destination)
            cmd = f"xcopy /E /I /Y {src} {dst}" if IS_WINDOWS else f"cp -r {src} {dst}"
            return await self._shell(cmd, self.work_dir(task))

        if isinstance(action, GitCommit):
            cwd = self.work_dir(task)
            staged = await self._shell("git add -A", cwd)
            if staged.status == StepStatus.FAILED:
                return staged
            return await self._shell(f"git commit -m {quote(action.message)}", cwd)

        if isinstance(action, GitPush):
            remote = quote(action.remote or "origin")
            branch = quote(action.branch or "main")
            return await self._shell(f"git push {remote} {branch}", self.work_dir(task))

        if isinstance(action, RunScript):
            cwd = Path(action.path).expanduser().parent
            return await self._shell(script_command(action.path), cwd)

        if isinstance(action, DeleteFiles):
            if IS_WINDOWS:
                cmd = f"del /S /Q {quote(os.path.join(action.path, action.pattern))}"
            else:
                cmd = f"find {quote(action.path)} -name {quote(action.pattern)} -delete"
            return await self._shell(cmd, self.work_dir(task))

        return self.unsupported(step)

    async def _shell(self, command: str, cwd: Path) -> StepOutcome:
        return await run_shell(command, cwd, timeout=self.timeout)
