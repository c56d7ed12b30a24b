"""Scheduled task data models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Executor(str, Enum):
    LOCAL = "local"   # shell, git, file and script operations
    WEB = "web"       # HTTP requests, webhooks, deploy triggers
    AI = "ai"         # needs an external model call


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"


# ── Step actions ─────────────────────────────────────────────────────────────
# Closed set of payloads, tagged by "type" on the wire.

class RunCommand(BaseModel):
    type: Literal["run_command"] = "run_command"
    command: str
    cwd: str | None = None


class BackupFiles(BaseModel):
    type: Literal["backup_files"] = "backup_files"
    source: str
    destination: str


class GitCommit(BaseModel):
    type: Literal["git_commit"] = "git_commit"
    message: str


class GitPush(BaseModel):
    type: Literal["git_push"] = "git_push"
    remote: str | None = None
    branch: str | None = None


class RunScript(BaseModel):
    type: Literal["run_script"] = "run_script"
    path: str


class DeleteFiles(BaseModel):
    type: Literal["delete_files"] = "delete_files"
    path: str
    pattern: str


class HttpRequest(BaseModel):
    type: Literal["http_request"] = "http_request"
    url: str
    method: str
    headers: dict[str, str] | None = None
    body: str | None = None


class DeployTrigger(BaseModel):
    type: Literal["deploy_trigger"] = "deploy_trigger"
    provider: str
    project_id: str


class SendWebhook(BaseModel):
    type: Literal["send_webhook"] = "send_webhook"
    url: str
    payload: str | None = None


class GenerateContent(BaseModel):
    type: Literal["generate_content"] = "generate_content"
    prompt: str
    output_path: str | None = None


class AnalyzeAndAct(BaseModel):
    type: Literal["analyze_and_act"] = "analyze_and_act"
    prompt: str


StepAction = Annotated[
    Union[
        RunCommand,
        BackupFiles,
        GitCommit,
        GitPush,
        RunScript,
        DeleteFiles,
        HttpRequest,
        DeployTrigger,
        SendWebhook,
        GenerateContent,
        AnalyzeAndAct,
    ],
    Field(discriminator="type"),
]


# ── Failure policy ───────────────────────────────────────────────────────────

class Stop(BaseModel):
    type: Literal["stop"] = "stop"


class SkipAndContinue(BaseModel):
    type: Literal["skip_and_continue"] = "skip_and_continue"


class Retry(BaseModel):
    type: Literal["retry"] = "retry"
    max_attempts: int = Field(default=3, ge=1)


FailureAction = Annotated[
    Union[Stop, SkipAndContinue, Retry],
    Field(discriminator="type"),
]


# ── Tasks and runs ───────────────────────────────────────────────────────────

class TaskStep(BaseModel):
    id: str = ""
    name: str
    executor: Executor
    action: StepAction
    # When True the step is skipped if an earlier step of the run failed
    depends_on_previous: bool = False


class StepResult(BaseModel):
    step_id: str
    status: StepStatus
    output: str | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class TaskRun(BaseModel):
    run_id: str = Field(default_factory=new_id)
    task_id: str = ""
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    status: RunStatus = RunStatus.RUNNING
    step_results: list[StepResult] = []

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class ScheduledTask(BaseModel):
    id: str = ""
    name: str
    description: str = ""
    # Display only, e.g. "Every Monday at 8:00 AM"
    schedule: str = ""
    # Machine schedule, e.g. "0 8 * * 1"
    cron_expression: str
    project_id: str | None = None
    enabled: bool = True
    steps: list[TaskStep] = []
    on_failure: FailureAction = Field(default_factory=Stop)
    last_run: TaskRun | None = None
    next_run: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def step_name(self, step_id: str) -> str:
        return next((s.name for s in self.steps if s.id == step_id), "")


class TaskHistory(BaseModel):
    task_id: str
    runs: list[TaskRun] = []


class TaskStoreDocument(BaseModel):
    """Everything the store persists, written as one JSON document."""

    tasks: list[ScheduledTask] = []
    history: list[TaskHistory] = []
