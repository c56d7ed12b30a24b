"""Task progress notifications published while a run is in flight."""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from scheduler.models import RunStatus, ScheduledTask, StepResult, StepStatus, utcnow


class Started(BaseModel):
    type: Literal["started"] = "started"


class StepCompleted(BaseModel):
    type: Literal["step_completed"] = "step_completed"
    step_id: str
    step_name: str
    status: StepStatus
    output: str | None = None
    error: str | None = None


class Finished(BaseModel):
    type: Literal["finished"] = "finished"
    status: RunStatus


TaskEventType = Annotated[Union[Started, StepCompleted, Finished], Field(discriminator="type")]


class TaskEvent(BaseModel):
    task_id: str
    task_name: str
    run_id: str
    event_type: TaskEventType
    timestamp: datetime = Field(default_factory=utcnow)


def started(task: ScheduledTask, run_id: str) -> TaskEvent:
    return TaskEvent(task_id=task.id, task_name=task.name, run_id=run_id, event_type=Started())


def step_completed(task: ScheduledTask, run_id: str, result: StepResult) -> TaskEvent:
    return TaskEvent(
        task_id=task.id,
        task_name=task.name,
        run_id=run_id,
        event_type=StepCompleted(
            step_id=result.step_id,
            step_name=task.step_name(result.step_id),
            status=result.status,
            output=result.output,
            error=result.error,
        ),
    )


def finished(task: ScheduledTask, run_id: str, status: RunStatus) -> TaskEvent:
    return TaskEvent(
        task_id=task.id, task_name=task.name, run_id=run_id, event_type=Finished(status=status)
    )
