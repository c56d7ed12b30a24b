"""Executor base class and the uniform step outcome."""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from scheduler.models import Executor, ScheduledTask, StepStatus, TaskStep


class StepOutcome(BaseModel):
    status: StepStatus
    output: str | None = None
    error: str | None = None

    @classmethod
    def success(cls, output: str | None = None) -> "StepOutcome":
        return cls(status=StepStatus.SUCCESS, output=output)

    @classmethod
    def failure(cls, error: str, output: str | None = None) -> "StepOutcome":
        return cls(status=StepStatus.FAILED, output=output, error=error)


class BaseExecutor(ABC):
    """All step executors inherit from this class.

    ``execute`` must not raise: every failure is reported through the
    returned outcome's status and error.
    """

    kind: Executor

    @abstractmethod
    async def execute(self, step: TaskStep, task: ScheduledTask) -> StepOutcome:
        """Carry out *step* on behalf of *task*."""
        ...

    def unsupported(self, step: TaskStep) -> StepOutcome:
        return StepOutcome.failure(
            f"Action type '{step.action.type}' not supported by "
            f"{self.kind.value.capitalize()} executor"
        )
