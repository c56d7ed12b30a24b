"""AI executor. Recognises model-backed actions and hands them off.

Model calls need credentials held by an external agent, so these steps never
complete here. Each one fails with a message naming the prompt and the
intended output so the agent can pick the work up.
"""

from executors.base import BaseExecutor, StepOutcome
from scheduler.models import AnalyzeAndAct, Executor, GenerateContent, ScheduledTask, TaskStep

PROMPT_PREVIEW = 100


def _preview(prompt: str) -> str:
    return prompt[:PROMPT_PREVIEW]


class AiExecutor(BaseExecutor):
    kind = Executor.AI

    async def execute(self, step: TaskStep, task: ScheduledTask) -> StepOutcome:
        action = step.action

        if isinstance(action, GenerateContent):
            return StepOutcome.failure(
                f"AI step requires external agent — prompt: '{_preview(action.prompt)}', "
                f"output: {action.output_path!r}"
            )

        if isinstance(action, AnalyzeAndAct):
            return StepOutcome.failure(
                f"AI step requires external agent — prompt: '{_preview(action.prompt)}'"
            )

        return self.unsupported(step)
