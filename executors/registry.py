"""Look up the executor strategy for a step's executor tag."""

from executors.base import BaseExecutor
from scheduler.models import Executor


class ExecutorRegistry:
    def __init__(self):
        self._executors: dict[Executor, BaseExecutor] = {}

    def register(self, executor: BaseExecutor) -> None:
        self._executors[executor.kind] = executor

    def get(self, kind: Executor) -> BaseExecutor:
        if kind not in self._executors:
            raise KeyError(
                f"Executor '{kind.value}' not registered. "
                f"Registered: {[k.value for k in self._executors]}"
            )
        return self._executors[kind]

    def kinds(self) -> list[Executor]:
        return list(self._executors)


def default_registry(settings=None) -> ExecutorRegistry:
    """Registry wired with the Local, Web and AI executors."""
    from core.config import get_settings
    from core.projects import ProjectResolver
    from executors.ai import AiExecutor
    from executors.local import LocalExecutor
    from executors.web import WebExecutor

    settings = settings or get_settings()
    registry = ExecutorRegistry()
    registry.register(LocalExecutor(
        resolver=ProjectResolver(settings.projects_root),
        timeout=settings.command_timeout,
    ))
    registry.register(WebExecutor(timeout=settings.http_timeout))
    registry.register(AiExecutor())
    return registry
