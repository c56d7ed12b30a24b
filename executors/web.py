"""Web executor — outbound HTTP requests, webhooks and deploy triggers."""

from __future__ import annotations

import logging

import httpx

from executors.base import BaseExecutor, StepOutcome
from scheduler.models import DeployTrigger, Executor, HttpRequest, ScheduledTask, SendWebhook, TaskStep

logger = logging.getLogger(__name__)

SUMMARY_LIMIT = 500


def summarize(status_code: int, body: str) -> str:
    return f"HTTP {status_code} — {body[:SUMMARY_LIMIT]}"


class WebExecutor(BaseExecutor):
    kind = Executor.WEB

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        # Injectable for tests (httpx.MockTransport)
        self.transport = transport

    async def execute(self, step: TaskStep, task: ScheduledTask) -> StepOutcome:
        action = step.action

        if isinstance(action, HttpRequest):
            return await self.request(action.url, action.method, action.headers, action.body)

        if isinstance(action, SendWebhook):
            return await self.request(action.url, "POST", None, action.payload)

        if isinstance(action, DeployTrigger):
            # Provider URLs and credentials live in an external connections subsystem.
            return StepOutcome.failure(
                f"Deploy trigger for {action.provider} (project {action.project_id}) "
                "requires a connections integration, not yet implemented"
            )

        return self.unsupported(step)

    async def request(
        self,
        url: str,
        method: str,
        headers: dict[str, str] | None = None,
        body: str | None = None,
    ) -> StepOutcome:
        """Send the request; 2xx is a success, everything else a failure."""
        headers = dict(headers or {})
        if body is not None and not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method=method.upper(),
                    url=url,
                    headers=headers,
                    content=body,
                )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("HTTP step failed", extra={"url": url, "error": str(e)})
            return StepOutcome.failure(f"Request failed: {e}")

        summary = summarize(response.status_code, response.text)
        if 200 <= response.status_code < 300:
            return StepOutcome.success(summary)
        return StepOutcome.failure(summary)
