"""Logging setup. Records emitted while a task runs carry that run's id.

The runner enters ``run_context(run_id)`` around each task execution; a
handler filter copies the id onto every record so both the JSON and the
plain-text formats can show it.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

NO_RUN = "-"

_run_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default=NO_RUN)

# Attributes every LogRecord has; anything else on a record came from extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "run_id"}

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(run_id)s] %(message)s"

# Libraries that log every job submission or request at INFO
_QUIET_LOGGERS = ("apscheduler", "httpx", "uvicorn.access")


class RunIdFilter(logging.Filter):
    """Stamp records with the run id of the current async context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = _run_id_var.get()
        return True


class JsonFormatter(logging.Formatter):
    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "run_id": getattr(record, "run_id", _run_id_var.get()),
        }
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in payload and not key.startswith("_")
        )
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Install one stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RunIdFilter())
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def run_context(run_id: str) -> Iterator[None]:
    token = _run_id_var.set(run_id)
    try:
        yield
    finally:
        _run_id_var.reset(token)


def current_run_id() -> str:
    return _run_id_var.get()
