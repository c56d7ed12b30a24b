"""Configuration — environment variables (optionally from .env) validated with Pydantic."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

DEFAULT_HOME = Path.home() / ".task-engine"

_PREFIX = "TASK_ENGINE_"


class Settings(BaseModel):
    home: Path = DEFAULT_HOME
    store_path: Path | None = None
    tick_seconds: float = 60.0
    history_limit: int = 20
    http_timeout: float = 30.0
    command_timeout: float | None = None
    projects_root: Path | None = None
    log_level: str = "INFO"
    log_json: bool = True
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def tasks_file(self) -> Path:
        return self.store_path or self.home / "data" / "scheduled_tasks.json"


def settings_from_env(environ: dict[str, str] | None = None) -> Settings:
    """Build Settings from TASK_ENGINE_* variables; unset or empty ones keep defaults."""
    environ = os.environ if environ is None else environ
    values = {}
    for name in Settings.model_fields:
        raw = environ.get(_PREFIX + name.upper())
        if raw not in (None, ""):
            values[name] = raw
    if "home" in values:
        values["home"] = Path(values["home"]).expanduser()
    return Settings.model_validate(values)


@lru_cache
def get_settings() -> Settings:
    load_dotenv()
    return settings_from_env()
