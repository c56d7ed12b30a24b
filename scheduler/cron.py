"""Cron helpers: next fire time and due checks for scheduled tasks.

Expressions are accepted in three shapes:

    5 fields   minute hour day month day_of_week
    6 fields   minute hour day month day_of_week year
    7 fields   second minute hour day month day_of_week year

Shorter forms are padded to seven fields (seconds "0", year "*") and handed to
APScheduler's CronTrigger. Day-of-week follows classic cron numbering
(0 and 7 are Sunday), which is translated to weekday names because
APScheduler counts from Monday.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.triggers.cron import CronTrigger

from scheduler.models import ScheduledTask

logger = logging.getLogger(__name__)

_FIELDS = ("second", "minute", "hour", "day", "month", "day_of_week", "year")
_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def normalize(expression: str) -> list[str] | None:
    """Pad a 5/6/7-field expression to seven fields, or None if malformed."""
    parts = expression.split()
    if len(parts) == 5:
        return ["0", *parts, "*"]
    if len(parts) == 6:
        return ["0", *parts]
    if len(parts) == 7:
        return parts
    return None


def _weekday(token: str) -> int:
    value = int(token)
    if not 0 <= value <= 7:
        raise ValueError(f"day of week out of range: {token}")
    return value % 7


def _translate_day_of_week(field: str) -> str:
    """Rewrite numeric cron weekdays (0=Sun) as names APScheduler understands."""
    if field in ("*", "?"):
        return "*"

    names: list[str] = []
    for part in field.split(","):
        body, _, step = part.partition("/")
        stride = int(step) if step else 1
        if stride < 1:
            raise ValueError(f"invalid step: {part}")

        if body in ("*", "?"):
            days = range(0, 7)
        elif "-" in body:
            start, end = body.split("-", 1)
            if not (start.isdigit() and end.isdigit()):
                # Named ranges (mon-fri) pass straight through
                names.append(part.lower())
                continue
            first, last = int(start), int(end)
            if first > last:
                raise ValueError(f"invalid range: {body}")
            days = range(first, last + 1)
        elif body.isdigit():
            days = range(int(body), int(body) + 1) if not step else range(int(body), 8)
        else:
            names.append(part.lower())
            continue

        for day in list(days)[::stride]:
            name = _WEEKDAYS[_weekday(str(day))]
            if name not in names:
                names.append(name)
    return ",".join(names)


def build_trigger(expression: str) -> CronTrigger | None:
    fields = normalize(expression)
    if fields is None:
        return None
    values = dict(zip(_FIELDS, fields))
    values = {k: ("*" if v == "?" else v) for k, v in values.items()}
    try:
        values["day_of_week"] = _translate_day_of_week(values["day_of_week"])
        return CronTrigger(timezone=timezone.utc, **values)
    except ValueError as e:
        logger.debug("Unparseable cron expression", extra={"cron": expression, "error": str(e)})
        return None


def next_run_time(expression: str, now: datetime | None = None) -> datetime | None:
    """Next firing strictly after *now* (UTC), or None for a malformed expression."""
    trigger = build_trigger(expression)
    if trigger is None:
        return None
    now = now or datetime.now(timezone.utc)
    # Fire times are whole seconds; starting at the next second keeps the result > now.
    start = now.astimezone(timezone.utc).replace(microsecond=0) + timedelta(seconds=1)
    nxt = trigger.get_next_fire_time(None, start)
    return nxt.astimezone(timezone.utc) if nxt else None


def is_due(task: ScheduledTask, now: datetime | None = None) -> bool:
    """A task is due once it is enabled and its next_run is now or in the past."""
    if not task.enabled or task.next_run is None:
        return False
    now = now or datetime.now(timezone.utc)
    return task.next_run <= now
