"""Cron expression parsing and validation for APScheduler integration.

Every schedule is evaluated in UTC. Expressions use the classic five crontab
fields (minute, hour, day of month, month, day of week) with crontab weekday
numbering, where both 0 and 7 mean Sunday.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

from apscheduler.triggers.cron import CronTrigger as APCronTrigger

from opspilot.engine.errors import InvalidScheduleError

# APScheduler numbers weekdays from Monday, crontab from Sunday
WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")

_NUMERIC_DOW = re.compile(r"^(\*|\d+)(?:-(\d+))?(?:/(\d+))?$")


def _expand_weekday_item(item: str) -> list[int] | None:
    """Expand one numeric day-of-week item into crontab day numbers.

    Returns None for items that are not purely numeric (names like ``mon-fri``),
    which APScheduler understands directly.
    """
    match = _NUMERIC_DOW.match(item)
    if not match:
        return None

    start_s, end_s, step_s = match.groups()
    step = int(step_s) if step_s else 1
    if step < 1:
        raise ValueError(f"Invalid step in day-of-week field: {item}")

    if start_s == "*":
        if end_s is not None:
            raise ValueError(f"Invalid day-of-week range: {item}")
        start, end = 0, 6
    else:
        start = int(start_s)
        if end_s is not None:
            end = int(end_s)
        elif step_s:
            end = 7
        else:
            end = start

    if not (0 <= start <= 7 and 0 <= end <= 7) or start > end:
        raise ValueError(f"Day-of-week value out of range: {item}")

    return sorted({day % 7 for day in range(start, end + 1, step)})


def convert_day_of_week(field: str) -> str:
    """Translate a crontab day-of-week field into APScheduler syntax."""
    if field in ("*", "?"):
        return "*"

    days: set[int] = set()
    names: list[str] = []
    for item in field.lower().split(","):
        expanded = _expand_weekday_item(item)
        if expanded is None:
            names.append(item)
        else:
            days.update(expanded)

    if not names and len(days) == 7:
        return "*"

    return ",".join(names + [WEEKDAY_NAMES[day] for day in sorted(days)])


def parse_cron_expression(expression: str) -> APCronTrigger:
    """Parse a five-field cron expression into an APScheduler trigger.

    Args:
        expression: Cron expression (minute hour day month day_of_week).

    Returns:
        APScheduler CronTrigger pinned to UTC.

    Raises:
        InvalidScheduleError: If the expression is malformed.
    """
    if not isinstance(expression, str):
        raise InvalidScheduleError(str(expression), "expression must be a string")

    parts = expression.split()
    if len(parts) != 5:
        raise InvalidScheduleError(expression, f"expected 5 fields, got {len(parts)}")

    minute, hour, day, month, day_of_week = parts
    try:
        return APCronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=convert_day_of_week(day_of_week),
            timezone=UTC,
        )
    except ValueError as e:
        raise InvalidScheduleError(expression, str(e)) from e


def validate_cron_expression(expression: str) -> bool:
    """Check whether a cron expression can be scheduled.

    Args:
        expression: Cron expression to check.

    Returns:
        True if the expression has five valid fields.
    """
    try:
        parse_cron_expression(expression)
    except InvalidScheduleError:
        return False
    return True


def next_fire_time(expression: str, from_time: datetime | None = None) -> datetime | None:
    """Compute the next UTC fire time strictly after ``from_time``.

    Args:
        expression: Cron expression.
        from_time: Reference time (defaults to now). Naive values are taken as UTC.

    Returns:
        The next fire time, or None if the expression never fires again.

    Raises:
        InvalidScheduleError: If the expression is malformed.
    """
    trigger = parse_cron_expression(expression)

    reference = from_time or datetime.now(UTC)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=UTC)

    # APScheduler returns the reference itself when it matches exactly
    return trigger.get_next_fire_time(None, reference + timedelta(microseconds=1))
