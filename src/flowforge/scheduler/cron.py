"""Cron expression and timezone helpers backed by croniter and zoneinfo."""
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterError, croniter

from flowforge.errors import InvalidCronExpression, InvalidTimezone

ARMED_JOB_PREFIX = "schedule-"
RUN_JOB_PREFIX = "run-"


def validate_timezone(name: str) -> ZoneInfo:
    """
    Resolve an IANA timezone name.

    Raises:
        InvalidTimezone: If the name is unknown to the tz database
    """
    if not name or not isinstance(name, str):
        raise InvalidTimezone(str(name))
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidTimezone(name) from e


def validate_cron_expression(expression: str) -> str:
    """
    Check a standard 5-field cron expression.

    Returns:
        The normalized expression (surrounding whitespace removed)

    Raises:
        InvalidCronExpression: If the expression cannot be parsed
    """
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidCronExpression(str(expression), "expression is empty")

    normalized = " ".join(expression.split())
    fields = normalized.split(" ")
    if len(fields) != 5:
        raise InvalidCronExpression(expression, f"expected 5 fields, got {len(fields)}")
    if not croniter.is_valid(normalized):
        raise InvalidCronExpression(expression)
    return normalized


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def next_fire_time(expression: str, tz_name: str = "UTC", after: datetime | None = None) -> datetime:
    """
    First occurrence of ``expression`` strictly after ``after``.

    The expression is interpreted in ``tz_name``; the result is in UTC.
    """
    return upcoming_fire_times(expression, tz_name, 1, after)[0]


def upcoming_fire_times(
    expression: str,
    tz_name: str = "UTC",
    count: int = 5,
    after: datetime | None = None,
) -> list[datetime]:
    """Next ``count`` occurrences after ``after`` (default: now), in UTC."""
    expression = validate_cron_expression(expression)
    zone = validate_timezone(tz_name)
    start = _as_utc(after or datetime.now(timezone.utc)).astimezone(zone)

    try:
        iterator = croniter(expression, start)
        times = [iterator.get_next(datetime) for _ in range(count)]
    except (CroniterError, ValueError) as e:
        raise InvalidCronExpression(expression, str(e)) from e
    return [_as_utc(moment) for moment in times]


def armed_job_id(schedule_id: str) -> str:
    """Stable id of the delayed job that fires a schedule."""
    return f"{ARMED_JOB_PREFIX}{schedule_id}"


def run_job_id(schedule_id: str, fire_time: datetime) -> str:
    """Idempotent id of the workflow run for one fire time."""
    return f"{RUN_JOB_PREFIX}{schedule_id}-{int(_as_utc(fire_time).timestamp())}"
