"""Scheduler package: cron helpers, schedule registry and clock."""
from flowforge.scheduler.clock import CronClock
from flowforge.scheduler.cron import (
    armed_job_id,
    next_fire_time,
    run_job_id,
    upcoming_fire_times,
    validate_cron_expression,
    validate_timezone,
)
from flowforge.scheduler.registry import ScheduleRegistry, scheduled_execution_id

__all__ = [
    "CronClock",
    "ScheduleRegistry",
    "armed_job_id",
    "next_fire_time",
    "run_job_id",
    "scheduled_execution_id",
    "upcoming_fire_times",
    "validate_cron_expression",
    "validate_timezone",
]
