"""Tests for cron expression and timezone helpers."""
from datetime import datetime, timezone

import pytest

from flowforge.errors import InvalidCronExpression, InvalidTimezone
from flowforge.scheduler import (
    armed_job_id,
    next_fire_time,
    run_job_id,
    upcoming_fire_times,
    validate_cron_expression,
    validate_timezone,
)

UTC = timezone.utc


class TestValidation:
    def test_valid_expression_is_normalized(self):
        assert validate_cron_expression("  */5   *  * * * ") == "*/5 * * * *"

    @pytest.mark.parametrize("expression", ["", "* * * *", "* * * * * *", "61 * * * *", "not a cron"])
    def test_invalid_expression_rejected(self, expression):
        with pytest.raises(InvalidCronExpression):
            validate_cron_expression(expression)

    def test_invalid_cron_error_carries_expression(self):
        with pytest.raises(InvalidCronExpression) as exc_info:
            validate_cron_expression("99 99 * * *")

        assert exc_info.value.expression == "99 99 * * *"
        assert exc_info.value.details["cron_expression"] == "99 99 * * *"

    def test_valid_timezone(self):
        assert validate_timezone("Europe/Berlin").key == "Europe/Berlin"

    @pytest.mark.parametrize("name", ["", "Mars/Olympus", "Not A Zone"])
    def test_invalid_timezone_rejected(self, name):
        with pytest.raises(InvalidTimezone):
            validate_timezone(name)


class TestFireTimes:
    def test_next_fire_time_is_strictly_after(self):
        after = datetime(2024, 1, 15, 9, 30, tzinfo=UTC)

        assert next_fire_time("30 9 * * *", "UTC", after) == datetime(2024, 1, 16, 9, 30, tzinfo=UTC)

    def test_every_five_minutes(self):
        after = datetime(2024, 1, 15, 9, 31, tzinfo=UTC)

        times = upcoming_fire_times("*/5 * * * *", "UTC", 3, after)

        assert times == [
            datetime(2024, 1, 15, 9, 35, tzinfo=UTC),
            datetime(2024, 1, 15, 9, 40, tzinfo=UTC),
            datetime(2024, 1, 15, 9, 45, tzinfo=UTC),
        ]

    def test_expression_interpreted_in_schedule_timezone(self):
        after = datetime(2024, 1, 15, 0, 0, tzinfo=UTC)

        # 09:00 in Berlin is 08:00 UTC in winter
        assert next_fire_time("0 9 * * *", "Europe/Berlin", after) == datetime(2024, 1, 15, 8, 0, tzinfo=UTC)

    def test_daylight_saving_shift(self):
        before_dst = datetime(2024, 3, 9, 15, 0, tzinfo=UTC)

        # New York switches to EDT (UTC-4) on 2024-03-10
        assert next_fire_time("0 9 * * *", "America/New_York", before_dst) == datetime(
            2024, 3, 10, 13, 0, tzinfo=UTC
        )

    def test_naive_after_treated_as_utc(self):
        after = datetime(2024, 1, 15, 9, 30)

        assert next_fire_time("0 * * * *", "UTC", after) == datetime(2024, 1, 15, 10, 0, tzinfo=UTC)

    def test_results_are_utc(self):
        times = upcoming_fire_times("0 12 * * *", "Asia/Tokyo", 2, datetime(2024, 1, 1, tzinfo=UTC))

        assert all(t.tzinfo is not None and t.utcoffset().total_seconds() == 0 for t in times)


class TestJobIds:
    def test_armed_job_id_is_stable(self):
        assert armed_job_id("schedule_1") == armed_job_id("schedule_1") == "schedule-schedule_1"

    def test_run_job_id_depends_on_fire_time(self):
        first = run_job_id("s1", datetime(2024, 1, 15, 9, 30, tzinfo=UTC))
        second = run_job_id("s1", datetime(2024, 1, 15, 9, 35, tzinfo=UTC))

        assert first == f"run-s1-{int(datetime(2024, 1, 15, 9, 30, tzinfo=UTC).timestamp())}"
        assert first != second
