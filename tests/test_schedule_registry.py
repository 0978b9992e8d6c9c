"""Tests for the schedule registry."""
from datetime import datetime, timezone

import pytest

from flowforge.errors import ConflictError, InvalidCronExpression, InvalidTimezone, NotFoundError
from flowforge.queue import (
    EXECUTE_SCHEDULED_WORKFLOW,
    EXECUTE_WORKFLOW,
    JobState,
    QueueWorker,
)
from flowforge.scheduler import ScheduleRegistry, armed_job_id, scheduled_execution_id

UTC = timezone.utc


@pytest.fixture
def schedules(schedule_store, queue, workflow_store, settings, clock):
    return ScheduleRegistry(schedule_store, queue, workflow_store, settings, clock=clock)


def pending_jobs(queue, job_type):
    return [
        job for job in queue.list_jobs([JobState.WAITING, JobState.DELAYED])
        if job.job_type == job_type
    ]


class TestCreateSchedule:
    def test_create_computes_next_execution_and_arms(self, schedules, queue):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *", "UTC")

        assert schedule.id.startswith("schedule_")
        assert schedule.is_active is True
        assert schedule.next_execution == datetime(2024, 1, 15, 9, 35, tzinfo=UTC)
        assert schedule.execution_count == 0
        assert schedule.armed_job_id == armed_job_id(schedule.id)

        armed = queue.get_job(schedule.armed_job_id)
        assert armed.job_type == EXECUTE_SCHEDULED_WORKFLOW
        assert armed.state == JobState.DELAYED
        assert armed.ready_at == schedule.next_execution
        assert armed.payload == {"scheduleId": schedule.id, "workflowId": "wf-simple"}
        assert armed.options.attempts == 2

    def test_unknown_workflow(self, schedules):
        with pytest.raises(NotFoundError):
            schedules.create_schedule("missing", "* * * * *")

    def test_invalid_cron_creates_nothing(self, schedules, queue):
        with pytest.raises(InvalidCronExpression):
            schedules.create_schedule("wf-simple", "* * *")

        assert schedules.list_schedules() == []
        assert queue.list_jobs() == []

    def test_invalid_timezone(self, schedules):
        with pytest.raises(InvalidTimezone):
            schedules.create_schedule("wf-simple", "* * * * *", "Nowhere/Land")

    def test_one_active_schedule_per_workflow(self, schedules):
        schedules.create_schedule("wf-simple", "0 * * * *")

        with pytest.raises(ConflictError):
            schedules.create_schedule("wf-simple", "30 * * * *")

    def test_inactive_schedule_is_not_armed(self, schedules, queue):
        schedules.create_schedule("wf-simple", "0 * * * *")

        inactive = schedules.create_schedule("wf-simple", "30 * * * *", is_active=False)

        assert inactive.armed_job_id is None
        assert len(pending_jobs(queue, EXECUTE_SCHEDULED_WORKFLOW)) == 1


class TestUpdateSchedule:
    def test_rearm_leaves_single_pending_job(self, schedules, queue):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")

        updated = schedules.update_schedule(schedule.id, cron_expression="0 12 * * *")

        assert updated.next_execution == datetime(2024, 1, 15, 12, 0, tzinfo=UTC)
        armed = pending_jobs(queue, EXECUTE_SCHEDULED_WORKFLOW)
        assert len(armed) == 1
        assert armed[0].ready_at == updated.next_execution

    def test_timezone_change_recomputes_next_execution(self, schedules):
        schedule = schedules.create_schedule("wf-simple", "0 12 * * *")

        updated = schedules.update_schedule(schedule.id, timezone="Europe/Berlin")

        assert updated.next_execution == datetime(2024, 1, 15, 11, 0, tzinfo=UTC)

    def test_deactivate_disarms(self, schedules, queue):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")

        deactivated = schedules.deactivate_schedule(schedule.id)

        assert deactivated.is_active is False
        assert deactivated.armed_job_id is None
        assert pending_jobs(queue, EXECUTE_SCHEDULED_WORKFLOW) == []

    def test_activate_rearms(self, schedules, queue, clock):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")
        schedules.deactivate_schedule(schedule.id)
        clock.advance(minutes=12)

        activated = schedules.activate_schedule(schedule.id)

        assert activated.is_active is True
        assert activated.next_execution == datetime(2024, 1, 15, 9, 45, tzinfo=UTC)
        assert len(pending_jobs(queue, EXECUTE_SCHEDULED_WORKFLOW)) == 1

    def test_activate_conflicts_with_other_active_schedule(self, schedules):
        first = schedules.create_schedule("wf-simple", "0 * * * *", is_active=False)
        schedules.create_schedule("wf-simple", "30 * * * *")

        with pytest.raises(ConflictError):
            schedules.activate_schedule(first.id)

    def test_activate_already_active_is_noop(self, schedules):
        schedule = schedules.create_schedule("wf-simple", "0 * * * *")

        assert schedules.activate_schedule(schedule.id).updated_at == schedule.updated_at

    def test_invalid_update_keeps_schedule(self, schedules):
        schedule = schedules.create_schedule("wf-simple", "0 * * * *")

        with pytest.raises(InvalidCronExpression):
            schedules.update_schedule(schedule.id, cron_expression="bad")

        assert schedules.get_schedule(schedule.id).cron_expression == "0 * * * *"


class TestDeleteSchedule:
    def test_delete_cancels_armed_job(self, schedules, queue):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")

        schedules.delete_schedule(schedule.id)

        assert queue.get_job(armed_job_id(schedule.id)) is None
        with pytest.raises(NotFoundError):
            schedules.get_schedule(schedule.id)

    def test_delete_unknown(self, schedules):
        with pytest.raises(NotFoundError):
            schedules.delete_schedule("schedule_missing")


class TestExecuteScheduledWorkflow:
    def test_fire_enqueues_run_and_advances(self, schedules, queue, clock):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")
        clock.set(datetime(2024, 1, 15, 9, 35, tzinfo=UTC))

        job = schedules.execute_scheduled_workflow(schedule.id)

        assert job.job_type == EXECUTE_WORKFLOW
        assert job.priority == 1
        assert job.payload["scheduleId"] == schedule.id
        assert job.payload["workflowId"] == "wf-simple"
        assert job.payload["executionId"] == scheduled_execution_id(job.id)
        assert job.payload["executionTime"] == "2024-01-15T09:35:00+00:00"

        fired = schedules.get_schedule(schedule.id)
        assert fired.execution_count == 1
        assert fired.last_execution == clock()
        assert fired.next_execution == datetime(2024, 1, 15, 9, 40, tzinfo=UTC)
        assert queue.get_job(fired.armed_job_id).ready_at == fired.next_execution

    def test_not_due_is_skipped(self, schedules):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")

        assert schedules.execute_scheduled_workflow(schedule.id) is None
        assert schedules.get_schedule(schedule.id).execution_count == 0

    def test_force_fires_early(self, schedules):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")

        job = schedules.execute_scheduled_workflow(schedule.id, force=True)

        assert job is not None
        assert schedules.get_schedule(schedule.id).execution_count == 1

    def test_inactive_is_skipped(self, schedules, clock):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *", is_active=False)
        clock.advance(hours=1)

        assert schedules.execute_scheduled_workflow(schedule.id, force=True) is None

    def test_duplicate_fire_is_noop(self, schedules, queue, clock):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")
        clock.set(datetime(2024, 1, 15, 9, 35, tzinfo=UTC))

        first = schedules.execute_scheduled_workflow(schedule.id)
        second = schedules.execute_scheduled_workflow(schedule.id)

        assert first is not None
        assert second is None
        assert len(pending_jobs(queue, EXECUTE_WORKFLOW)) == 1
        assert schedules.get_schedule(schedule.id).execution_count == 1

    def test_same_fire_time_reuses_run_job(self, schedules, queue, clock):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")
        clock.set(datetime(2024, 1, 15, 9, 35, tzinfo=UTC))
        first = schedules.execute_scheduled_workflow(schedule.id)
        queue.claim_due()

        # A second instance that still sees the old nextExecution
        stale = schedules.get_schedule(schedule.id)
        stale.next_execution = datetime(2024, 1, 15, 9, 35, tzinfo=UTC)
        schedules.store.save(stale)
        again = schedules.execute_scheduled_workflow(schedule.id)

        assert again.id == first.id
        assert again.state == JobState.ACTIVE

    def test_armed_job_fires_through_worker(self, schedules, queue, clock):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")
        worker = QueueWorker(queue)
        worker.register(
            EXECUTE_SCHEDULED_WORKFLOW,
            lambda job: schedules.execute_scheduled_workflow(job.payload["scheduleId"]).id,
        )
        clock.set(datetime(2024, 1, 15, 9, 35, tzinfo=UTC))

        assert worker.run_once() == 1

        fired = schedules.get_schedule(schedule.id)
        assert fired.execution_count == 1
        assert len(pending_jobs(queue, EXECUTE_WORKFLOW)) == 1
        # Inside its own handler the armed job could not be replaced
        assert fired.armed_job_id is None

        assert schedules.ensure_armed() == 1
        rearmed = schedules.get_schedule(schedule.id)
        armed = queue.get_job(rearmed.armed_job_id)
        assert armed.is_pending
        assert armed.ready_at == datetime(2024, 1, 15, 9, 40, tzinfo=UTC)


class TestQueries:
    def test_find_due(self, schedules, clock):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")

        assert schedules.find_due() == []
        clock.advance(minutes=5)
        assert [s.id for s in schedules.find_due()] == [schedule.id]

    def test_schedule_stats(self, schedules, clock):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")
        schedules.create_schedule("wf-simple", "0 * * * *", is_active=False)
        clock.advance(minutes=5)
        schedules.execute_scheduled_workflow(schedule.id)

        assert schedules.get_schedule_stats() == {
            "totalSchedules": 2,
            "activeSchedules": 1,
            "inactiveSchedules": 1,
            "totalExecutions": 1,
            "averageExecutionsPerSchedule": 0.5,
        }

    def test_workflow_deactivation_deactivates_schedules(self, schedules, queue):
        schedule = schedules.create_schedule("wf-simple", "*/5 * * * *")

        deactivated = schedules.handle_workflow_status_change("wf-simple", is_active=False)

        assert [s.id for s in deactivated] == [schedule.id]
        assert pending_jobs(queue, EXECUTE_SCHEDULED_WORKFLOW) == []
        assert schedules.handle_workflow_status_change("wf-simple", is_active=True) == []

    def test_preview(self, schedules):
        assert schedules.preview("0 0 * * *", "UTC", 2) == [
            datetime(2024, 1, 16, tzinfo=UTC),
            datetime(2024, 1, 17, tzinfo=UTC),
        ]
