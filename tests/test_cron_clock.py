"""Tests for the cron clock."""
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from flowforge.queue import EXECUTE_WORKFLOW, JobState
from flowforge.scheduler import CronClock, ScheduleRegistry
from flowforge.storage import InMemoryWorkflowStore
from workflow_runtime import WorkflowGraph

UTC = timezone.utc


@pytest.fixture
def workflows():
    return InMemoryWorkflowStore([
        WorkflowGraph(id=f"wf-{n}", name=f"Workflow {n}") for n in range(3)
    ])


@pytest.fixture
def schedules(schedule_store, queue, workflows, settings, clock):
    return ScheduleRegistry(schedule_store, queue, workflows, settings, clock=clock)


def run_jobs(queue):
    return [job for job in queue.list_jobs([JobState.WAITING]) if job.job_type == EXECUTE_WORKFLOW]


class TestCronClock:
    def test_tick_fires_due_schedules(self, schedules, queue, clock):
        for n in range(3):
            schedules.create_schedule(f"wf-{n}", "*/5 * * * *")
        clock.set(datetime(2024, 1, 15, 9, 35, tzinfo=UTC))

        counts = CronClock(schedules).tick()

        assert counts["fired"] == 3
        assert counts["failed"] == 0
        assert len(run_jobs(queue)) == 3

    def test_tick_before_due_fires_nothing(self, schedules, queue):
        schedules.create_schedule("wf-0", "*/5 * * * *")

        counts = CronClock(schedules).tick()

        assert counts["fired"] == 0
        assert run_jobs(queue) == []

    def test_duplicate_tick_fires_once(self, schedules, queue, clock):
        schedules.create_schedule("wf-0", "*/5 * * * *")
        clock.set(datetime(2024, 1, 15, 9, 35, tzinfo=UTC))
        first = CronClock(schedules)
        second = CronClock(schedules)

        first.tick()
        second.tick()

        assert len(run_jobs(queue)) == 1

    def test_failing_schedule_does_not_stop_tick(self, schedules, queue, clock, monkeypatch):
        broken = schedules.create_schedule("wf-0", "*/5 * * * *")
        schedules.create_schedule("wf-1", "*/5 * * * *")
        schedules.create_schedule("wf-2", "*/5 * * * *")
        clock.set(datetime(2024, 1, 15, 9, 35, tzinfo=UTC))

        original = schedules.execute_scheduled_workflow

        def execute(schedule_id, now=None, force=False):
            if schedule_id == broken.id:
                raise RuntimeError("store unavailable")
            return original(schedule_id, now=now, force=force)

        monkeypatch.setattr(schedules, "execute_scheduled_workflow", execute)

        counts = CronClock(schedules).tick()

        assert counts["fired"] == 2
        assert counts["failed"] == 1
        assert {job.payload["workflowId"] for job in run_jobs(queue)} == {"wf-1", "wf-2"}

    def test_tick_rearms_schedules(self):
        registry = MagicMock()
        registry.now.return_value = datetime(2024, 1, 15, 9, 35, tzinfo=UTC)
        registry.find_due.return_value = []
        registry.ensure_armed.return_value = 2

        counts = CronClock(registry).tick()

        registry.ensure_armed.assert_called_once_with(registry.now.return_value)
        assert counts["rearmed"] == 2

    def test_start_and_stop(self):
        registry = MagicMock()
        registry.find_due.return_value = []
        registry.ensure_armed.return_value = 0
        clock = CronClock(registry, interval_s=0.01)

        clock.start()
        deadline = time.monotonic() + 2
        while registry.find_due.call_count < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        clock.stop(timeout=1)

        assert registry.find_due.call_count >= 2
        assert clock.running is False
