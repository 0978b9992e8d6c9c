"""
Schedule registry.

Owns Schedule aggregates and keeps each active schedule armed with one
pending delayed ``execute-scheduled-workflow`` job. Firing a schedule
enqueues an ``execute-workflow`` job whose id is derived from the schedule
id and fire time, so a duplicate fire (two clock instances, a retried job)
never starts a second run.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from flowforge.config import Settings, get_settings
from flowforge.errors import ConflictError, NotFoundError
from flowforge.observability import get_logger
from flowforge.queue.base import (
    EXECUTE_SCHEDULED_WORKFLOW,
    EXECUTE_WORKFLOW,
    BackoffPolicy,
    ExecutionQueue,
    JobOptions,
    QueueJob,
)
from flowforge.scheduler.cron import (
    armed_job_id,
    next_fire_time,
    run_job_id,
    upcoming_fire_times,
    validate_cron_expression,
    validate_timezone,
)
from flowforge.storage.execution_store import ExecutionStore
from flowforge.storage.schedule_store import Schedule, ScheduleStore
from flowforge.storage.workflow_store import WorkflowSource
from node_sdk.context import ExecutionMode
from workflow_runtime.models import WorkflowExecution

logger = get_logger(__name__)

SCHEDULED_RUN_PRIORITY = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def scheduled_execution_id(run_id: str) -> str:
    """Execution id of a scheduled run (same run id, same execution)."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"flowforge:{run_id}"))


class ScheduleRegistry:
    """
    Create, update and fire cron schedules.

    Usage:
        registry = ScheduleRegistry(store, queue, workflows)
        schedule = registry.create_schedule("wf-1", "*/5 * * * *", "Europe/Berlin")
        registry.execute_scheduled_workflow(schedule.id)
    """

    def __init__(
        self,
        store: ScheduleStore,
        queue: ExecutionQueue,
        workflows: WorkflowSource,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        executions: ExecutionStore | None = None,
    ):
        self.store = store
        self.queue = queue
        self.workflows = workflows
        self.settings = settings or get_settings()
        self._clock = clock or _utcnow
        self.executions = executions

    def now(self) -> datetime:
        return self._clock()

    # ==== CRUD ====

    def create_schedule(
        self,
        workflow_id: str,
        cron_expression: str,
        timezone: str = "UTC",
        is_active: bool = True,
    ) -> Schedule:
        """
        Create a schedule.

        Raises:
            NotFoundError: Unknown workflow
            InvalidCronExpression / InvalidTimezone: Bad cron or timezone
            ConflictError: The workflow already has an active schedule
        """
        if not self.workflows.exists(workflow_id):
            raise NotFoundError(f"Workflow not found: {workflow_id}", {"workflow_id": workflow_id})
        cron_expression = validate_cron_expression(cron_expression)
        validate_timezone(timezone)

        with self.store.lock(f"workflow:{workflow_id}"):
            if is_active:
                self._ensure_no_active_schedule(workflow_id)

            now = self.now()
            schedule = Schedule(
                workflow_id=workflow_id,
                cron_expression=cron_expression,
                timezone=timezone,
                is_active=is_active,
                next_execution=next_fire_time(cron_expression, timezone, now),
                created_at=now,
                updated_at=now,
            )
            if is_active:
                self._arm(schedule)
            self.store.save(schedule)

        logger.info(
            "Schedule created",
            extra={
                "schedule_id": schedule.id,
                "workflow_id": workflow_id,
                "cron_expression": cron_expression,
                "next_execution": schedule.next_execution.isoformat(),
            },
        )
        return schedule

    def update_schedule(
        self,
        schedule_id: str,
        cron_expression: str | None = None,
        timezone: str | None = None,
        is_active: bool | None = None,
    ) -> Schedule:
        """
        Update cron, timezone or active flag.

        nextExecution is recomputed when cron or timezone change (and on
        activation); the armed job is replaced accordingly.
        """
        if cron_expression is not None:
            cron_expression = validate_cron_expression(cron_expression)
        if timezone is not None:
            validate_timezone(timezone)

        schedule = self.get_schedule(schedule_id)
        with self.store.lock(f"workflow:{schedule.workflow_id}"), self.store.lock(f"schedule:{schedule_id}"):
            schedule = self.get_schedule(schedule_id)
            activating = is_active is True and not schedule.is_active
            if activating:
                self._ensure_no_active_schedule(schedule.workflow_id, exclude=schedule_id)

            timing_changed = (
                (cron_expression is not None and cron_expression != schedule.cron_expression)
                or (timezone is not None and timezone != schedule.timezone)
            )
            if cron_expression is not None:
                schedule.cron_expression = cron_expression
            if timezone is not None:
                schedule.timezone = timezone
            if is_active is not None:
                schedule.is_active = is_active

            now = self.now()
            if timing_changed or activating:
                schedule.next_execution = next_fire_time(schedule.cron_expression, schedule.timezone, now)
            schedule.updated_at = now

            self._disarm(schedule)
            if schedule.is_active:
                self._arm(schedule)
            self.store.save(schedule)

        logger.info(
            "Schedule updated",
            extra={"schedule_id": schedule_id, "workflow_id": schedule.workflow_id, "is_active": schedule.is_active},
        )
        return schedule

    def activate_schedule(self, schedule_id: str) -> Schedule:
        """Activate a schedule (no-op when already active)."""
        schedule = self.get_schedule(schedule_id)
        if schedule.is_active:
            return schedule
        return self.update_schedule(schedule_id, is_active=True)

    def deactivate_schedule(self, schedule_id: str) -> Schedule:
        """Deactivate a schedule and disarm its job (no-op when inactive)."""
        schedule = self.get_schedule(schedule_id)
        if not schedule.is_active:
            return schedule
        return self.update_schedule(schedule_id, is_active=False)

    def delete_schedule(self, schedule_id: str) -> None:
        """Cancel the armed job, then delete the record."""
        schedule = self.get_schedule(schedule_id)
        with self.store.lock(f"schedule:{schedule_id}"):
            self._disarm(schedule)
            self.store.delete(schedule_id)
        logger.info("Schedule deleted", extra={"schedule_id": schedule_id, "workflow_id": schedule.workflow_id})

    def get_schedule(self, schedule_id: str) -> Schedule:
        """
        Schedule by id.

        Raises:
            NotFoundError: Unknown schedule
        """
        schedule = self.store.get(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule not found: {schedule_id}", {"schedule_id": schedule_id})
        return schedule

    def list_schedules(self, workflow_id: str | None = None) -> list[Schedule]:
        return self.store.list_schedules(workflow_id)

    # ==== Firing ====

    def find_due(self, now: datetime | None = None) -> list[Schedule]:
        """Active schedules whose nextExecution is not after ``now``."""
        now = now or self.now()
        return [
            s for s in self.store.list_schedules()
            if s.is_active and s.next_execution is not None and s.next_execution <= now
        ]

    def execute_scheduled_workflow(
        self,
        schedule_id: str,
        now: datetime | None = None,
        force: bool = False,
    ) -> QueueJob | None:
        """
        Fire a schedule.

        Enqueues the workflow run, advances lastExecution, executionCount
        and nextExecution, and re-arms the delayed job.

        Returns:
            The run job, or None when the schedule is inactive or not due
        """
        now = now or self.now()
        with self.store.lock(f"schedule:{schedule_id}"):
            schedule = self.get_schedule(schedule_id)
            if not schedule.is_active:
                logger.info("Skipping inactive schedule", extra={"schedule_id": schedule_id})
                return None
            due = schedule.next_execution is not None and schedule.next_execution <= now
            if not due and not force:
                logger.debug("Schedule not due yet", extra={"schedule_id": schedule_id})
                return None

            fire_time = schedule.next_execution if due else now
            run_id = run_job_id(schedule.id, fire_time)
            execution_id = scheduled_execution_id(run_id)
            if self.executions is not None and self.executions.get(execution_id) is None:
                # Saved before enqueueing so the run can be cancelled while queued
                self.executions.save(WorkflowExecution(
                    id=execution_id,
                    workflow_id=schedule.workflow_id,
                    mode=ExecutionMode.SCHEDULED,
                    input_data=[{"scheduleId": schedule.id, "timestamp": fire_time.isoformat()}],
                    job_id=run_id,
                    priority=SCHEDULED_RUN_PRIORITY,
                ))
            job = self.queue.enqueue(
                EXECUTE_WORKFLOW,
                {
                    "scheduleId": schedule.id,
                    "workflowId": schedule.workflow_id,
                    "executionId": execution_id,
                    "executionTime": fire_time.isoformat(),
                    "priority": SCHEDULED_RUN_PRIORITY,
                },
                JobOptions(
                    job_id=run_id,
                    priority=SCHEDULED_RUN_PRIORITY,
                    attempts=self.settings.workflow_job_attempts,
                    backoff=BackoffPolicy(delay_ms=self.settings.workflow_backoff_delay_ms),
                ),
            )

            schedule.last_execution = now
            schedule.execution_count += 1
            schedule.next_execution = next_fire_time(schedule.cron_expression, schedule.timezone, max(now, fire_time))
            schedule.updated_at = now
            self._arm(schedule)
            self.store.save(schedule)

        logger.info(
            "Scheduled workflow fired",
            extra={
                "schedule_id": schedule_id,
                "workflow_id": schedule.workflow_id,
                "job_id": job.id,
                "next_execution": schedule.next_execution.isoformat(),
            },
        )
        return job

    def ensure_armed(self, now: datetime | None = None) -> int:
        """
        Re-arm active schedules left without a pending job.

        The armed job cannot replace itself while its own handler is
        running; the clock calls this every tick to restore the handle.

        Returns:
            Number of schedules re-armed
        """
        count = 0
        for schedule in self.store.list_schedules():
            if not schedule.is_active:
                continue
            job = self.queue.get_job(schedule.armed_job_id) if schedule.armed_job_id else None
            if job is not None and job.is_pending:
                continue
            with self.store.lock(f"schedule:{schedule.id}"):
                current = self.store.get(schedule.id)
                if current is None or not current.is_active:
                    continue
                self._arm(current)
                self.store.save(current)
                if current.armed_job_id:
                    count += 1
        return count

    def _arm(self, schedule: Schedule) -> None:
        """Enqueue (or replace) the delayed job firing ``schedule``."""
        delay_ms = 0
        if schedule.next_execution is not None:
            delay_ms = max(int((schedule.next_execution - self.now()).total_seconds() * 1000), 0)

        job = self.queue.enqueue(
            EXECUTE_SCHEDULED_WORKFLOW,
            {"scheduleId": schedule.id, "workflowId": schedule.workflow_id},
            JobOptions(
                job_id=armed_job_id(schedule.id),
                delay_ms=delay_ms,
                attempts=self.settings.schedule_job_attempts,
                backoff=BackoffPolicy(delay_ms=self.settings.schedule_backoff_delay_ms),
                replace_finished=True,
            ),
        )
        # An active armed job means we're inside its handler
        schedule.armed_job_id = job.id if job.is_pending else None

    def _disarm(self, schedule: Schedule) -> None:
        if schedule.armed_job_id:
            self.queue.remove(schedule.armed_job_id)
        schedule.armed_job_id = None

    def _ensure_no_active_schedule(self, workflow_id: str, exclude: str | None = None) -> None:
        for existing in self.store.list_schedules(workflow_id):
            if existing.is_active and existing.id != exclude:
                raise ConflictError(
                    f"Workflow {workflow_id} already has an active schedule",
                    {"workflow_id": workflow_id, "schedule_id": existing.id},
                )

    # ==== Queries ====

    def get_schedule_stats(self) -> dict[str, Any]:
        """Totals across all schedules."""
        schedules = self.store.list_schedules()
        total = len(schedules)
        active = sum(1 for s in schedules if s.is_active)
        executions = sum(s.execution_count for s in schedules)
        return {
            "totalSchedules": total,
            "activeSchedules": active,
            "inactiveSchedules": total - active,
            "totalExecutions": executions,
            "averageExecutionsPerSchedule": executions / total if total else 0,
        }

    def handle_workflow_status_change(self, workflow_id: str, is_active: bool) -> list[Schedule]:
        """
        Deactivate the schedules of a workflow that was deactivated.

        Returns:
            The schedules that were deactivated
        """
        if is_active:
            return []
        deactivated = []
        for schedule in self.store.list_schedules(workflow_id):
            if schedule.is_active:
                deactivated.append(self.deactivate_schedule(schedule.id))
        if deactivated:
            logger.info(
                f"Deactivated {len(deactivated)} schedule(s) of inactive workflow",
                extra={"workflow_id": workflow_id},
            )
        return deactivated

    def preview(self, cron_expression: str, timezone: str = "UTC", count: int = 5) -> list[datetime]:
        """Upcoming fire times (UTC) of a cron expression."""
        return upcoming_fire_times(cron_expression, timezone, count, self.now())
