"""Wiring of queue job types to their handlers."""
from typing import Any

from flowforge.observability import get_logger
from flowforge.queue.base import (
    EXECUTE_NODE,
    EXECUTE_SCHEDULED_WORKFLOW,
    EXECUTE_WORKFLOW,
    QueueJob,
)
from flowforge.queue.worker import QueueWorker
from flowforge.scheduler.registry import ScheduleRegistry
from flowforge.services.execution_service import ExecutionService

logger = get_logger(__name__)


def scheduled_workflow_handler(schedules: ScheduleRegistry):
    """Handler for the armed ``execute-scheduled-workflow`` job of a schedule."""

    def handle(job: QueueJob) -> dict[str, Any]:
        schedule_id = job.payload["scheduleId"]
        run = schedules.execute_scheduled_workflow(schedule_id)
        if run is None:
            return {"scheduleId": schedule_id, "fired": False}
        return {"scheduleId": schedule_id, "fired": True, "runJobId": run.id}

    return handle


def register_job_handlers(
    worker: QueueWorker,
    service: ExecutionService,
    schedules: ScheduleRegistry | None = None,
) -> QueueWorker:
    """
    Register every job type on ``worker``.

    Args:
        worker: Queue worker
        service: Runs workflow and node jobs
        schedules: Fires armed schedule jobs (omit for workers that only run workflows)

    Returns:
        The worker, for chaining
    """
    worker.register(EXECUTE_WORKFLOW, service.handle_execute_workflow, service.handle_permanent_failure)
    worker.register(EXECUTE_NODE, service.handle_execute_node, service.handle_permanent_failure)
    if schedules is not None:
        worker.register(EXECUTE_SCHEDULED_WORKFLOW, scheduled_workflow_handler(schedules))
    logger.info(f"Registered job handlers: {', '.join(worker.job_types)}")
    return worker
