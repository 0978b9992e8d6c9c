"""Celery tasks driving the cron clock and the execution queue."""
from typing import Any

from flowforge.bootstrap import get_app
from flowforge.integrations.celery_app import celery_app
from flowforge.observability import get_logger, setup_logging
from node_sdk.context import ExecutionMode

# Setup logging
setup_logging()
logger = get_logger(__name__)


@celery_app.task(name="tick_scheduler")
def tick_scheduler() -> dict[str, int]:
    """Fire due schedules once (driven by celery beat)."""
    return get_app().clock.tick()


@celery_app.task(name="drain_queue")
def drain_queue() -> int:
    """
    Process every due queue job.

    Returns:
        Number of jobs processed
    """
    processed = get_app().worker.run_once()
    if processed:
        logger.info("Queue drained", extra={"processed": processed})
    return processed


@celery_app.task(name="submit_workflow")
def submit_workflow(
    workflow_id: str,
    input_data: list[dict[str, Any]] | None = None,
    mode: str = ExecutionMode.MANUAL.value,
    priority: int = 0,
) -> dict[str, Any]:
    """
    Queue a run of a saved workflow.

    Args:
        workflow_id: Workflow to run
        input_data: Trigger payload items
        mode: Execution mode value
        priority: Higher runs first

    Returns:
        Execution id and status
    """
    try:
        execution = get_app().service.submit_workflow(
            workflow_id,
            mode=ExecutionMode(mode),
            input_data=input_data,
            priority=priority,
        )
    except Exception as e:
        logger.error(
            "Workflow submission failed",
            extra={"workflow_id": workflow_id, "error": str(e)},
            exc_info=True,
        )
        raise

    return {"executionId": execution.id, "status": execution.status.value}
