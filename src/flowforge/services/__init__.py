"""Services package."""
from flowforge.services.execution_service import ExecuteNodeRequest, ExecutionService
from flowforge.services.job_handlers import register_job_handlers, scheduled_workflow_handler

__all__ = [
    "ExecuteNodeRequest",
    "ExecutionService",
    "register_job_handlers",
    "scheduled_workflow_handler",
]
