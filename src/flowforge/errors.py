"""
Error taxonomy shared by the scheduler, queue, node runtime and executor.

ValidationError and ConflictError are raised synchronously to callers.
NodeExecutionError is recovered by the executor when a node has
continue_on_fail set; otherwise it becomes WorkflowExecutionFailed.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class FlowForgeError(Exception):
    """Base class for all errors raised by the workflow core."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(FlowForgeError):
    """Invalid input detected before any work is done."""


class InvalidCronExpression(ValidationError):
    """Cron expression could not be parsed."""

    def __init__(self, expression: str, reason: str = "") -> None:
        message = f"Invalid cron expression: {expression}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, {"cron_expression": expression})
        self.expression = expression


class InvalidTimezone(ValidationError):
    """Timezone name is not known to the tz database."""

    def __init__(self, timezone: str) -> None:
        super().__init__(f"Invalid timezone: {timezone}", {"timezone": timezone})
        self.timezone = timezone


class NodeConfigurationError(ValidationError):
    """Node parameters do not match the node type's schema."""

    def __init__(self, node_type: str, errors: List[str], node_id: Optional[str] = None) -> None:
        super().__init__(
            f"Invalid configuration for node type {node_type}: {'; '.join(errors)}",
            {"node_type": node_type, "node_id": node_id, "errors": errors},
        )
        self.node_type = node_type
        self.node_id = node_id
        self.errors = errors


class GraphValidationError(ValidationError):
    """Workflow graph is structurally invalid."""


class GraphCycleError(GraphValidationError):
    """Workflow graph contains a cycle."""

    def __init__(self, node_ids: List[str]) -> None:
        super().__init__(
            f"Workflow has cycles involving: {', '.join(sorted(node_ids))}",
            {"node_ids": sorted(node_ids)},
        )
        self.node_ids = sorted(node_ids)


class ConflictError(FlowForgeError):
    """Operation conflicts with the current state of a resource."""


class NotFoundError(FlowForgeError):
    """Referenced schedule, execution, job or node type does not exist."""


class NodeExecutionError(FlowForgeError):
    """A node failed while processing its input items."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        node_name: Optional[str] = None,
        item_index: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            {"node_id": node_id, "node_name": node_name, "item_index": item_index},
        )
        self.node_id = node_id
        self.node_name = node_name
        self.item_index = item_index


class NodeTimeoutError(NodeExecutionError):
    """A node exceeded its own time limit."""


class ExpressionError(FlowForgeError):
    """An expression could not be parsed or evaluated."""

    def __init__(self, message: str, expression: str = "") -> None:
        super().__init__(message, {"expression": expression})
        self.expression = expression


class WorkflowExecutionFailed(FlowForgeError):
    """Terminal failure of a workflow execution caused by a node."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, {"execution_id": execution_id, "node_id": node_id})
        self.execution_id = execution_id
        self.node_id = node_id


class QueueDeliveryError(FlowForgeError):
    """A queued job kept failing until its attempts were exhausted."""

    def __init__(self, job_id: str, attempts: int, reason: str) -> None:
        super().__init__(
            f"Job {job_id} failed permanently after {attempts} attempt(s): {reason}",
            {"job_id": job_id, "attempts": attempts},
        )
        self.job_id = job_id
        self.attempts = attempts
        self.reason = reason


__all__ = [
    "FlowForgeError",
    "ValidationError",
    "InvalidCronExpression",
    "InvalidTimezone",
    "NodeConfigurationError",
    "GraphValidationError",
    "GraphCycleError",
    "ConflictError",
    "NotFoundError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "ExpressionError",
    "WorkflowExecutionFailed",
    "QueueDeliveryError",
]
