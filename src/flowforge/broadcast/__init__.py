"""Execution status broadcast package."""
from flowforge.broadcast.broadcaster import (
    BroadcastObserver,
    ExecutionStatusBroadcaster,
    ExecutionStatusEvent,
    NodeExecutionEvent,
    Subscription,
    WorkflowExecutionEvent,
    execution_topic,
    workflow_topic,
)

__all__ = [
    "BroadcastObserver",
    "ExecutionStatusBroadcaster",
    "ExecutionStatusEvent",
    "NodeExecutionEvent",
    "Subscription",
    "WorkflowExecutionEvent",
    "execution_topic",
    "workflow_topic",
]
