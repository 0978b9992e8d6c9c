"""Execution queue package."""
from flowforge.queue.base import (
    EXECUTE_NODE,
    EXECUTE_SCHEDULED_WORKFLOW,
    EXECUTE_WORKFLOW,
    BackoffPolicy,
    ExecutionQueue,
    JobOptions,
    JobState,
    QueueJob,
)
from flowforge.queue.memory import InMemoryExecutionQueue
from flowforge.queue.redis_queue import RedisExecutionQueue
from flowforge.queue.worker import QueueWorker

__all__ = [
    "EXECUTE_NODE",
    "EXECUTE_SCHEDULED_WORKFLOW",
    "EXECUTE_WORKFLOW",
    "BackoffPolicy",
    "ExecutionQueue",
    "InMemoryExecutionQueue",
    "JobOptions",
    "JobState",
    "QueueJob",
    "QueueWorker",
    "RedisExecutionQueue",
]
