"""Storage package."""
from flowforge.storage.execution_store import (
    ExecutionStore,
    InMemoryExecutionStore,
    RedisExecutionStore,
)
from flowforge.storage.schedule_store import (
    InMemoryScheduleStore,
    RedisScheduleStore,
    Schedule,
    ScheduleStore,
    generate_schedule_id,
)
from flowforge.storage.workflow_store import InMemoryWorkflowStore, WorkflowSource

__all__ = [
    "ExecutionStore",
    "InMemoryExecutionStore",
    "RedisExecutionStore",
    "InMemoryScheduleStore",
    "RedisScheduleStore",
    "Schedule",
    "ScheduleStore",
    "generate_schedule_id",
    "InMemoryWorkflowStore",
    "WorkflowSource",
]
