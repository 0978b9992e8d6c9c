"""
Composition root.

Builds the node registry, stores, queue, schedule registry, execution
service and worker from settings. In-memory backends serve tests and
single-process use; the Redis backends let several scheduler and worker
processes share schedules, executions and the queue.
"""
from dataclasses import dataclass

import redis

from flowforge.broadcast import ExecutionStatusBroadcaster
from flowforge.config import Settings, get_settings
from flowforge.observability import get_logger
from flowforge.queue import (
    ExecutionQueue,
    InMemoryExecutionQueue,
    QueueWorker,
    RedisExecutionQueue,
)
from flowforge.scheduler import CronClock, ScheduleRegistry
from flowforge.services import ExecutionService, register_job_handlers
from flowforge.storage import (
    ExecutionStore,
    InMemoryExecutionStore,
    InMemoryScheduleStore,
    InMemoryWorkflowStore,
    RedisExecutionStore,
    RedisScheduleStore,
    ScheduleStore,
    WorkflowSource,
)
from node_registry import NodeRegistry
from nodepacks.core import register_nodes

logger = get_logger(__name__)


@dataclass
class FlowForgeApp:
    """Wired components of one process."""

    settings: Settings
    registry: NodeRegistry
    workflows: WorkflowSource
    schedule_store: ScheduleStore
    execution_store: ExecutionStore
    queue: ExecutionQueue
    broadcaster: ExecutionStatusBroadcaster
    schedules: ScheduleRegistry
    service: ExecutionService
    worker: QueueWorker
    clock: CronClock


def build_registry(discover: bool = True) -> NodeRegistry:
    """
    Node registry with the core pack, plus any installed packs.

    Args:
        discover: Also load packs published under the entry point group
    """
    registry = NodeRegistry()
    registry.register_pack(*register_nodes())
    if discover:
        registry.discover_entry_points()
    registry.freeze()
    return registry


def build_app(
    settings: Settings | None = None,
    use_redis: bool = False,
    redis_client: redis.Redis | None = None,
    workflows: WorkflowSource | None = None,
    registry: NodeRegistry | None = None,
) -> FlowForgeApp:
    """
    Wire every component.

    Args:
        settings: Settings (defaults to global settings)
        use_redis: Use the Redis-backed stores and queue
        redis_client: Redis client shared by the Redis backends
        workflows: Source of saved workflows (defaults to an in-memory store)
        registry: Prebuilt node registry
    """
    settings = settings or get_settings()
    registry = registry or build_registry()
    workflows = workflows or InMemoryWorkflowStore()

    if use_redis:
        redis_client = redis_client or redis.from_url(settings.redis_url, decode_responses=True)
        schedule_store: ScheduleStore = RedisScheduleStore(redis_client, settings.key_prefix)
        execution_store: ExecutionStore = RedisExecutionStore(redis_client, settings.key_prefix)
        queue: ExecutionQueue = RedisExecutionQueue(
            redis_client,
            settings.key_prefix,
            remove_on_complete=settings.queue_remove_on_complete,
            remove_on_fail=settings.queue_remove_on_fail,
        )
    else:
        schedule_store = InMemoryScheduleStore()
        execution_store = InMemoryExecutionStore()
        queue = InMemoryExecutionQueue(
            remove_on_complete=settings.queue_remove_on_complete,
            remove_on_fail=settings.queue_remove_on_fail,
        )

    broadcaster = ExecutionStatusBroadcaster()
    schedules = ScheduleRegistry(schedule_store, queue, workflows, settings, executions=execution_store)
    service = ExecutionService(
        registry, queue, execution_store, workflows, broadcaster, settings=settings
    )
    worker = register_job_handlers(QueueWorker(queue), service, schedules)
    clock = CronClock(schedules, settings.scheduler_tick_interval_s)

    logger.info(
        "Application wired",
        extra={"backend": "redis" if use_redis else "memory", "node_types": len(registry)},
    )
    return FlowForgeApp(
        settings=settings,
        registry=registry,
        workflows=workflows,
        schedule_store=schedule_store,
        execution_store=execution_store,
        queue=queue,
        broadcaster=broadcaster,
        schedules=schedules,
        service=service,
        worker=worker,
        clock=clock,
    )


# Global app instance
_app: FlowForgeApp | None = None


def get_app() -> FlowForgeApp:
    """Get or create the process-wide app (Redis backends)."""
    global _app
    if _app is None:
        _app = build_app(use_redis=True)
    return _app


def reset_app() -> None:
    """Reset the process-wide app (useful for testing)."""
    global _app
    _app = None
