"""
Execution status broadcaster.

In-memory publish/subscribe of execution lifecycle events on the topics
``execution:{id}`` and ``workflow:{id}``. Delivery is at-most-once and
fire-and-forget: a subscriber that raises is logged and skipped, and a
subscriber joining late does not see earlier events.
"""
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from flowforge.observability import get_logger
from workflow_runtime.executor import ExecutionObserver
from workflow_runtime.models import NodeExecutionResult, WorkflowExecution

logger = get_logger(__name__)


def execution_topic(execution_id: str) -> str:
    return f"execution:{execution_id}"


def workflow_topic(workflow_id: str) -> str:
    return f"workflow:{workflow_id}"


class _Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_message(self) -> dict[str, Any]:
        """camelCase payload as sent to subscribers' transports."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ExecutionStatusEvent(_Event):
    event: Literal["execution-status-update"] = "execution-status-update"
    execution_id: str
    workflow_id: str
    status: str
    progress: dict[str, Any] | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    error: str | None = None
    result: Any = None

    @classmethod
    def from_execution(cls, execution: WorkflowExecution, **overrides: Any) -> "ExecutionStatusEvent":
        data = {
            "execution_id": execution.id,
            "workflow_id": execution.workflow_id,
            "status": execution.status.value,
            "progress": execution.progress.model_dump(by_alias=True),
            "start_time": execution.started_at,
            "end_time": execution.finished_at,
            "error": execution.error,
            "result": execution.output_data if execution.is_terminal else None,
        }
        data.update(overrides)
        return cls(**data)


class WorkflowExecutionEvent(ExecutionStatusEvent):
    """Workflow-scoped mirror of ExecutionStatusEvent."""

    event: Literal["workflow-execution-update"] = "workflow-execution-update"


class NodeExecutionEvent(_Event):
    event: Literal["node-execution-update"] = "node-execution-update"
    execution_id: str
    workflow_id: str | None = None
    node_id: str
    node_name: str
    status: str
    start_time: datetime | None = None
    end_time: datetime | None = None
    output_data: dict[str, Any] | None = None
    error: str | None = None
    execution_time: float | None = None


Subscriber = Callable[[_Event], None]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by subscribe_*; pass it back to unsubscribe."""

    topic: str
    callback: Subscriber = field(compare=False)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


class ExecutionStatusBroadcaster:
    """
    Topic-scoped fan-out of execution events.

    Usage:
        broadcaster = ExecutionStatusBroadcaster()
        sub = broadcaster.subscribe_execution(execution_id, on_event)
        ...
        broadcaster.unsubscribe_execution(sub)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, dict[str, Subscription]] = {}

    # ==== Subscriptions ====

    def _subscribe(self, topic: str, callback: Subscriber) -> Subscription:
        subscription = Subscription(topic=topic, callback=callback)
        with self._lock:
            self._subscribers.setdefault(topic, {})[subscription.id] = subscription
        logger.debug(f"Subscribed to {topic}")
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            topic = self._subscribers.get(subscription.topic)
            if not topic or subscription.id not in topic:
                return False
            del topic[subscription.id]
            if not topic:
                del self._subscribers[subscription.topic]
        return True

    def subscribe_execution(self, execution_id: str, callback: Subscriber) -> Subscription:
        return self._subscribe(execution_topic(execution_id), callback)

    def unsubscribe_execution(self, subscription: Subscription) -> bool:
        return self._unsubscribe(subscription)

    def subscribe_workflow(self, workflow_id: str, callback: Subscriber) -> Subscription:
        return self._subscribe(workflow_topic(workflow_id), callback)

    def unsubscribe_workflow(self, subscription: Subscription) -> bool:
        return self._unsubscribe(subscription)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, {}))

    # ==== Publishing ====

    def publish(self, topic: str, event: _Event) -> int:
        """
        Deliver ``event`` to the current subscribers of ``topic``.

        Returns:
            Number of subscribers that received the event without raising
        """
        with self._lock:
            subscribers = list(self._subscribers.get(topic, {}).values())

        delivered = 0
        for subscription in subscribers:
            try:
                subscription.callback(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Subscriber raised while handling event",
                    extra={"topic": topic, "event": event.event},
                )
        return delivered

    def broadcast_execution_status(self, event: ExecutionStatusEvent) -> None:
        """Publish to the execution topic and mirror to the workflow topic."""
        self.publish(execution_topic(event.execution_id), event)
        mirror = WorkflowExecutionEvent(**event.model_dump(exclude={"event"}))
        self.publish(workflow_topic(event.workflow_id), mirror)

    def broadcast_node_update(self, event: NodeExecutionEvent) -> None:
        self.publish(execution_topic(event.execution_id), event)

    # ==== Convenience notifications ====

    def notify_execution_started(self, execution: WorkflowExecution) -> None:
        self.broadcast_execution_status(ExecutionStatusEvent.from_execution(execution))

    def notify_execution_progress(self, execution: WorkflowExecution) -> None:
        self.broadcast_execution_status(ExecutionStatusEvent.from_execution(execution))

    def notify_execution_completed(self, execution: WorkflowExecution) -> None:
        self.broadcast_execution_status(ExecutionStatusEvent.from_execution(execution))

    def notify_node_update(
        self,
        execution: WorkflowExecution,
        node_id: str,
        node_name: str,
        status: str,
        start_time: datetime | None = None,
        result: NodeExecutionResult | None = None,
    ) -> None:
        event = NodeExecutionEvent(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            node_id=node_id,
            node_name=node_name,
            status=status,
            start_time=start_time,
        )
        if result is not None:
            data = result.to_dict()
            event.start_time = result.start_time
            event.end_time = result.end_time
            event.output_data = data["outputData"]
            event.error = result.error
            event.execution_time = result.metrics.get("durationMs")
        self.broadcast_node_update(event)


class BroadcastObserver(ExecutionObserver):
    """Forwards executor lifecycle callbacks to a broadcaster."""

    def __init__(self, broadcaster: ExecutionStatusBroadcaster):
        self.broadcaster = broadcaster

    def execution_started(self, execution: WorkflowExecution) -> None:
        self.broadcaster.notify_execution_started(execution)

    def execution_progress(self, execution: WorkflowExecution) -> None:
        self.broadcaster.notify_execution_progress(execution)

    def node_started(self, execution: WorkflowExecution, node_id: str, node_name: str, start_time: datetime) -> None:
        self.broadcaster.notify_node_update(execution, node_id, node_name, "running", start_time)

    def node_finished(self, execution: WorkflowExecution, result: NodeExecutionResult) -> None:
        self.broadcaster.notify_node_update(
            execution, result.node_id, result.node_name, result.status.value, result=result
        )

    def execution_finished(self, execution: WorkflowExecution) -> None:
        self.broadcaster.notify_execution_completed(execution)
