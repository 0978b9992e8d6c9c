"""Execution record stores (in-memory and Redis)."""
import threading
from abc import ABC, abstractmethod
from typing import Iterable

import redis

from flowforge.config import get_settings
from flowforge.observability import get_logger
from workflow_runtime.models import ExecutionStatus, WorkflowExecution

logger = get_logger(__name__)


class ExecutionStore(ABC):
    """Persistence for WorkflowExecution records."""

    @abstractmethod
    def save(self, execution: WorkflowExecution) -> None:
        """Insert or replace an execution record."""

    @abstractmethod
    def get(self, execution_id: str) -> WorkflowExecution | None:
        """Execution by id."""

    @abstractmethod
    def list_executions(
        self,
        statuses: Iterable[ExecutionStatus] | None = None,
        workflow_id: str | None = None,
    ) -> list[WorkflowExecution]:
        """Executions ordered by creation time."""

    def list_active(self) -> list[WorkflowExecution]:
        """Pending and running executions."""
        return self.list_executions([ExecutionStatus.PENDING, ExecutionStatus.RUNNING])


def _matches(
    execution: WorkflowExecution,
    statuses: set[ExecutionStatus] | None,
    workflow_id: str | None,
) -> bool:
    if statuses is not None and execution.status not in statuses:
        return False
    return workflow_id is None or execution.workflow_id == workflow_id


class InMemoryExecutionStore(ExecutionStore):
    """Process-local execution store."""

    def __init__(self) -> None:
        self._executions: dict[str, WorkflowExecution] = {}
        self._lock = threading.Lock()

    def save(self, execution: WorkflowExecution) -> None:
        with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)

    def get(self, execution_id: str) -> WorkflowExecution | None:
        with self._lock:
            execution = self._executions.get(execution_id)
            return execution.model_copy(deep=True) if execution else None

    def list_executions(
        self,
        statuses: Iterable[ExecutionStatus] | None = None,
        workflow_id: str | None = None,
    ) -> list[WorkflowExecution]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            executions = [
                e.model_copy(deep=True)
                for e in self._executions.values()
                if _matches(e, wanted, workflow_id)
            ]
        return sorted(executions, key=lambda e: e.created_at)


class RedisExecutionStore(ExecutionStore):
    """Redis-backed store for workflow execution state."""

    def __init__(self, redis_client: redis.Redis | None = None, key_prefix: str | None = None):
        """
        Initialize execution store.

        Args:
            redis_client: Optional Redis client (will create one if not provided)
            key_prefix: Key namespace (defaults to settings.key_prefix)
        """
        settings = get_settings()
        if redis_client is None:
            self.redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        else:
            self.redis_client = redis_client

        prefix = key_prefix or settings.key_prefix
        self._execution_prefix = f"{prefix}:execution:"
        self._index_key = f"{prefix}:executions"

    def _execution_key(self, execution_id: str) -> str:
        """Get Redis key for execution."""
        return f"{self._execution_prefix}{execution_id}"

    def save(self, execution: WorkflowExecution) -> None:
        pipe = self.redis_client.pipeline()
        pipe.set(self._execution_key(execution.id), execution.model_dump_json(by_alias=True))
        pipe.sadd(self._index_key, execution.id)
        pipe.execute()

        logger.info(
            "Execution saved",
            extra={"execution_id": execution.id, "status": execution.status.value},
        )

    def get(self, execution_id: str) -> WorkflowExecution | None:
        data = self.redis_client.get(self._execution_key(execution_id))
        if data is None:
            return None
        return WorkflowExecution.model_validate_json(data)

    def list_executions(
        self,
        statuses: Iterable[ExecutionStatus] | None = None,
        workflow_id: str | None = None,
    ) -> list[WorkflowExecution]:
        wanted = set(statuses) if statuses is not None else None
        executions = []
        for execution_id in self.redis_client.smembers(self._index_key):
            execution = self.get(execution_id)
            if execution is not None and _matches(execution, wanted, workflow_id):
                executions.append(execution)
        return sorted(executions, key=lambda e: e.created_at)
