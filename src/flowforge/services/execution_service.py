"""
Execution service.

Facade used by transports (HTTP, Celery, CLI): submits workflow runs and
single-node runs to the queue, runs claimed jobs through the workflow
executor and answers status, results and cancellation requests.
"""
import threading
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from flowforge.broadcast import BroadcastObserver, ExecutionStatusBroadcaster
from flowforge.config import Settings, get_settings
from flowforge.errors import ConflictError, NotFoundError
from flowforge.observability import get_logger, with_execution_context
from flowforge.queue.base import (
    EXECUTE_NODE,
    EXECUTE_WORKFLOW,
    BackoffPolicy,
    ExecutionQueue,
    JobOptions,
    QueueJob,
)
from flowforge.storage.execution_store import ExecutionStore
from flowforge.storage.workflow_store import WorkflowSource
from node_registry.registry import NodeRegistry
from node_sdk.context import ExecutionMode
from workflow_runtime.executor import (
    CancellationToken,
    ExecutionObserver,
    WorkflowExecutor,
    WorkflowResult,
)
from workflow_runtime.expressions import ExpressionEngine
from workflow_runtime.models import (
    ExecutionStatus,
    GraphNode,
    NodeExecutionResult,
    WorkflowExecution,
    WorkflowGraph,
)

logger = get_logger(__name__)

DEFAULT_PRIORITY = 0

RETRYABLE_STATUSES = frozenset({
    ExecutionStatus.FAILED,
    ExecutionStatus.TIMEOUT,
    ExecutionStatus.CANCELLED,
})


class ExecuteNodeRequest(BaseModel):
    """Run one node outside a saved workflow."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    node_type: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    input_data: list[dict[str, Any]] = Field(default_factory=list)
    node_id: str = "node"
    node_name: str | None = None
    continue_on_fail: bool = False
    timeout_seconds: float | None = Field(default=None, gt=0)
    workflow_id: str | None = None
    execution_id: str | None = None


class _PersistingObserver(ExecutionObserver):
    """Saves the execution record on lifecycle changes, then forwards to the broadcaster."""

    def __init__(self, store: ExecutionStore, forward: ExecutionObserver):
        self.store = store
        self.forward = forward

    def execution_started(self, execution: WorkflowExecution) -> None:
        self.store.save(execution)
        self.forward.execution_started(execution)

    def execution_progress(self, execution: WorkflowExecution) -> None:
        self.store.save(execution)
        self.forward.execution_progress(execution)

    def node_started(self, execution, node_id, node_name, start_time) -> None:
        self.forward.node_started(execution, node_id, node_name, start_time)

    def node_finished(self, execution, result) -> None:
        self.forward.node_finished(execution, result)

    def execution_finished(self, execution: WorkflowExecution) -> None:
        self.store.save(execution)
        self.forward.execution_finished(execution)


class ExecutionService:
    """
    Composes queue, store, executor and registry.

    Usage:
        service = ExecutionService(registry, queue, store, workflows)
        execution = service.submit_workflow("wf-1", input_data=[{"id": 1}])
        service.get_execution_status(execution.id)
    """

    def __init__(
        self,
        registry: NodeRegistry,
        queue: ExecutionQueue,
        store: ExecutionStore,
        workflows: WorkflowSource,
        broadcaster: ExecutionStatusBroadcaster | None = None,
        engine: ExpressionEngine | None = None,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.queue = queue
        self.store = store
        self.workflows = workflows
        self.broadcaster = broadcaster or ExecutionStatusBroadcaster()
        self.settings = settings or get_settings()
        self.executor = WorkflowExecutor(
            registry,
            engine=engine or ExpressionEngine(),
            max_workers=self.settings.executor_max_workers,
            execution_timeout=self.settings.execution_timeout_s,
            node_timeout=self.settings.node_timeout_s,
            observer=_PersistingObserver(store, BroadcastObserver(self.broadcaster)),
        )
        self._lock = threading.Lock()
        self._tokens: dict[str, CancellationToken] = {}
        self._cancel_requested: set[str] = set()

    def _job_options(self, job_id: str, priority: int, delay_ms: int = 0) -> JobOptions:
        return JobOptions(
            job_id=job_id,
            priority=priority,
            delay_ms=delay_ms,
            attempts=self.settings.workflow_job_attempts,
            backoff=BackoffPolicy(delay_ms=self.settings.workflow_backoff_delay_ms),
        )

    # ==== Submission ====

    def submit_workflow(
        self,
        workflow: WorkflowGraph | str,
        mode: ExecutionMode = ExecutionMode.MANUAL,
        input_data: list[dict[str, Any]] | None = None,
        priority: int = DEFAULT_PRIORITY,
        delay_ms: int = 0,
        original_execution_id: str | None = None,
        retry_count: int = 0,
    ) -> WorkflowExecution:
        """
        Queue a workflow run.

        Args:
            workflow: Graph, or id of a saved workflow
            mode: Trigger mode recorded on the execution
            input_data: Trigger payload items
            priority: Higher runs first
            delay_ms: Delay before the run becomes ready
            original_execution_id: Execution this run retries
            retry_count: Retries so far in the chain of ``original_execution_id``

        Returns:
            The pending execution (its id is also the job id)
        """
        graph = self.workflows.require(workflow) if isinstance(workflow, str) else workflow
        self.executor.compile(graph)

        execution = WorkflowExecution(
            id=str(uuid.uuid4()),
            workflow_id=graph.id,
            mode=mode,
            input_data=list(input_data or []),
            priority=priority,
            original_execution_id=original_execution_id,
            retry_count=retry_count,
        )
        self.store.save(execution)

        payload: dict[str, Any] = {
            "workflowId": graph.id,
            "executionId": execution.id,
            "executionTime": execution.created_at.isoformat(),
            "priority": priority,
            "delay": delay_ms,
        }
        if isinstance(workflow, WorkflowGraph):
            payload["workflow"] = graph.model_dump(mode="json", by_alias=True)
        self.queue.enqueue(EXECUTE_WORKFLOW, payload, self._job_options(execution.id, priority, delay_ms))

        logger.info(
            "Workflow execution submitted",
            extra=with_execution_context(execution_id=execution.id, workflow_id=graph.id),
        )
        return execution

    def execute_node(self, request: ExecuteNodeRequest | dict[str, Any]) -> NodeExecutionResult:
        """Run one node synchronously and return its result."""
        if not isinstance(request, ExecuteNodeRequest):
            request = ExecuteNodeRequest.model_validate(request)

        graph = WorkflowGraph(
            id=request.workflow_id or f"node:{request.node_type}",
            name=request.node_name or request.node_type,
            nodes=[
                GraphNode(
                    id=request.node_id,
                    name=request.node_name or request.node_id,
                    type=request.node_type,
                    parameters=request.parameters,
                    continue_on_fail=request.continue_on_fail,
                    timeout_seconds=request.timeout_seconds,
                )
            ],
        )
        execution = self.store.get(request.execution_id) if request.execution_id else None
        if execution is None:
            execution = WorkflowExecution(
                id=request.execution_id or str(uuid.uuid4()),
                workflow_id=graph.id,
                input_data=request.input_data,
            )
        result = self._run(graph, execution)
        return result.node_results[request.node_id]

    def execute_batch(self, requests: list[ExecuteNodeRequest | dict[str, Any]]) -> list[str]:
        """
        Queue several single-node runs.

        Returns:
            Execution ids, in request order
        """
        execution_ids = []
        for raw in requests:
            request = raw if isinstance(raw, ExecuteNodeRequest) else ExecuteNodeRequest.model_validate(raw)
            if not self.registry.is_valid_node_type(request.node_type):
                raise NotFoundError(f"Unknown node type: {request.node_type}", {"node_type": request.node_type})

            execution = WorkflowExecution(
                id=request.execution_id or str(uuid.uuid4()),
                workflow_id=request.workflow_id or f"node:{request.node_type}",
                input_data=request.input_data,
            )
            self.store.save(execution)
            request = request.model_copy(update={"execution_id": execution.id})
            self.queue.enqueue(
                EXECUTE_NODE,
                {
                    "workflowId": execution.workflow_id,
                    "executionId": execution.id,
                    "executionTime": execution.created_at.isoformat(),
                    "request": request.model_dump(mode="json", by_alias=True),
                },
                self._job_options(execution.id, DEFAULT_PRIORITY),
            )
            execution_ids.append(execution.id)

        logger.info(f"Queued batch of {len(execution_ids)} node executions")
        return execution_ids

    # ==== Queries ====

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        """
        Execution record by id.

        Raises:
            NotFoundError: Unknown execution
        """
        execution = self.store.get(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution not found: {execution_id}", {"execution_id": execution_id})
        return execution

    def get_execution_status(self, execution_id: str) -> dict[str, Any]:
        execution = self.get_execution(execution_id)
        return {
            "id": execution.id,
            "status": execution.status.value,
            "progress": execution.progress.model_dump(by_alias=True),
        }

    def get_execution_results(self, execution_id: str) -> list[dict[str, Any]]:
        """
        Output items of a finished execution.

        Raises:
            ConflictError: The execution has not finished yet
        """
        execution = self.get_execution(execution_id)
        if not execution.is_terminal:
            raise ConflictError(
                f"Execution {execution_id} is still {execution.status.value}",
                {"execution_id": execution_id, "status": execution.status.value},
            )
        return execution.output_data

    def list_active_executions(self) -> list[WorkflowExecution]:
        return self.store.list_active()

    # ==== Cancellation ====

    def cancel_execution(self, execution_id: str) -> WorkflowExecution:
        """
        Cancel an execution.

        A queued run is removed from the queue and never starts. A running
        one is cancelled cooperatively: in-flight nodes finish, nothing new
        starts.

        Raises:
            NotFoundError: Unknown execution
            ConflictError: The execution already finished
        """
        execution = self.get_execution(execution_id)
        if execution.is_terminal:
            raise ConflictError(
                f"Execution {execution_id} is already {execution.status.value}",
                {"execution_id": execution_id, "status": execution.status.value},
            )

        context = with_execution_context(
            execution_id=execution_id,
            workflow_id=execution.workflow_id,
            job_id=execution.queue_job_id,
        )
        if self.queue.remove(execution.queue_job_id):
            execution.finish(ExecutionStatus.CANCELLED, error=f"Execution {execution_id} cancelled")
            self.store.save(execution)
            self.broadcaster.notify_execution_completed(execution)
            logger.info("Queued execution cancelled", extra=context)
            return execution

        with self._lock:
            self._prune_cancel_requests()
            token = self._tokens.get(execution_id)
            if token is None:
                current = self.store.get(execution_id)
                if current is not None and current.is_terminal:
                    raise ConflictError(
                        f"Execution {execution_id} is already {current.status.value}",
                        {"execution_id": execution_id, "status": current.status.value},
                    )
                # Claimed but not started yet; the job handler checks this set
                self._cancel_requested.add(execution_id)
        if token is not None:
            token.cancel()
        logger.info("Cancellation requested", extra=context)
        return execution

    def _prune_cancel_requests(self) -> None:
        """Drop requests for executions that finished elsewhere. Caller holds the lock."""
        for execution_id in list(self._cancel_requested):
            execution = self.store.get(execution_id)
            if execution is None or execution.is_terminal:
                self._cancel_requested.discard(execution_id)

    # ==== Retry ====

    def retry_execution(self, execution_id: str) -> WorkflowExecution:
        """
        Queue a new run of a failed, timed out or cancelled execution.

        The new run gets the original input, mode ``retry`` and the
        original priority plus one.

        Raises:
            NotFoundError: Unknown execution, or its workflow is no longer saved
            ConflictError: The execution did not fail or ran out of retries
        """
        execution = self.get_execution(execution_id)
        if execution.status not in RETRYABLE_STATUSES:
            raise ConflictError(
                f"Execution {execution_id} is {execution.status.value} and cannot be retried",
                {"execution_id": execution_id, "status": execution.status.value},
            )
        max_retries = self.settings.execution_max_retries
        if execution.retry_count >= max_retries:
            raise ConflictError(
                f"Execution {execution_id} reached the maximum of {max_retries} retries",
                {"execution_id": execution_id, "retry_count": execution.retry_count},
            )

        retry = self.submit_workflow(
            execution.workflow_id,
            mode=ExecutionMode.RETRY,
            input_data=execution.input_data,
            priority=execution.priority + 1,
            original_execution_id=execution.id,
            retry_count=execution.retry_count + 1,
        )
        logger.info(
            "Execution retried",
            extra=with_execution_context(
                execution_id=retry.id,
                workflow_id=retry.workflow_id,
                original_execution_id=execution.id,
                retry_count=retry.retry_count,
            ),
        )
        return retry

    # ==== Running ====

    def _run(self, graph: WorkflowGraph, execution: WorkflowExecution) -> WorkflowResult:
        token = CancellationToken()
        with self._lock:
            self._tokens[execution.id] = token
            if execution.id in self._cancel_requested:
                self._cancel_requested.discard(execution.id)
                token.cancel()
        try:
            return self.executor.execute(graph, execution=execution, cancel_token=token)
        finally:
            with self._lock:
                self._tokens.pop(execution.id, None)
                self._cancel_requested.discard(execution.id)

    def _load_execution(self, job: QueueJob, mode: ExecutionMode) -> WorkflowExecution:
        execution_id = job.payload.get("executionId") or job.id
        execution = self.store.get(execution_id)
        if execution is None:
            execution = WorkflowExecution(
                id=execution_id,
                workflow_id=job.payload["workflowId"],
                mode=mode,
                input_data=job.payload.get("inputData") or [],
            )
            self.store.save(execution)
        return execution

    def _cancelled_before_start(self, execution: WorkflowExecution) -> bool:
        with self._lock:
            requested = execution.id in self._cancel_requested
            self._cancel_requested.discard(execution.id)
        if requested and not execution.is_terminal:
            execution.finish(ExecutionStatus.CANCELLED, error=f"Execution {execution.id} cancelled")
            self.store.save(execution)
            self.broadcaster.notify_execution_completed(execution)
        return execution.is_terminal

    def handle_execute_workflow(self, job: QueueJob) -> dict[str, Any]:
        """Job handler for ``execute-workflow``."""
        mode = ExecutionMode.SCHEDULED if job.payload.get("scheduleId") else ExecutionMode.MANUAL
        execution = self._load_execution(job, mode)
        if self._cancelled_before_start(execution):
            return {"executionId": execution.id, "status": execution.status.value}

        if job.payload.get("workflow"):
            graph = WorkflowGraph.model_validate(job.payload["workflow"])
        else:
            graph = self.workflows.require(execution.workflow_id)
        if mode == ExecutionMode.SCHEDULED and not execution.input_data:
            execution.input_data = [{
                "scheduleId": job.payload["scheduleId"],
                "timestamp": job.payload.get("executionTime"),
            }]

        result = self._run(graph, execution)
        return {"executionId": execution.id, "status": result.status.value}

    def handle_execute_node(self, job: QueueJob) -> dict[str, Any]:
        """Job handler for ``execute-node``."""
        request = ExecuteNodeRequest.model_validate(job.payload["request"])
        execution = self._load_execution(job, ExecutionMode.MANUAL)
        if self._cancelled_before_start(execution):
            return {"executionId": execution.id, "status": execution.status.value}

        result = self.execute_node(request)
        return {"executionId": execution.id, "status": result.status.value}

    def handle_permanent_failure(self, job: QueueJob, error: Exception) -> None:
        """Mark the execution of a job that ran out of attempts as failed."""
        execution_id = job.payload.get("executionId")
        execution = self.store.get(execution_id) if execution_id else None
        if execution is None or execution.is_terminal:
            return
        if execution.status == ExecutionStatus.PENDING:
            execution.start()
        execution.finish(
            ExecutionStatus.FAILED,
            error=job.failed_reason or str(error),
            now=datetime.now(timezone.utc),
        )
        self.store.save(execution)
        self.broadcaster.notify_execution_completed(execution)
        logger.error(
            "Execution failed after exhausting job attempts",
            extra=with_execution_context(execution_id=execution.id, job_id=job.id),
        )
