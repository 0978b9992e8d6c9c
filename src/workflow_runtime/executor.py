"""
Workflow Executor - DAG execution engine.

Walks a compiled graph with a ready set: a node runs once every incoming
connection has resolved and each connected input slot holds at least one
item. Independent ready nodes run concurrently on a thread pool while a
single coordinator thread owns the run state, routes outputs and decides
what becomes ready next.

Error handling:
- continue_on_fail: the node's result is recorded with status=error, an
  item {"error": message} is routed on its first output, and the run goes on
- otherwise: nothing new is scheduled, no downstream node gets a result and
  the execution ends as failed with the originating node id

SYNC-CELERY SAFE: execute() blocks until the execution is terminal.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from flowforge.errors import (
    FlowForgeError,
    NodeConfigurationError,
    NodeExecutionError,
    NodeTimeoutError,
    WorkflowExecutionFailed,
)

from node_registry.registry import NodeRegistry
from node_sdk.basenode import NodeKind, NodeOutputs
from node_sdk.context import (
    ExecutionContext,
    ExecutionMeta,
    ExecutionMode,
    NodeParameters,
    WorkflowMeta,
)
from node_sdk.items import NodeItem, to_items

from .expressions import ExpressionEngine
from .graph import CompiledGraph, CompiledNode
from .models import (
    ExecutionStatus,
    NodeExecutionResult,
    NodeStatus,
    WorkflowExecution,
    WorkflowGraph,
    utcnow,
)
from .transform import filter_data


logger = logging.getLogger(__name__)


class CancellationToken:
    """Advisory cancellation flag shared with a running execution."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ExecutionObserver:
    """Receives lifecycle callbacks from the executor (no-op by default)."""

    def execution_started(self, execution: WorkflowExecution) -> None:
        pass

    def execution_progress(self, execution: WorkflowExecution) -> None:
        pass

    def node_started(self, execution: WorkflowExecution, node_id: str, node_name: str, start_time: datetime) -> None:
        pass

    def node_finished(self, execution: WorkflowExecution, result: NodeExecutionResult) -> None:
        pass

    def execution_finished(self, execution: WorkflowExecution) -> None:
        pass


@dataclass
class WorkflowResult:
    """Outcome of a workflow execution."""
    execution: WorkflowExecution
    node_results: Dict[str, NodeExecutionResult] = field(default_factory=dict)
    output_items: List[NodeItem] = field(default_factory=list)

    @property
    def status(self) -> ExecutionStatus:
        return self.execution.status

    @property
    def is_success(self) -> bool:
        return self.execution.status == ExecutionStatus.COMPLETED

    def raise_for_status(self) -> None:
        """Raise WorkflowExecutionFailed unless the execution completed."""
        if self.execution.status != ExecutionStatus.COMPLETED:
            raise WorkflowExecutionFailed(
                self.execution.error or f"Execution {self.execution.status.value}",
                execution_id=self.execution.id,
                node_id=self.execution.error_node_id,
            )


@dataclass
class _NodeOutcome:
    outputs: NodeOutputs
    edge_items: Dict[int, List[NodeItem]]
    input_count: int
    start_time: datetime
    end_time: datetime
    duration_ms: float


class _RunState:
    """
    Per-execution mutable state.

    Only the coordinator mutates it; the lock guards snapshots taken for
    status reads from other threads.
    """

    def __init__(self, graph: CompiledGraph):
        self.lock = threading.Lock()
        self.graph = graph
        self.status: Dict[str, NodeStatus] = {n: NodeStatus.PENDING for n in graph.node_ids}
        self.edge_items: Dict[int, Optional[List[NodeItem]]] = {
            i: None for i in range(len(graph.connections))
        }
        self.results: Dict[str, NodeExecutionResult] = {}
        self.node_outputs: Dict[str, List[NodeItem]] = {}
        self.completed = 0

    def resolve_edge(self, index: int, items: List[NodeItem]) -> None:
        with self.lock:
            self.edge_items[index] = items

    def set_status(self, node_id: str, status: NodeStatus) -> None:
        with self.lock:
            self.status[node_id] = status
            if status in (NodeStatus.SUCCESS, NodeStatus.ERROR, NodeStatus.SKIPPED):
                self.completed += 1

    def record(self, result: NodeExecutionResult, main_slot: Optional[str]) -> None:
        with self.lock:
            self.results[result.node_id] = result
            if main_slot is not None:
                self.node_outputs[result.node_name] = list(result.items(main_slot))

    def snapshot_outputs(self) -> Dict[str, List[NodeItem]]:
        with self.lock:
            return dict(self.node_outputs)


class WorkflowExecutor:
    """
    Executes workflow graphs.

    Usage:
        executor = WorkflowExecutor(registry, max_workers=4, execution_timeout=300)
        result = executor.execute(graph, input_data=[{"id": 1}])
    """

    def __init__(
        self,
        registry: NodeRegistry,
        engine: Optional[ExpressionEngine] = None,
        max_workers: int = 4,
        execution_timeout: Optional[float] = None,
        node_timeout: Optional[float] = None,
        observer: Optional[ExecutionObserver] = None,
    ):
        """
        Initialize executor.

        Args:
            registry: Frozen node registry
            engine: Expression engine for parameter resolution
            max_workers: Nodes allowed to run concurrently per execution
            execution_timeout: Default per-execution timeout in seconds
            node_timeout: Default per-node timeout in seconds
            observer: Lifecycle callbacks (e.g. the status broadcaster)
        """
        self._registry = registry
        self._engine = engine or ExpressionEngine()
        self._max_workers = max_workers
        self._execution_timeout = execution_timeout
        self._node_timeout = node_timeout
        self._observer = observer or ExecutionObserver()

    def compile(self, graph: WorkflowGraph) -> CompiledGraph:
        """
        Validate a graph.

        Raises:
            GraphValidationError / GraphCycleError
        """
        return CompiledGraph(graph, self._registry)

    def execute(
        self,
        graph: WorkflowGraph,
        execution: Optional[WorkflowExecution] = None,
        input_data: Optional[List[Dict[str, Any]]] = None,
        mode: ExecutionMode = ExecutionMode.MANUAL,
        cancel_token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> WorkflowResult:
        """
        Execute a workflow.

        Args:
            graph: Workflow graph
            execution: Pending execution record (created when omitted)
            input_data: Trigger payload items
            mode: Trigger mode used for a new execution record
            cancel_token: Advisory cancellation
            timeout: Per-execution timeout overriding the default

        Returns:
            WorkflowResult with the terminal execution record

        Raises:
            GraphValidationError: If the graph is invalid (before anything runs)
        """
        compiled = self.compile(graph)

        if execution is None:
            execution = WorkflowExecution(
                id=str(uuid.uuid4()),
                workflow_id=graph.id,
                mode=mode,
                input_data=list(input_data or []),
            )
        if input_data is None:
            input_data = execution.input_data

        run = _Run(
            executor=self,
            compiled=compiled,
            execution=execution,
            trigger_items=to_items(input_data),
            cancel_token=cancel_token or CancellationToken(),
            timeout=timeout if timeout is not None else self._execution_timeout,
        )
        return run.execute()


class _Run:
    """One execution of a compiled graph."""

    def __init__(
        self,
        executor: WorkflowExecutor,
        compiled: CompiledGraph,
        execution: WorkflowExecution,
        trigger_items: List[NodeItem],
        cancel_token: CancellationToken,
        timeout: Optional[float],
    ):
        self.executor = executor
        self.registry = executor._registry
        self.engine = executor._engine
        self.observer = executor._observer
        self.compiled = compiled
        self.execution = execution
        self.trigger_items = trigger_items
        self.cancel_token = cancel_token
        self.timeout = timeout
        self.state = _RunState(compiled)

        self.workflow_meta = WorkflowMeta(
            id=compiled.graph.id,
            name=compiled.graph.name,
            active=compiled.graph.active,
        )
        self.execution_meta = ExecutionMeta(id=execution.id, mode=execution.mode)

        self._pending_start: Dict[str, datetime] = {}
        self.failure: Optional[NodeExecutionError] = None
        self.final_status: Optional[ExecutionStatus] = None

    # ==== Coordinator ====

    def execute(self) -> WorkflowResult:
        self.execution.start()
        started = time.monotonic()
        deadline = started + self.timeout if self.timeout else None
        self._progress(None)
        self.observer.execution_started(self.execution)
        logger.info(
            f"Execution {self.execution.id} started "
            f"(workflow={self.compiled.workflow_id}, nodes={len(self.compiled)})"
        )

        pool = ThreadPoolExecutor(
            max_workers=self.executor._max_workers,
            thread_name_prefix=f"exec-{self.execution.id[:8]}",
        )
        in_flight: Dict[Future, Tuple[str, Optional[float]]] = {}
        ready: List[Tuple[str, Dict[str, List[NodeItem]]]] = []

        try:
            for node_id in self.compiled.get_start_nodes():
                self._activate_start_node(node_id, ready)

            while True:
                if self.cancel_token.cancelled and self.final_status is None:
                    logger.info(f"Execution {self.execution.id} cancellation requested")
                    self.final_status = ExecutionStatus.CANCELLED

                if self.final_status is None:
                    for node_id, inputs in ready:
                        future, node_deadline = self._submit(pool, node_id, inputs)
                        in_flight[future] = (node_id, node_deadline)
                ready = []

                if not in_flight:
                    break

                now = time.monotonic()
                if deadline is not None and now >= deadline:
                    self.final_status = ExecutionStatus.TIMEOUT
                    for future in in_flight:
                        future.cancel()
                    break

                wait_for = _earliest(
                    [deadline] + [d for _, d in in_flight.values()],
                    now,
                )
                done, _ = wait(list(in_flight), timeout=wait_for, return_when=FIRST_COMPLETED)

                for future in done:
                    node_id, _ = in_flight.pop(future)
                    self._handle_done(node_id, future, ready)

                now = time.monotonic()
                for future, (node_id, node_deadline) in list(in_flight.items()):
                    if node_deadline is not None and now >= node_deadline:
                        # The worker thread keeps running until transform returns;
                        # its teardown still runs in that thread.
                        in_flight.pop(future)
                        future.cancel()
                        node = self.compiled.get_node(node_id)
                        self._node_failed(
                            node,
                            NodeTimeoutError(
                                f"Node {node.name} timed out",
                                node_id=node.id,
                                node_name=node.name,
                            ),
                            self._pending_start.pop(node_id, utcnow()),
                            ready,
                        )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        return self._finalize(started)

    def _activate_start_node(self, node_id: str, ready: List) -> None:
        node = self.compiled.get_node(node_id)
        if node.node.disabled:
            self._skip(node_id, ready)
            return
        inputs: Dict[str, List[NodeItem]] = {}
        if not node.is_trigger and node.descriptor.inputs:
            inputs[node.descriptor.inputs[0]] = list(self.trigger_items)
        ready.append((node_id, inputs))

    def _submit(self, pool: ThreadPoolExecutor, node_id: str, inputs: Dict[str, List[NodeItem]]):
        node = self.compiled.get_node(node_id)
        start_time = utcnow()
        self._pending_start[node_id] = start_time
        self.state.set_status(node_id, NodeStatus.RUNNING)
        self._progress(node.name)
        self.observer.node_started(self.execution, node.id, node.name, start_time)
        logger.debug(f"Executing node: {node.name} ({node.node.type})")

        context = ExecutionContext(
            workflow=self.workflow_meta,
            execution=self.execution_meta,
            node_id=node.id,
            node_name=node.name,
            node_type=node.node.type,
            parameters=node.node.parameters,
            variables=self.compiled.graph.variables,
            node_outputs=self.state.snapshot_outputs(),
            input_items=self._context_items(node, inputs),
        )
        future = pool.submit(self._run_node, node, inputs, context, start_time)

        node_timeout = node.node.timeout_seconds or self.executor._node_timeout
        node_deadline = time.monotonic() + node_timeout if node_timeout else None
        return future, node_deadline

    def _context_items(self, node: CompiledNode, inputs: Dict[str, List[NodeItem]]) -> List[NodeItem]:
        if node.is_trigger:
            return list(self.trigger_items)
        for slot in node.descriptor.inputs:
            if inputs.get(slot):
                return list(inputs[slot])
        return []

    def _handle_done(self, node_id: str, future: Future, ready: List) -> None:
        node = self.compiled.get_node(node_id)
        start_time = self._pending_start.pop(node_id, utcnow())
        try:
            outcome: _NodeOutcome = future.result()
        except Exception as e:
            if self.final_status is not None:
                logger.info(f"Node {node.name} failed after the execution stopped: {e}")
                return
            self._node_failed(node, _as_node_error(node, e), start_time, ready)
            return

        result = NodeExecutionResult(
            node_id=node.id,
            node_name=node.name,
            status=NodeStatus.SUCCESS,
            output_data=outcome.outputs,
            start_time=outcome.start_time,
            end_time=outcome.end_time,
            metrics={
                "durationMs": outcome.duration_ms,
                "inputItems": outcome.input_count,
                "outputItems": sum(len(items) for items in outcome.outputs.values()),
            },
        )
        self._complete(node, result, outcome.edge_items, ready)

    def _node_failed(
        self,
        node: CompiledNode,
        error: NodeExecutionError,
        start_time: datetime,
        ready: List,
    ) -> None:
        end_time = utcnow()
        metrics = {"durationMs": (end_time - start_time).total_seconds() * 1000}

        if node.node.continue_on_fail:
            logger.warning(f"Node {node.name} failed, continuing: {error.message}")
            slot = node.descriptor.outputs[0] if node.descriptor.outputs else None
            outputs: NodeOutputs = {s: [] for s in node.descriptor.outputs}
            if slot is not None:
                outputs[slot] = [NodeItem(json_data={"error": error.message})]
            result = NodeExecutionResult(
                node_id=node.id,
                node_name=node.name,
                status=NodeStatus.ERROR,
                output_data=outputs,
                error=error.message,
                start_time=start_time,
                end_time=end_time,
                metrics=metrics,
            )
            edge_items = {
                i: list(outputs.get(self.compiled.connections[i].source_output_key, []))
                for i in node.outgoing
            }
            self._complete(node, result, edge_items, ready)
            return

        logger.error(f"Node {node.name} failed: {error.message}")
        result = NodeExecutionResult(
            node_id=node.id,
            node_name=node.name,
            status=NodeStatus.ERROR,
            error=error.message,
            start_time=start_time,
            end_time=end_time,
            metrics=metrics,
        )
        self.state.set_status(node.id, NodeStatus.ERROR)
        self.state.record(result, None)
        self.observer.node_finished(self.execution, result)
        if self.failure is None:
            self.failure = error
        self.final_status = ExecutionStatus.FAILED

    def _complete(
        self,
        node: CompiledNode,
        result: NodeExecutionResult,
        edge_items: Dict[int, List[NodeItem]],
        ready: List,
    ) -> None:
        main_slot = node.descriptor.outputs[0] if node.descriptor.outputs else None
        self.state.set_status(node.id, result.status)
        self.state.record(result, main_slot)
        self.observer.node_finished(self.execution, result)

        if self.final_status is not None:
            # Stopped (failure, cancellation): finished nodes are recorded but not routed
            self._progress(None)
            return

        for index in node.outgoing:
            self.state.resolve_edge(index, edge_items.get(index, []))
        self._progress(None)
        self._evaluate_targets(node.outgoing, ready)

    def _skip(self, node_id: str, ready: List) -> None:
        node = self.compiled.get_node(node_id)
        self.state.set_status(node_id, NodeStatus.SKIPPED)
        result = NodeExecutionResult(node_id=node.id, node_name=node.name, status=NodeStatus.SKIPPED)
        self.state.record(result, None)
        logger.debug(f"Node {node.name} skipped")
        for index in node.outgoing:
            self.state.resolve_edge(index, [])
        self._evaluate_targets(node.outgoing, ready)

    def _evaluate_targets(self, edge_indexes: List[int], ready: List) -> None:
        """Make targets of freshly resolved edges ready, or skip them."""
        seen = set()
        for index in edge_indexes:
            target_id = self.compiled.connections[index].target_node_id
            if target_id in seen:
                continue
            seen.add(target_id)
            if self.state.status[target_id] != NodeStatus.PENDING:
                continue
            if any(item is None for item in (self.state.edge_items[i] for i in self.compiled.get_node(target_id).incoming)):
                continue

            target = self.compiled.get_node(target_id)
            inputs = self._collect_inputs(target)
            if target.node.disabled or not self._has_required_items(target, inputs):
                self._skip(target_id, ready)
            else:
                ready.append((target_id, inputs))

    def _has_required_items(self, node: CompiledNode, inputs: Dict[str, List[NodeItem]]) -> bool:
        """
        Merge nodes need items on at least one connected input (empty
        branches are dropped); every other node on all of them.
        """
        slots = self.compiled.connected_slots(node.id)
        if node.descriptor.kind == NodeKind.MERGE:
            return any(inputs[slot] for slot in slots)
        return all(inputs[slot] for slot in slots)

    def _collect_inputs(self, node: CompiledNode) -> Dict[str, List[NodeItem]]:
        """Items per connected slot, concatenated in declared connection order."""
        inputs: Dict[str, List[NodeItem]] = {slot: [] for slot in self.compiled.connected_slots(node.id)}
        for index in node.incoming:
            conn = self.compiled.connections[index]
            inputs[conn.target_input_key].extend(self.state.edge_items[index] or [])
        return inputs

    # ==== Worker ====

    def _run_node(
        self,
        node: CompiledNode,
        inputs: Dict[str, List[NodeItem]],
        context: ExecutionContext,
        start_time: datetime,
    ) -> _NodeOutcome:
        """Runs in a pool thread."""
        errors = self.registry.validate_configuration(node.node.type, node.node.parameters)
        if errors:
            raise NodeConfigurationError(node.node.type, errors, node_id=node.id)

        instance = self.registry.create_node(node.node.type)
        parameters = NodeParameters(
            node.node.parameters,
            schema=node.descriptor.parameters,
            context=context,
            resolver=self.engine.resolve,
        )
        started = time.perf_counter()
        try:
            instance.setup(context)
            raw_outputs = instance.transform(inputs, parameters, context) or {}
        finally:
            instance.teardown()

        unknown = set(raw_outputs) - set(node.descriptor.outputs)
        if unknown:
            raise NodeExecutionError(
                f"Node {node.name} produced undeclared outputs: {sorted(unknown)}",
                node_id=node.id,
                node_name=node.name,
            )
        outputs: NodeOutputs = {
            slot: [NodeItem.from_value(i) for i in raw_outputs.get(slot, [])]
            for slot in node.descriptor.outputs
        }

        edge_items: Dict[int, List[NodeItem]] = {}
        for index in node.outgoing:
            conn = self.compiled.connections[index]
            items = outputs.get(conn.source_output_key, [])
            if conn.conditions and items:
                for condition in conn.conditions:
                    items = filter_data(items, condition, context, self.engine)
            edge_items[index] = items

        return _NodeOutcome(
            outputs=outputs,
            edge_items=edge_items,
            input_count=sum(len(items) for items in inputs.values()) or len(context.input_items),
            start_time=start_time,
            end_time=utcnow(),
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    # ==== Finalization ====

    def _progress(self, current_node: Optional[str]) -> None:
        if self.execution.is_terminal:
            return
        self.execution.update_progress(self.state.completed, len(self.compiled), current_node)
        self.observer.execution_progress(self.execution)

    def _finalize(self, started: float) -> WorkflowResult:
        status = self.final_status or ExecutionStatus.COMPLETED
        error: Optional[str] = None
        error_node_id: Optional[str] = None

        if status == ExecutionStatus.FAILED and self.failure is not None:
            error = self.failure.message
            error_node_id = self.failure.node_id
        elif status == ExecutionStatus.TIMEOUT:
            error = f"Execution timed out after {self.timeout}s"
        elif status == ExecutionStatus.CANCELLED:
            error = f"Execution {self.execution.id} cancelled"

        output_items = self._collect_output() if status == ExecutionStatus.COMPLETED else []
        with self.state.lock:
            results = dict(self.state.results)

        self.execution.finish(
            status,
            output_data=[item.to_dict() for item in output_items],
            error=error,
            error_node_id=error_node_id,
            node_results={node_id: r.to_dict() for node_id, r in results.items()},
        )
        self.observer.execution_finished(self.execution)
        logger.info(
            f"Execution {self.execution.id} finished: {status.value} "
            f"in {(time.monotonic() - started) * 1000:.0f}ms"
        )
        return WorkflowResult(
            execution=self.execution,
            node_results=results,
            output_items=output_items,
        )

    def _collect_output(self) -> List[NodeItem]:
        """Items of terminal nodes, in node declaration order."""
        output: List[NodeItem] = []
        for node_id in self.compiled.get_terminal_nodes():
            result = self.state.results.get(node_id)
            if result is None or result.status == NodeStatus.SKIPPED:
                continue
            node = self.compiled.get_node(node_id)
            for slot in node.descriptor.outputs:
                output.extend(result.items(slot))
        return output


def _as_node_error(node: CompiledNode, error: Exception) -> NodeExecutionError:
    if isinstance(error, NodeExecutionError):
        if error.node_id is None:
            error.node_id = node.id
            error.node_name = node.name
            error.details.update({"node_id": node.id, "node_name": node.name})
        return error
    message = error.message if isinstance(error, FlowForgeError) else str(error)
    wrapped = NodeExecutionError(message or type(error).__name__, node_id=node.id, node_name=node.name)
    wrapped.__cause__ = error
    return wrapped


def _earliest(deadlines: List[Optional[float]], now: float) -> Optional[float]:
    pending = [d - now for d in deadlines if d is not None]
    if not pending:
        return None
    return max(min(pending), 0)


__all__ = [
    "WorkflowExecutor",
    "WorkflowResult",
    "ExecutionObserver",
    "CancellationToken",
]
