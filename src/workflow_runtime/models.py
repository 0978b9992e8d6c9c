"""
Workflow Models - Graph definitions and execution records.

A WorkflowGraph lists nodes and explicit slot-to-slot connections:

    {
        "id": "wf-1",
        "nodes": [
            {"id": "start", "type": "flowforge.manualTrigger"},
            {"id": "check", "type": "flowforge.if", "parameters": {...}},
        ],
        "connections": [
            {"sourceNodeId": "start", "targetNodeId": "check"},
            {"sourceNodeId": "check", "sourceOutputKey": "true",
             "targetNodeId": "notify", "targetInputKey": "main"},
        ],
    }
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from flowforge.errors import ConflictError

from node_sdk.context import ExecutionMode
from node_sdk.items import NodeItem


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==============================================================================
# Graph
# ==============================================================================

class GraphNode(BaseModel):
    """A node in a workflow graph."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., description="Node id (unique within workflow)")
    name: str = Field("", description="Display name, defaults to the id")
    type: str = Field(..., description="Node type (e.g., 'flowforge.set')")
    type_version: int = Field(1, alias="typeVersion")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    disabled: bool = Field(False, description="If true, node is skipped")
    continue_on_fail: bool = Field(False, alias="continueOnFail")
    timeout_seconds: Optional[float] = Field(None, alias="timeoutSeconds", gt=0)

    @model_validator(mode="after")
    def _default_name(self) -> "GraphNode":
        if not self.name:
            self.name = self.id
        return self


class GraphConnection(BaseModel):
    """Edge from a node's output slot to another node's input slot."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    source_node_id: str = Field(..., alias="sourceNodeId")
    source_output_key: str = Field("main", alias="sourceOutputKey")
    target_node_id: str = Field(..., alias="targetNodeId")
    target_input_key: str = Field("main", alias="targetInputKey")
    conditions: List[str] = Field(
        default_factory=list,
        description="Expressions every routed item must satisfy",
    )


class WorkflowGraph(BaseModel):
    """Complete workflow definition."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., description="Workflow ID")
    name: str = Field("Unnamed Workflow")
    active: bool = Field(False)
    nodes: List[GraphNode] = Field(default_factory=list)
    connections: List[GraphConnection] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict, alias="vars")

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming(self, node_id: str) -> List[GraphConnection]:
        """Connections into ``node_id`` in declared order."""
        return [c for c in self.connections if c.target_node_id == node_id]

    def outgoing(self, node_id: str) -> List[GraphConnection]:
        """Connections out of ``node_id`` in declared order."""
        return [c for c in self.connections if c.source_node_id == node_id]


def parse_workflow(data: Dict[str, Any]) -> WorkflowGraph:
    """Parse workflow JSON into WorkflowGraph."""
    return WorkflowGraph.model_validate(data)


# ==============================================================================
# Execution records
# ==============================================================================

class NodeStatus(str, Enum):
    """Status of a node during execution."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class NodeExecutionResult:
    """Result of running a single node."""
    node_id: str
    node_name: str
    status: NodeStatus
    output_data: Dict[str, List[NodeItem]] = field(default_factory=dict)
    error: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.status == NodeStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status == NodeStatus.ERROR

    def items(self, slot: str) -> List[NodeItem]:
        return self.output_data.get(slot, [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "status": self.status.value,
            "outputData": {
                slot: [item.to_dict() for item in items]
                for slot, items in self.output_data.items()
            },
            "error": self.error,
            "startTime": self.start_time.isoformat() if self.start_time else None,
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "metrics": dict(self.metrics),
        }


class ExecutionStatus(str, Enum):
    """Overall workflow execution status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMEOUT,
})


class ExecutionProgress(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    completed_nodes: int = 0
    total_nodes: int = 0
    current_node: Optional[str] = None


class WorkflowExecution(BaseModel):
    """
    One run of a workflow.

    Transitions pending -> running -> terminal (a pending execution may
    also be cancelled directly). Terminal records are immutable.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    mode: ExecutionMode = ExecutionMode.MANUAL
    input_data: List[Dict[str, Any]] = Field(default_factory=list)
    output_data: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
    error_node_id: Optional[str] = None
    node_results: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    progress: ExecutionProgress = Field(default_factory=ExecutionProgress)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    # Queue job running this execution, when it differs from the id
    job_id: Optional[str] = None
    priority: int = 0
    original_execution_id: Optional[str] = None
    retry_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def queue_job_id(self) -> str:
        return self.job_id or self.id

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise ConflictError(
                f"Execution {self.id} is already {self.status.value}",
                {"execution_id": self.id, "status": self.status.value},
            )

    def start(self, now: Optional[datetime] = None) -> None:
        """pending -> running."""
        self._ensure_mutable()
        if self.status != ExecutionStatus.PENDING:
            raise ConflictError(f"Execution {self.id} cannot start from {self.status.value}")
        self.status = ExecutionStatus.RUNNING
        self.started_at = now or utcnow()

    def update_progress(self, completed_nodes: int, total_nodes: int, current_node: Optional[str]) -> None:
        self._ensure_mutable()
        self.progress = ExecutionProgress(
            completed_nodes=completed_nodes,
            total_nodes=total_nodes,
            current_node=current_node,
        )

    def finish(
        self,
        status: ExecutionStatus,
        output_data: Optional[List[Dict[str, Any]]] = None,
        error: Optional[str] = None,
        error_node_id: Optional[str] = None,
        node_results: Optional[Dict[str, Dict[str, Any]]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Move to a terminal status."""
        self._ensure_mutable()
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        if self.status == ExecutionStatus.PENDING and status != ExecutionStatus.CANCELLED:
            raise ConflictError(f"Execution {self.id} never started")

        self.status = status
        self.finished_at = now or utcnow()
        if output_data is not None:
            self.output_data = output_data
        if node_results is not None:
            self.node_results = node_results
        self.error = error
        self.error_node_id = error_node_id
        if self.started_at is not None:
            self.duration_ms = (self.finished_at - self.started_at).total_seconds() * 1000


__all__ = [
    "GraphNode",
    "GraphConnection",
    "WorkflowGraph",
    "parse_workflow",
    "NodeStatus",
    "NodeExecutionResult",
    "ExecutionStatus",
    "TERMINAL_STATUSES",
    "ExecutionProgress",
    "WorkflowExecution",
    "utcnow",
]
