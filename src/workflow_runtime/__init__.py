"""
Workflow Runtime - Sync DAG execution for workflow graphs.

This package provides:
- WorkflowGraph: JSON structure describing a workflow
- CompiledGraph: Validated, executable workflow DAG
- WorkflowExecutor: Sync execution engine with bounded parallelism
- ExpressionEngine: Sandboxed {{ }} expression evaluation
- Data transformation helpers (filter, sort, merge, paginate, coerce)

All execution is synchronous (sync-Celery safe).
"""

from .models import (
    ExecutionStatus,
    GraphConnection,
    GraphNode,
    NodeExecutionResult,
    NodeStatus,
    WorkflowExecution,
    WorkflowGraph,
    parse_workflow,
)
from .graph import CompiledGraph, CompiledNode, validate_workflow
from .expressions import ExpressionEngine
from .executor import CancellationToken, ExecutionObserver, WorkflowExecutor, WorkflowResult
from .transform import (
    MergeStrategy,
    Page,
    apply_field_operations,
    coerce_value,
    filter_data,
    merge_input_data,
    paginate_data,
    sort_data,
    transform_data_types,
    validate_data,
)

__all__ = [
    # Models
    "WorkflowGraph",
    "GraphNode",
    "GraphConnection",
    "parse_workflow",
    "NodeStatus",
    "NodeExecutionResult",
    "ExecutionStatus",
    "WorkflowExecution",
    # Graph
    "CompiledGraph",
    "CompiledNode",
    "validate_workflow",
    # Expressions
    "ExpressionEngine",
    # Executor
    "WorkflowExecutor",
    "WorkflowResult",
    "ExecutionObserver",
    "CancellationToken",
    # Transform
    "MergeStrategy",
    "Page",
    "filter_data",
    "sort_data",
    "merge_input_data",
    "paginate_data",
    "coerce_value",
    "transform_data_types",
    "validate_data",
    "apply_field_operations",
]
