"""
Node SDK - The contract every node type implements.

This package provides:
- NodeItem: Data item flowing through workflows
- NodeParameter / ParameterKind: Closed parameter schema
- ExecutionContext / NodeParameters: Read-only context and per-item parameters
- BaseNode and its capability variants: Trigger, Transform, Branch, Merge

All nodes execute synchronously (sync-Celery safe).
"""

from .items import BinaryData, NodeItem, PairedItem, to_items
from .parameters import NodeParameter, ParameterKind, is_expression, validate_parameters
from .context import (
    ExecutionContext,
    ExecutionMeta,
    ExecutionMode,
    NodeParameters,
    WorkflowMeta,
)
from .basenode import (
    MAIN_SLOT,
    BaseNode,
    BranchNode,
    MergeNode,
    NodeApiError,
    NodeKind,
    NodeOperationError,
    TransformNode,
    TriggerNode,
)
from .http import HttpClient, HttpResponse

__all__ = [
    # Items
    "NodeItem",
    "BinaryData",
    "PairedItem",
    "to_items",
    # Parameters
    "NodeParameter",
    "ParameterKind",
    "is_expression",
    "validate_parameters",
    # Context
    "ExecutionContext",
    "ExecutionMeta",
    "ExecutionMode",
    "NodeParameters",
    "WorkflowMeta",
    # Base classes
    "MAIN_SLOT",
    "BaseNode",
    "NodeKind",
    "TriggerNode",
    "TransformNode",
    "BranchNode",
    "MergeNode",
    # Errors
    "NodeOperationError",
    "NodeApiError",
    # HTTP
    "HttpClient",
    "HttpResponse",
]
