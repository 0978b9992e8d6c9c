"""
Execution context handed to nodes.

ExecutionContext is immutable: the executor derives one per node and the
node derives one per item with ``for_item``. NodeParameters resolves
parameter values for a given item through the expression resolver the
executor injects.
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from flowforge.errors import NodeConfigurationError

from .items import NodeItem
from .parameters import NodeParameter, ParameterKind, check_parameter_value, is_expression


class ExecutionMode(str, Enum):
    """How an execution was started."""
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULED = "scheduled"
    RETRY = "retry"
    ERROR_WORKFLOW = "error_workflow"


@dataclass(frozen=True)
class WorkflowMeta:
    """Workflow identity exposed to expressions as $workflow."""
    id: str
    name: str = ""
    active: bool = False


@dataclass(frozen=True)
class ExecutionMeta:
    """Execution identity exposed to expressions as $execution."""
    id: str
    mode: ExecutionMode = ExecutionMode.MANUAL
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True, eq=False)
class ExecutionContext:
    """
    Read-only per-node (and per-item) view of an execution.

    Attributes:
        workflow: Workflow metadata
        execution: Execution metadata
        node_id: Current node id
        node_name: Current node name
        node_type: Current node type
        parameters: Static (unresolved) node parameters
        variables: Workflow variables ($vars)
        node_outputs: Main output items of already finished nodes, by name
        input_items: All items of the node's input
        item_index: Index of the current item
        run_index: How many times this node already ran in the execution
    """
    workflow: WorkflowMeta
    execution: ExecutionMeta
    node_id: str = ""
    node_name: str = ""
    node_type: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)
    variables: Mapping[str, Any] = field(default_factory=dict)
    node_outputs: Mapping[str, List[NodeItem]] = field(default_factory=dict)
    input_items: Tuple[NodeItem, ...] = ()
    item_index: int = 0
    run_index: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", _freeze(self.parameters))
        object.__setattr__(self, "variables", _freeze(self.variables))
        object.__setattr__(self, "node_outputs", _freeze(self.node_outputs))
        object.__setattr__(self, "input_items", tuple(self.input_items))

    @property
    def item(self) -> Optional[NodeItem]:
        """The current item, if the index is in range."""
        if 0 <= self.item_index < len(self.input_items):
            return self.input_items[self.item_index]
        return None

    def for_item(self, index: int) -> "ExecutionContext":
        """Derive the context for item ``index``."""
        return dataclasses.replace(self, item_index=index)

    def with_inputs(self, items: List[NodeItem]) -> "ExecutionContext":
        """Derive a context over a different set of input items."""
        return dataclasses.replace(self, input_items=tuple(items), item_index=0)


Resolver = Callable[[Any, ExecutionContext], Any]


def _as_text(value: Any) -> Any:
    # Expressions feeding string parameters render their result as text
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class NodeParameters:
    """
    Parameter accessor with per-item expression resolution.

    Usage:
        operation = parameters.get("operation")
        value = parameters.get("value", item_index=3)
    """

    def __init__(
        self,
        values: Mapping[str, Any],
        schema: Optional[List[NodeParameter]] = None,
        context: Optional[ExecutionContext] = None,
        resolver: Optional[Resolver] = None,
    ) -> None:
        self._values = dict(values)
        self._schema = {p.name: p for p in (schema or [])}
        self._context = context
        self._resolver = resolver

    def raw(self, name: str, default: Any = None) -> Any:
        """Unresolved parameter value, falling back to the schema default."""
        if name in self._values:
            return self._values[name]
        declared = self._schema.get(name)
        if declared is not None and declared.default is not None:
            return declared.default
        return default

    def get(self, name: str, item_index: int = 0, default: Any = None) -> Any:
        """
        Resolved parameter value for one item.

        Raises:
            NodeConfigurationError: If the resolved value has the wrong kind
            ExpressionError: If an expression cannot be evaluated
        """
        raw = self.raw(name, default)
        value = raw
        if self._resolver is not None and self._context is not None:
            value = self._resolver(raw, self._context.for_item(item_index))

        declared = self._schema.get(name)
        if declared is not None and declared.kind == ParameterKind.STRING and is_expression(raw):
            value = _as_text(value)
        if declared is not None:
            error = check_parameter_value(declared, value)
            if error:
                raise NodeConfigurationError(
                    self._context.node_type if self._context else "",
                    [error],
                    node_id=self._context.node_id if self._context else None,
                )
        return value

    def names(self) -> List[str]:
        """Names of explicitly set parameters."""
        return list(self._values.keys())

    def as_dict(self) -> Dict[str, Any]:
        """Unresolved parameters merged over schema defaults."""
        merged = {
            name: p.default for name, p in self._schema.items() if p.default is not None
        }
        merged.update(self._values)
        return merged


__all__ = [
    "ExecutionMode",
    "WorkflowMeta",
    "ExecutionMeta",
    "ExecutionContext",
    "NodeParameters",
    "Resolver",
]
