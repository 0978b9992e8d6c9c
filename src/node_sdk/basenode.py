"""
BaseNode - Abstract base class for Python node implementations.

All nodes inherit from one of the capability variants below and implement
``transform``, which maps the node's named input slots to its named
output slots:

    transform(inputs, parameters, context) -> {output_slot: [items]}

Capability variants:
- TriggerNode: no inputs, one output, ignores input items
- TransformNode: one input, one output
- BranchNode: one input, N named outputs, partitions items
- MergeNode: N named inputs, one output

SYNC-CELERY SAFE: transform() is synchronous. The executor runs it in a
worker thread bounded by the node and execution timeouts.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

from flowforge.errors import NodeExecutionError

from .context import ExecutionContext, NodeParameters
from .items import NodeItem
from .parameters import NodeParameter


logger = logging.getLogger(__name__)

MAIN_SLOT = "main"

NodeInputs = Dict[str, List[NodeItem]]
NodeOutputs = Dict[str, List[NodeItem]]


class NodeKind(str, Enum):
    """Capability variant of a node type."""
    TRIGGER = "trigger"
    TRANSFORM = "transform"
    BRANCH = "branch"
    MERGE = "merge"


class BaseNode(ABC):
    """
    Abstract base class for all node implementations.

    Nodes define:
    - type: Unique identifier (e.g., "flowforge.set")
    - version: Node version number
    - kind: Capability variant
    - description: Node metadata dict (displayName, group, inputs, outputs)
    - properties: Parameter schema

    Example:

        class UppercaseNode(TransformNode):
            type = "acme.uppercase"

            description = {
                "displayName": "Uppercase",
                "name": "uppercase",
                "group": ["transform"],
                "inputs": ["main"],
                "outputs": ["main"],
            }

            properties = {
                "parameters": [
                    {"displayName": "Field", "name": "field",
                     "type": "string", "required": True},
                ],
            }

            def process(self, items, parameters, context):
                results = []
                for i, item in enumerate(items):
                    field = parameters.get("field", i)
                    data = {**item.json, field: str(item.json.get(field, "")).upper()}
                    results.append(item.with_json(data, paired_index=i))
                return results
    """

    type: str = "base"
    version: int = 1
    kind: NodeKind = NodeKind.TRANSFORM

    description: Dict[str, Any] = {
        "displayName": "Base Node",
        "name": "base",
        "description": "",
        "group": [],
        "inputs": [MAIN_SLOT],
        "outputs": [MAIN_SLOT],
    }

    properties: Dict[str, Any] = {
        "parameters": [],
    }

    def __init__(self) -> None:
        """Initialize node instance."""
        self.logger = logging.getLogger(f"node.{self.type}")

    @classmethod
    def input_slots(cls) -> List[str]:
        """Declared input slot names."""
        return list(cls.description.get("inputs", [MAIN_SLOT]))

    @classmethod
    def output_slots(cls) -> List[str]:
        """Declared output slot names."""
        return list(cls.description.get("outputs", [MAIN_SLOT]))

    @classmethod
    def parameter_schema(cls) -> List[NodeParameter]:
        """Parameter declarations parsed into NodeParameter models."""
        return [
            p if isinstance(p, NodeParameter) else NodeParameter.model_validate(p)
            for p in cls.properties.get("parameters", [])
        ]

    def setup(self, context: ExecutionContext) -> None:
        """Acquire resources before transform (override when needed)."""

    def teardown(self) -> None:
        """Release resources; called on every exit path."""

    @abstractmethod
    def transform(
        self,
        inputs: NodeInputs,
        parameters: NodeParameters,
        context: ExecutionContext,
    ) -> NodeOutputs:
        """
        Execute node operation.

        Args:
            inputs: Items per input slot, in declared connection order
            parameters: Parameter accessor resolving expressions per item
            context: Node-level execution context

        Returns:
            Items per output slot. Missing slots are treated as empty.

        Raises:
            NodeExecutionError: On operation failure
        """
        raise NotImplementedError

    def error(self, message: str, context: ExecutionContext, item_index: Optional[int] = None) -> NodeOperationError:
        """Build a NodeOperationError tagged with this node."""
        return NodeOperationError(
            message,
            node_id=context.node_id,
            node_name=context.node_name,
            item_index=item_index,
        )

    @classmethod
    def get_definition(cls) -> Dict[str, Any]:
        """Get full node definition for registration."""
        return {
            "type": cls.type,
            "version": cls.version,
            "kind": cls.kind.value,
            "description": cls.description,
            "properties": cls.properties,
        }


class TriggerNode(BaseNode):
    """Entry point of a workflow; emits the trigger payload."""

    kind = NodeKind.TRIGGER

    def transform(
        self,
        inputs: NodeInputs,
        parameters: NodeParameters,
        context: ExecutionContext,
    ) -> NodeOutputs:
        return {self.output_slots()[0]: self.emit(parameters, context)}

    @abstractmethod
    def emit(self, parameters: NodeParameters, context: ExecutionContext) -> List[NodeItem]:
        """Items that start the execution (context.input_items holds the payload)."""
        raise NotImplementedError


class TransformNode(BaseNode):
    """Single input, single output."""

    kind = NodeKind.TRANSFORM

    def transform(
        self,
        inputs: NodeInputs,
        parameters: NodeParameters,
        context: ExecutionContext,
    ) -> NodeOutputs:
        items = inputs.get(self.input_slots()[0], [])
        return {self.output_slots()[0]: self.process(items, parameters, context)}

    @abstractmethod
    def process(
        self,
        items: List[NodeItem],
        parameters: NodeParameters,
        context: ExecutionContext,
    ) -> List[NodeItem]:
        raise NotImplementedError


class BranchNode(BaseNode):
    """Single input, items partitioned across named outputs."""

    kind = NodeKind.BRANCH

    def transform(
        self,
        inputs: NodeInputs,
        parameters: NodeParameters,
        context: ExecutionContext,
    ) -> NodeOutputs:
        items = inputs.get(self.input_slots()[0], [])
        outputs: NodeOutputs = {slot: [] for slot in self.output_slots()}
        for index, item in enumerate(items):
            slot = self.route(item, index, parameters, context)
            if slot is None:
                continue
            if slot not in outputs:
                raise self.error(f"Unknown output '{slot}'", context, index)
            outputs[slot].append(item.with_json(item.json_data, paired_index=index))
        return outputs

    @abstractmethod
    def route(
        self,
        item: NodeItem,
        index: int,
        parameters: NodeParameters,
        context: ExecutionContext,
    ) -> Optional[str]:
        """Output slot for one item, or None to drop it."""
        raise NotImplementedError


class MergeNode(BaseNode):
    """
    Several named inputs, one output.

    The executor waits until every connected input slot holds items.
    """

    kind = NodeKind.MERGE

    description: Dict[str, Any] = {
        "displayName": "Merge",
        "name": "merge",
        "group": ["transform"],
        "inputs": ["input1", "input2"],
        "outputs": [MAIN_SLOT],
    }


class NodeOperationError(NodeExecutionError):
    """Error raised by node code during an operation."""


class NodeApiError(NodeOperationError):
    """Error from an external API call."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ) -> None:
        super().__init__(message, node_id=node_id)
        self.status_code = status_code
        self.response_body = response_body


__all__ = [
    "MAIN_SLOT",
    "NodeInputs",
    "NodeOutputs",
    "NodeKind",
    "BaseNode",
    "TriggerNode",
    "TransformNode",
    "BranchNode",
    "MergeNode",
    "NodeOperationError",
    "NodeApiError",
]
