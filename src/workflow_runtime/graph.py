"""
Compiled Graph - Validated, executable workflow DAG.

Takes a WorkflowGraph and a NodeRegistry and checks that every node type
is known, every connection joins existing slots and the graph has no
cycles. Nothing runs for a graph that fails these checks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from flowforge.errors import GraphCycleError, GraphValidationError

from node_registry.models import NodeDescriptor
from node_registry.registry import NodeRegistry
from node_sdk.basenode import NodeKind

from .models import GraphConnection, GraphNode, WorkflowGraph


logger = logging.getLogger(__name__)


@dataclass
class CompiledNode:
    """A node in the compiled graph with its descriptor and edges."""
    node: GraphNode
    descriptor: NodeDescriptor
    incoming: List[int] = field(default_factory=list)
    outgoing: List[int] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.node.id

    @property
    def name(self) -> str:
        return self.node.name

    @property
    def is_trigger(self) -> bool:
        return self.descriptor.kind == NodeKind.TRIGGER


class CompiledGraph:
    """
    Compiled workflow ready for execution.

    Connections are addressed by their index in ``graph.connections`` so
    that items reaching one input slot can be concatenated in declared
    connection order.

    SYNC-CELERY SAFE: No async operations.
    """

    def __init__(self, graph: WorkflowGraph, registry: NodeRegistry):
        self.graph = graph
        self.workflow_id = graph.id
        self.workflow_name = graph.name
        self.connections: List[GraphConnection] = list(graph.connections)

        self._nodes: Dict[str, CompiledNode] = {}
        self._build_nodes(registry)
        self._execution_order = self._compute_execution_order()

    def _build_nodes(self, registry: NodeRegistry) -> None:
        errors: List[str] = []

        for node in self.graph.nodes:
            if node.id in self._nodes:
                errors.append(f"Duplicate node id: {node.id}")
                continue
            if not registry.is_valid_node_type(node.type):
                errors.append(f"Unknown node type: {node.type} (node {node.id})")
                continue
            self._nodes[node.id] = CompiledNode(node=node, descriptor=registry.get_descriptor(node.type))

        for index, conn in enumerate(self.connections):
            source = self._nodes.get(conn.source_node_id)
            target = self._nodes.get(conn.target_node_id)
            if source is None:
                errors.append(f"Connection {index} references unknown source node: {conn.source_node_id}")
            elif conn.source_output_key not in source.descriptor.outputs:
                errors.append(
                    f"Node {source.id} has no output '{conn.source_output_key}'"
                )
            if target is None:
                errors.append(f"Connection {index} references unknown target node: {conn.target_node_id}")
            elif conn.target_input_key not in target.descriptor.inputs:
                errors.append(
                    f"Node {target.id} has no input '{conn.target_input_key}'"
                )
            if source is not None and target is not None:
                source.outgoing.append(index)
                target.incoming.append(index)

        if errors:
            raise GraphValidationError(
                f"Workflow {self.workflow_id} is invalid: {'; '.join(errors)}",
                {"errors": errors},
            )

    def _compute_execution_order(self) -> List[str]:
        """
        Topological order using Kahn's algorithm.

        Raises:
            GraphCycleError: If some nodes are part of a cycle
        """
        in_degree: Dict[str, int] = {node_id: 0 for node_id in self._nodes}
        for conn in self.connections:
            in_degree[conn.target_node_id] += 1

        queue = [node_id for node_id in self._nodes if in_degree[node_id] == 0]
        order: List[str] = []

        while queue:
            node_id = queue.pop(0)
            order.append(node_id)
            for index in self._nodes[node_id].outgoing:
                target = self.connections[index].target_node_id
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    queue.append(target)

        if len(order) != len(self._nodes):
            raise GraphCycleError([n for n in self._nodes if n not in order])

        return order

    @property
    def execution_order(self) -> List[str]:
        return list(self._execution_order)

    @property
    def node_ids(self) -> List[str]:
        """Node ids in declaration order."""
        return list(self._nodes.keys())

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, node_id: str) -> CompiledNode:
        return self._nodes[node_id]

    def get_start_nodes(self) -> List[str]:
        """Nodes without incoming connections, in declaration order."""
        return [node_id for node_id, node in self._nodes.items() if not node.incoming]

    def get_terminal_nodes(self) -> List[str]:
        """Nodes without outgoing connections, in declaration order."""
        return [node_id for node_id, node in self._nodes.items() if not node.outgoing]

    def connected_slots(self, node_id: str) -> List[str]:
        """Input slots of ``node_id`` fed by at least one connection, in declared slot order."""
        node = self._nodes[node_id]
        fed = {self.connections[i].target_input_key for i in node.incoming}
        return [slot for slot in node.descriptor.inputs if slot in fed]


def validate_workflow(graph: WorkflowGraph, registry: NodeRegistry) -> List[str]:
    """
    Graph-save time validation.

    Returns:
        Structural and per-node configuration errors; never raises
    """
    errors: List[str] = []
    try:
        CompiledGraph(graph, registry)
    except GraphValidationError as e:
        errors.extend(e.details.get("errors") or [e.message])

    for node in graph.nodes:
        for error in registry.validate_configuration(node.type, node.parameters):
            if error.startswith("Unknown node type"):
                continue
            errors.append(f"{node.id}: {error}")
    return errors


__all__ = [
    "CompiledGraph",
    "CompiledNode",
    "validate_workflow",
]
