"""
Node Registry - Closed table of node types.

The table is filled once at startup (manual registration, node packs or
entry points) and then frozen. Lookups are exact name matches and fail
explicitly on unknown types.
"""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, Iterator, List, Optional, Type

from flowforge.errors import ConflictError, NotFoundError

from node_sdk.basenode import BaseNode, NodeKind
from node_sdk.parameters import validate_parameters

from .models import NodeDescriptor, NodePackManifest


logger = logging.getLogger(__name__)

# Entry point group for node packs
NODE_PACK_ENTRY_POINT = "flowforge.nodepacks"


class NodeRegistry:
    """
    Catalog of node type descriptors and their executable behavior.

    Usage:
        registry = NodeRegistry()
        registry.register_pack(*register_nodes())
        registry.freeze()

        node = registry.create_node("flowforge.set")
        errors = registry.validate_configuration("flowforge.set", {"values": {}})
    """

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._descriptors: Dict[str, NodeDescriptor] = {}
        self._node_classes: Dict[str, Type[BaseNode]] = {}
        self._packs: Dict[str, NodePackManifest] = {}
        self._frozen = False

    # ==== Registration ====

    def register_node(
        self,
        node_class: Type[BaseNode],
        node_type: Optional[str] = None,
    ) -> NodeDescriptor:
        """
        Register a node class.

        Raises:
            ConflictError: If the table is frozen or the type is taken
        """
        if self._frozen:
            raise ConflictError("Node registry is frozen; register nodes at startup")

        descriptor = NodeDescriptor.from_node_class(node_class, node_type)
        if descriptor.node_type in self._descriptors:
            raise ConflictError(f"Node type already registered: {descriptor.node_type}")

        self._descriptors[descriptor.node_type] = descriptor
        self._node_classes[descriptor.node_type] = node_class

        logger.debug(f"Registered node: {descriptor.node_type}")
        return descriptor

    def register_pack(
        self,
        manifest: NodePackManifest,
        node_classes: Dict[str, Type[BaseNode]],
    ) -> None:
        """Register a node pack with its nodes."""
        self._packs[manifest.name] = manifest

        for node_type, node_class in node_classes.items():
            descriptor = self.register_node(node_class, node_type)
            descriptor.node_pack = manifest.name

        logger.info(f"Registered pack '{manifest.name}' with {len(node_classes)} nodes")

    def discover_entry_points(self) -> int:
        """
        Register node packs published under the ``flowforge.nodepacks``
        entry point group.

            [project.entry-points."flowforge.nodepacks"]
            mypack = "mypack:register_nodes"

        The entry point returns ``(manifest, node_classes)``.

        Returns:
            Number of packs registered
        """
        count = 0
        for ep in entry_points(group=NODE_PACK_ENTRY_POINT):
            if ep.name in self._packs:
                continue
            manifest, node_classes = ep.load()()
            self.register_pack(manifest, node_classes)
            count += 1
            logger.info(f"Discovered node pack: {ep.name}")
        return count

    def freeze(self) -> None:
        """Close the table; later registrations fail."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ==== Lookup ====

    def get_descriptor(self, node_type: str) -> NodeDescriptor:
        """
        Descriptor by exact type name.

        Raises:
            NotFoundError: Unknown node type
        """
        descriptor = self._descriptors.get(node_type)
        if descriptor is None:
            raise NotFoundError(f"Unknown node type: {node_type}")
        return descriptor

    def get_node_class(self, node_type: str) -> Type[BaseNode]:
        """Node class by exact type name."""
        node_class = self._node_classes.get(node_type)
        if node_class is None:
            raise NotFoundError(f"Unknown node type: {node_type}")
        return node_class

    def create_node(self, node_type: str) -> BaseNode:
        """Create a fresh node instance."""
        return self.get_node_class(node_type)()

    def is_valid_node_type(self, node_type: str) -> bool:
        return node_type in self._descriptors

    def list_nodes(self) -> List[NodeDescriptor]:
        """List all registered node descriptors."""
        return list(self._descriptors.values())

    def list_node_types(self) -> List[str]:
        return list(self._descriptors.keys())

    def list_packs(self) -> List[NodePackManifest]:
        return list(self._packs.values())

    def list_by_category(self, category: str) -> List[NodeDescriptor]:
        """Descriptors whose groups include ``category``."""
        return [d for d in self._descriptors.values() if category in d.group]

    def categories(self) -> List[str]:
        """Sorted list of every category in use."""
        found = set()
        for descriptor in self._descriptors.values():
            found.update(descriptor.group)
        return sorted(found)

    def search(self, query: str) -> List[NodeDescriptor]:
        """Case-insensitive search over type, display name and description."""
        needle = query.lower()
        return [
            d for d in self._descriptors.values()
            if needle in d.node_type.lower()
            or needle in d.display_name.lower()
            or needle in d.description.lower()
        ]

    def compatibility(self, source_type: str, target_type: str) -> Dict[str, Any]:
        """
        Whether ``source_type`` can feed ``target_type``.

        Returns:
            {"compatible": bool, "reason": str | None}
        """
        source = self._descriptors.get(source_type)
        target = self._descriptors.get(target_type)
        if source is None or target is None:
            missing = source_type if source is None else target_type
            return {"compatible": False, "reason": f"Unknown node type: {missing}"}
        if not source.outputs:
            return {"compatible": False, "reason": f"{source_type} has no outputs"}
        if target.kind == NodeKind.TRIGGER or not target.inputs:
            return {"compatible": False, "reason": f"{target_type} accepts no inputs"}
        return {"compatible": True, "reason": None}

    # ==== Validation ====

    def validate_configuration(self, node_type: str, parameters: Any) -> List[str]:
        """
        Validate node parameters against the node type's schema.

        Never raises; every problem is returned as a message.
        """
        descriptor = self._descriptors.get(node_type)
        if descriptor is None:
            return [f"Unknown node type: {node_type}"]
        if parameters is None:
            parameters = {}
        if not isinstance(parameters, dict):
            return ["Parameters must be an object"]
        return validate_parameters(descriptor.parameters, parameters)

    def __len__(self) -> int:
        return len(self._descriptors)

    def __iter__(self) -> Iterator[NodeDescriptor]:
        return iter(self._descriptors.values())

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._descriptors


__all__ = [
    "NodeRegistry",
    "NODE_PACK_ENTRY_POINT",
]
