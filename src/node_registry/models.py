"""
Node Registry Models - Metadata structures for nodes and node packs.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from node_sdk.basenode import NodeKind
from node_sdk.parameters import NodeParameter


class NodeDescriptor(BaseModel):
    """
    Metadata about a registered node type.

    Built from the node class attributes when the class is registered.
    """
    model_config = ConfigDict(extra="forbid")

    # Identity
    node_type: str = Field(..., description="Unique node type identifier")
    version: int = Field(1, description="Node version")
    kind: NodeKind = Field(NodeKind.TRANSFORM, description="Capability variant")

    # Display
    display_name: str = Field(..., description="Human-readable name")
    description: str = Field("", description="Node description")
    group: List[str] = Field(default_factory=list, description="Categories")

    # Technical
    node_class: Optional[str] = Field(None, description="Fully qualified class name")
    node_pack: Optional[str] = Field(None, description="Source node pack")

    # Slots and schema
    inputs: List[str] = Field(default_factory=lambda: ["main"])
    outputs: List[str] = Field(default_factory=lambda: ["main"])
    parameters: List[NodeParameter] = Field(default_factory=list)

    @classmethod
    def from_node_class(cls, node_class: Type, node_type: Optional[str] = None) -> "NodeDescriptor":
        """Create descriptor from a BaseNode class."""
        description = getattr(node_class, "description", {}) or {}
        node_type = node_type or getattr(node_class, "type", node_class.__name__.lower())
        kind = getattr(node_class, "kind", NodeKind.TRANSFORM)

        inputs = node_class.input_slots()
        if kind == NodeKind.TRIGGER:
            inputs = []

        return cls(
            node_type=node_type,
            version=getattr(node_class, "version", 1),
            kind=kind,
            display_name=description.get("displayName", node_type),
            description=description.get("description", ""),
            group=list(description.get("group", [])),
            node_class=f"{node_class.__module__}.{node_class.__name__}",
            inputs=inputs,
            outputs=node_class.output_slots(),
            parameters=node_class.parameter_schema(),
        )

    @property
    def category(self) -> str:
        """Primary category (first group entry)."""
        return self.group[0] if self.group else "misc"

    def get_parameter(self, name: str) -> Optional[NodeParameter]:
        """Parameter declaration by name."""
        for parameter in self.parameters:
            if parameter.name == name:
                return parameter
        return None


class NodePackManifest(BaseModel):
    """
    Manifest for a node pack (collection of nodes).

    Used for discovery and registration of bundled nodes.
    """
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., description="Pack name (e.g., 'core')")
    version: str = Field("1.0.0", description="Pack version")
    description: str = Field("", description="Pack description")
    nodes: List[str] = Field(
        default_factory=list,
        description="List of node types in this pack"
    )
    entry_point: str = Field(
        "",
        description="Module path of the pack (e.g., 'nodepacks.core')"
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodePackManifest":
        """Create from dictionary."""
        return cls.model_validate(data)


__all__ = [
    "NodeDescriptor",
    "NodePackManifest",
]
