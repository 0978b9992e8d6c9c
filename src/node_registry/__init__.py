"""
Node Registry - Closed table of node types.

This package provides:
- NodeDescriptor: Metadata about a registered node type
- NodePackManifest: Package metadata for a node pack
- NodeRegistry: Registration, lookup and configuration validation
"""

from .models import NodeDescriptor, NodePackManifest
from .registry import NODE_PACK_ENTRY_POINT, NodeRegistry

__all__ = [
    "NodeDescriptor",
    "NodePackManifest",
    "NodeRegistry",
    "NODE_PACK_ENTRY_POINT",
]
