"""
Core Node Pack Manifest - Registration function for entry-points.
"""

from node_registry.models import NodePackManifest

from .nodes import (
    ConvertTypesNode,
    FilterNode,
    HttpRequestNode,
    IfNode,
    ManualTriggerNode,
    MergeNode,
    NoOpNode,
    ScheduleTriggerNode,
    SetNode,
    SortNode,
    SwitchNode,
    WebhookTriggerNode,
)


# Node classes by type
NODE_CLASSES = {
    node_class.type: node_class
    for node_class in (
        ManualTriggerNode,
        WebhookTriggerNode,
        ScheduleTriggerNode,
        SetNode,
        NoOpNode,
        FilterNode,
        SortNode,
        ConvertTypesNode,
        HttpRequestNode,
        IfNode,
        SwitchNode,
        MergeNode,
    )
}


MANIFEST = NodePackManifest(
    name="core",
    version="1.0.0",
    description="Core utility nodes for workflow operations",
    nodes=list(NODE_CLASSES),
    entry_point="nodepacks.core",
)


def register_nodes():
    """
    Entry point function for node pack discovery.

    Returns tuple of (manifest, node_classes).
    """
    return MANIFEST, NODE_CLASSES


__all__ = [
    "MANIFEST",
    "NODE_CLASSES",
    "register_nodes",
]
