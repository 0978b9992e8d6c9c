"""
Core Node Pack - Essential utility nodes.

This pack provides basic nodes for workflow operations:
- ManualTrigger / Webhook / ScheduleTrigger: Workflow entry points
- Set: Set/modify data fields
- Filter / Sort / ConvertTypes: Item-list transformations
- HttpRequest: Timeout-bounded HTTP calls
- If / Switch: Route items across outputs
- Merge: Combine two inputs
- NoOp: Pass-through node (no operation)

All nodes are SYNC-CELERY SAFE.
"""

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
from .manifest import MANIFEST, NODE_CLASSES, register_nodes

__all__ = [
    "ManualTriggerNode",
    "WebhookTriggerNode",
    "ScheduleTriggerNode",
    "SetNode",
    "NoOpNode",
    "FilterNode",
    "SortNode",
    "ConvertTypesNode",
    "HttpRequestNode",
    "IfNode",
    "SwitchNode",
    "MergeNode",
    "MANIFEST",
    "NODE_CLASSES",
    "register_nodes",
]
