"""
Node Items - Data structures flowing through workflows.

NodeItem is the fundamental data unit in workflows.
Each item has JSON data, optional binary attachments and an optional
pairedItem provenance tag.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class BinaryData(BaseModel):
    """
    Binary attachment for a node item.

    Data is kept base64-encoded so items stay JSON serializable.
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    data: str = Field(..., description="Base64-encoded content")
    mime_type: str = Field("application/octet-stream", alias="mimeType")
    file_name: Optional[str] = Field(None, alias="fileName")
    file_extension: Optional[str] = Field(None, alias="fileExtension")


class PairedItem(BaseModel):
    """
    Reference to the source item that produced this item.

    Used for tracking data lineage through workflows.
    """
    model_config = ConfigDict(extra="forbid")

    item: int = Field(..., description="Index of source item", ge=0)
    input: int = Field(0, description="Input slot index", ge=0)


class NodeItem(BaseModel):
    """
    A single data item flowing through a workflow.

    Example:
        item = NodeItem(json={"name": "John", "email": "john@example.com"})
        item = NodeItem.from_value({"json": {"id": 1}, "pairedItem": {"item": 0}})
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    json_data: Dict[str, Any] = Field(default_factory=dict, alias="json")
    binary: Dict[str, BinaryData] = Field(default_factory=dict)
    paired_item: Optional[PairedItem] = Field(None, alias="pairedItem")

    @property
    def json(self) -> Dict[str, Any]:
        """Alias for json_data."""
        return self.json_data

    @classmethod
    def from_value(cls, value: Union["NodeItem", Dict[str, Any]]) -> "NodeItem":
        """
        Build an item from a ``{"json": ..., "binary": ...}`` dict or a bare JSON object.

        Dicts with a "json" key are treated as full items, anything else
        becomes the item's JSON payload.
        """
        if isinstance(value, NodeItem):
            return value
        if isinstance(value, dict) and "json" in value:
            return cls.model_validate(value)
        if isinstance(value, dict):
            return cls(json_data=value)
        return cls(json_data={"value": value})

    def with_json(self, data: Dict[str, Any], paired_index: Optional[int] = None) -> "NodeItem":
        """Return a new item carrying ``data`` and this item's binaries."""
        paired = self.paired_item
        if paired_index is not None:
            paired = PairedItem(item=paired_index)
        return NodeItem(json_data=data, binary=dict(self.binary), paired_item=paired)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize as a ``{"json", "binary", "pairedItem"}`` dict."""
        return self.model_dump(by_alias=True, exclude_none=True)


def to_items(values: Optional[Iterable[Any]]) -> List[NodeItem]:
    """Convert raw trigger input into items."""
    if values is None:
        return []
    return [NodeItem.from_value(v) for v in values]


def copy_json(item: NodeItem) -> Dict[str, Any]:
    """Deep copy of an item's JSON payload, safe to mutate."""
    return copy.deepcopy(item.json_data)


__all__ = [
    "BinaryData",
    "PairedItem",
    "NodeItem",
    "to_items",
    "copy_json",
]
