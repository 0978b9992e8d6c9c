"""
Data Transformation - Array-level operations on node items.

All functions return new lists and never modify the items they receive.
"""

from __future__ import annotations

import copy
import json
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from flowforge.errors import ValidationError

from node_sdk.context import ExecutionContext
from node_sdk.items import NodeItem, PairedItem

from .expressions import ExpressionEngine
from .functions import to_datetime


logger = logging.getLogger(__name__)

_MISSING = object()

Predicate = Union[str, Callable[[NodeItem, int], Any]]


class MergeStrategy(str, Enum):
    """How a merge node combines its inputs."""
    MERGE = "merge"
    APPEND = "append"
    COMBINE = "combine"


def get_nested_value(data: Any, path: str, default: Any = None) -> Any:
    """Read a dotted path ("address.city", "tags.0") from nested data."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit() and -len(current) <= int(part) < len(current):
            current = current[int(part)]
        else:
            return default
    return current


def set_nested_value(data: Dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path, creating intermediate dicts."""
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


# ==============================================================================
# filter / sort
# ==============================================================================

def filter_data(
    items: Sequence[NodeItem],
    predicate: Predicate,
    context: Optional[ExecutionContext] = None,
    engine: Optional[ExpressionEngine] = None,
) -> List[NodeItem]:
    """
    Keep items whose predicate is truthy, preserving order.

    ``predicate`` is either an expression evaluated per item (requires
    ``context`` and ``engine``) or a callable ``(item, index) -> bool``.
    """
    if callable(predicate):
        return [item for index, item in enumerate(items) if predicate(item, index)]

    if context is None or engine is None:
        raise ValueError("Expression predicates need an execution context and engine")

    item_context = context.with_inputs(list(items))
    kept = []
    for index, item in enumerate(items):
        if engine.evaluate(predicate, item_context.for_item(index)):
            kept.append(item)
    return kept


def _sort_key(value: Any) -> tuple:
    # Missing values first, then numbers, strings, everything else
    if value is _MISSING or value is None:
        return (0, 0, 0)
    if isinstance(value, bool):
        return (1, 0, int(value))
    if isinstance(value, (int, float)):
        return (1, 0, value)
    if isinstance(value, str):
        return (1, 1, value)
    return (1, 2, json.dumps(value, sort_keys=True, default=str))


def sort_data(items: Sequence[NodeItem], field: str, direction: str = "asc") -> List[NodeItem]:
    """
    Stable sort by a dotted field path.

    Missing fields sort before present values ascending and after them
    descending; items with equal keys keep their original order.
    """
    if direction not in ("asc", "desc"):
        raise ValidationError(f"Sort direction must be 'asc' or 'desc', got '{direction}'")
    return sorted(
        items,
        key=lambda item: _sort_key(get_nested_value(item.json_data, field, _MISSING)),
        reverse=direction == "desc",
    )


# ==============================================================================
# merge
# ==============================================================================

def merge_input_data(
    inputs: Union[Mapping[str, Sequence[NodeItem]], Sequence[Sequence[NodeItem]]],
    strategy: Union[MergeStrategy, str] = MergeStrategy.APPEND,
) -> List[NodeItem]:
    """
    Combine the items of several inputs.

    ``inputs`` is ordered by declared connection order (a mapping keeps
    its insertion order).

    - append / merge: concatenate the inputs in declared order
    - combine: merge items by position, later inputs overriding fields
    """
    strategy = MergeStrategy(strategy)
    groups = list(inputs.values()) if isinstance(inputs, Mapping) else list(inputs)

    if strategy in (MergeStrategy.APPEND, MergeStrategy.MERGE):
        merged: List[NodeItem] = []
        for input_index, group in enumerate(groups):
            for item_index, item in enumerate(group):
                merged.append(NodeItem(
                    json_data=item.json_data,
                    binary=dict(item.binary),
                    paired_item=PairedItem(item=item_index, input=input_index),
                ))
        return merged

    combined: List[NodeItem] = []
    width = max((len(group) for group in groups), default=0)
    for position in range(width):
        data: Dict[str, Any] = {}
        binary: Dict[str, Any] = {}
        for group in groups:
            if position < len(group):
                data.update(group[position].json_data)
                binary.update(group[position].binary)
        combined.append(NodeItem(
            json_data=data,
            binary=binary,
            paired_item=PairedItem(item=position),
        ))
    return combined


# ==============================================================================
# paginate
# ==============================================================================

@dataclass
class Page:
    """One page of items plus pagination metadata."""
    items: List[Any]
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": self.items,
            "pagination": {
                "page": self.page,
                "pageSize": self.page_size,
                "total": self.total,
                "totalPages": self.total_pages,
                "hasNext": self.has_next,
                "hasPrev": self.has_prev,
            },
        }


def paginate_data(items: Sequence[Any], page: int = 1, page_size: int = 50) -> Page:
    """
    Slice ``items`` into 1-indexed pages.

    Raises:
        ValidationError: If page or page_size is below 1
    """
    if page < 1:
        raise ValidationError(f"page must be >= 1, got {page}")
    if page_size < 1:
        raise ValidationError(f"page_size must be >= 1, got {page_size}")

    total = len(items)
    total_pages = math.ceil(total / page_size)
    start = (page - 1) * page_size
    return Page(
        items=list(items[start:start + page_size]),
        page=page,
        page_size=page_size,
        total=total,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_prev=page > 1,
    )


# ==============================================================================
# type coercion
# ==============================================================================

def _to_number(value: Any) -> Union[int, float]:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return 0 if math.isnan(value) else value
    try:
        text = str(value).strip()
        if re.fullmatch(r"[+-]?\d+", text):
            return int(text)
        number = float(text)
    except (TypeError, ValueError):
        return 0
    return 0 if math.isnan(number) else number


def _to_boolean(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1")
    return bool(value)


def _to_date(value: Any) -> Optional[str]:
    try:
        return to_datetime(value).isoformat()
    except (ValueError, OverflowError, OSError):
        return None


def coerce_value(value: Any, target: str) -> Any:
    """
    Coerce one value to a target type.

    Invalid numbers and NaN become 0, invalid dates become None; values that
    cannot be coerced to other types are returned unchanged.
    """
    if value is None:
        return None
    if target == "string":
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        return str(value)
    if target == "number":
        return _to_number(value)
    if target == "boolean":
        return _to_boolean(value)
    if target == "date":
        return _to_date(value)
    if target == "array":
        return value if isinstance(value, list) else [value]
    if target == "object":
        if isinstance(value, dict):
            return value
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except ValueError:
                return {"value": value}
            return parsed if isinstance(parsed, dict) else {"value": value}
        return {"value": value}
    return value


def transform_data_types(items: Sequence[NodeItem], type_map: Mapping[str, str]) -> List[NodeItem]:
    """Coerce the fields listed in ``type_map`` (dotted path -> type) on every item."""
    results = []
    for item in items:
        data = copy.deepcopy(item.json_data)
        for path, target in type_map.items():
            current = get_nested_value(data, path, _MISSING)
            if current is _MISSING:
                continue
            set_nested_value(data, path, coerce_value(current, target))
        results.append(item.with_json(data))
    return results


# ==============================================================================
# validation
# ==============================================================================

def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def validate_data(items: Sequence[NodeItem], schema: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """
    Validate items against ``{"required": [...], "types": {...}, "patterns": {...}}``.

    Returns:
        List of {"itemIndex", "field", "error"}; never raises
    """
    issues: List[Dict[str, Any]] = []
    required = schema.get("required") or []
    types = schema.get("types") or {}
    patterns = schema.get("patterns") or {}

    for index, item in enumerate(items):
        data = item.json_data

        for field in required:
            if get_nested_value(data, field) is None:
                issues.append({
                    "itemIndex": index,
                    "field": field,
                    "error": f"Required field '{field}' is missing",
                })

        for field, expected in types.items():
            value = get_nested_value(data, field, _MISSING)
            if value is _MISSING or value is None:
                continue
            actual = _type_name(value)
            if actual != expected and not (expected == "object" and actual == "array"):
                issues.append({
                    "itemIndex": index,
                    "field": field,
                    "error": f"Field '{field}' should be {expected}, got {actual}",
                })

        for field, pattern in patterns.items():
            value = get_nested_value(data, field, _MISSING)
            if value is _MISSING or value is None:
                continue
            try:
                matched = re.search(pattern, str(value)) is not None
            except re.error as e:
                issues.append({
                    "itemIndex": index,
                    "field": field,
                    "error": f"Invalid pattern for field '{field}': {e}",
                })
                continue
            if not matched:
                issues.append({
                    "itemIndex": index,
                    "field": field,
                    "error": f"Field '{field}' does not match pattern {pattern}",
                })

    return issues


# ==============================================================================
# field operations
# ==============================================================================

def apply_field_operations(
    items: Sequence[NodeItem],
    add: Optional[Mapping[str, Any]] = None,
    remove: Optional[Sequence[str]] = None,
    rename: Optional[Mapping[str, str]] = None,
) -> List[NodeItem]:
    """Add, remove and rename fields (in that order) on copies of the items."""
    results = []
    for item in items:
        data = copy.deepcopy(item.json_data)
        for path, value in (add or {}).items():
            set_nested_value(data, path, copy.deepcopy(value))
        for field in remove or []:
            data.pop(field, None)
        for old, new in (rename or {}).items():
            if old in data:
                data[new] = data.pop(old)
        results.append(item.with_json(data))
    return results


__all__ = [
    "MergeStrategy",
    "Page",
    "get_nested_value",
    "set_nested_value",
    "filter_data",
    "sort_data",
    "merge_input_data",
    "paginate_data",
    "coerce_value",
    "transform_data_types",
    "validate_data",
    "apply_field_operations",
]
