"""
Core Nodes - Essential utility node implementations.

These nodes provide basic workflow functionality.
All are SYNC-CELERY SAFE.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flowforge.config import get_settings

from node_sdk.basenode import (
    BranchNode,
    MergeNode as BaseMergeNode,
    NodeOutputs,
    TransformNode,
    TriggerNode,
)
from node_sdk.context import ExecutionContext, NodeParameters
from node_sdk.http import HttpClient
from node_sdk.items import NodeItem

from workflow_runtime.transform import (
    MergeStrategy,
    filter_data,
    get_nested_value,
    merge_input_data,
    sort_data,
    transform_data_types,
)


logger = logging.getLogger(__name__)


COMPARE_OPERATIONS = [
    {"name": "Equal", "value": "equal"},
    {"name": "Not Equal", "value": "notEqual"},
    {"name": "Larger", "value": "larger"},
    {"name": "Larger or Equal", "value": "largerEqual"},
    {"name": "Smaller", "value": "smaller"},
    {"name": "Smaller or Equal", "value": "smallerEqual"},
    {"name": "Contains", "value": "contains"},
    {"name": "Not Contains", "value": "notContains"},
    {"name": "Starts With", "value": "startsWith"},
    {"name": "Ends With", "value": "endsWith"},
    {"name": "Regex", "value": "regex"},
    {"name": "Is Empty", "value": "isEmpty"},
    {"name": "Is Not Empty", "value": "isNotEmpty"},
]


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def compare(actual: Any, operation: str, expected: Any) -> bool:
    """
    Compare a field value against an expected value.

    Numeric operations coerce both sides to numbers; text operations
    compare the string forms.
    """
    if operation == "isEmpty":
        return _is_empty(actual)
    if operation == "isNotEmpty":
        return not _is_empty(actual)

    if operation in ("equal", "notEqual"):
        left, right = _as_number(actual), _as_number(expected)
        if left is not None and right is not None:
            equal = left == right
        elif isinstance(actual, bool):
            equal = str(actual).lower() == str(expected).strip().lower()
        else:
            equal = ("" if actual is None else str(actual)) == ("" if expected is None else str(expected))
        return equal if operation == "equal" else not equal

    if operation in ("larger", "largerEqual", "smaller", "smallerEqual"):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        if operation == "larger":
            return left > right
        if operation == "largerEqual":
            return left >= right
        if operation == "smaller":
            return left < right
        return left <= right

    if actual is None:
        return operation == "notContains"
    text, needle = str(actual), "" if expected is None else str(expected)
    if operation == "contains":
        if isinstance(actual, list):
            return expected in actual or needle in [str(v) for v in actual]
        return needle in text
    if operation == "notContains":
        return not compare(actual, "contains", expected)
    if operation == "startsWith":
        return text.startswith(needle)
    if operation == "endsWith":
        return text.endswith(needle)
    if operation == "regex":
        return re.search(needle, text) is not None
    raise ValueError(f"Unknown operation: {operation}")


def _condition_parameters(operation_default: str = "equal") -> List[Dict[str, Any]]:
    return [
        {
            "displayName": "Field",
            "name": "field",
            "type": "string",
            "required": True,
            "description": "Dotted path of the field to test (e.g. 'address.city')",
        },
        {
            "displayName": "Operation",
            "name": "operation",
            "type": "enum",
            "default": operation_default,
            "options": COMPARE_OPERATIONS,
        },
        {
            "displayName": "Value",
            "name": "value",
            "type": "string",
            "default": "",
        },
    ]


def _test_item(item: NodeItem, index: int, parameters: NodeParameters) -> bool:
    field = parameters.get("field", index)
    actual = get_nested_value(item.json_data, field)
    return compare(actual, parameters.get("operation", index), parameters.get("value", index))


# ==============================================================================
# Triggers
# ==============================================================================

class ManualTriggerNode(TriggerNode):
    """
    Manual Trigger - Start a workflow manually.

    Emits the items passed with the run request, or a single empty item.
    """

    type = "flowforge.manualTrigger"
    version = 1

    description = {
        "displayName": "Manual Trigger",
        "name": "manualTrigger",
        "group": ["trigger"],
        "description": "Starts the workflow when triggered manually",
        "inputs": [],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [],
    }

    def emit(self, parameters: NodeParameters, context: ExecutionContext) -> List[NodeItem]:
        return list(context.input_items) or [NodeItem()]


class WebhookTriggerNode(TriggerNode):
    """
    Webhook Trigger - Start a workflow from an incoming HTTP request.

    The request (headers, query, body) arrives as the execution input.
    """

    type = "flowforge.webhook"
    version = 1

    description = {
        "displayName": "Webhook",
        "name": "webhook",
        "group": ["trigger"],
        "description": "Starts the workflow when a webhook is called",
        "inputs": [],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Path",
                "name": "path",
                "type": "string",
                "required": True,
            },
            {
                "displayName": "HTTP Method",
                "name": "httpMethod",
                "type": "enum",
                "default": "POST",
                "options": ["GET", "POST", "PUT", "PATCH", "DELETE"],
            },
        ],
    }

    def emit(self, parameters: NodeParameters, context: ExecutionContext) -> List[NodeItem]:
        return list(context.input_items) or [NodeItem(json_data={"body": {}})]


class ScheduleTriggerNode(TriggerNode):
    """
    Schedule Trigger - Start a workflow on a cron schedule.

    The schedule registry passes {scheduleId, cronExpression, timezone,
    timestamp} as the execution input; manual runs get a fresh timestamp.
    """

    type = "flowforge.scheduleTrigger"
    version = 1

    description = {
        "displayName": "Schedule Trigger",
        "name": "scheduleTrigger",
        "group": ["trigger", "schedule"],
        "description": "Starts the workflow on a cron schedule",
        "inputs": [],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Cron Expression",
                "name": "cronExpression",
                "type": "string",
                "required": True,
                "description": "Standard 5-field cron expression",
            },
            {
                "displayName": "Timezone",
                "name": "timezone",
                "type": "string",
                "default": "UTC",
            },
        ],
    }

    def emit(self, parameters: NodeParameters, context: ExecutionContext) -> List[NodeItem]:
        if context.input_items:
            return list(context.input_items)
        now = datetime.now(timezone.utc)
        return [NodeItem(json_data={
            "timestamp": now.isoformat(),
            "cronExpression": parameters.get("cronExpression"),
            "timezone": parameters.get("timezone"),
        })]


# ==============================================================================
# Transforms
# ==============================================================================

class SetNode(TransformNode):
    """
    Set Node - Set or modify data fields.

    Allows setting new fields or modifying existing ones
    on workflow items.
    """

    type = "flowforge.set"
    version = 1

    description = {
        "displayName": "Set",
        "name": "set",
        "group": ["transform"],
        "description": "Sets values on items",
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Values",
                "name": "values",
                "type": "json",
                "default": {},
                "description": "Fields to set; values may contain expressions",
            },
            {
                "displayName": "Keep Only Set",
                "name": "keepOnlySet",
                "type": "boolean",
                "default": False,
                "description": "If true, only keep the set values, discard others",
            },
        ],
    }

    def process(
        self,
        items: List[NodeItem],
        parameters: NodeParameters,
        context: ExecutionContext,
    ) -> List[NodeItem]:
        keep_only_set = parameters.get("keepOnlySet")

        results = []
        for i, item in enumerate(items):
            new_data = parameters.get("values", i)
            if isinstance(new_data, str):
                new_data = json.loads(new_data)
            if not isinstance(new_data, dict):
                raise self.error("Values must be a JSON object", context, i)

            output = dict(new_data) if keep_only_set else {**item.json_data, **new_data}
            results.append(item.with_json(output, paired_index=i))
        return results


class NoOpNode(TransformNode):
    """
    No Operation Node - Pass-through.

    Simply passes input items through unchanged.
    Useful for organizing workflows.
    """

    type = "flowforge.noOp"
    version = 1

    description = {
        "displayName": "No Operation",
        "name": "noOp",
        "group": ["transform"],
        "description": "No operation - passes items through",
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [],
    }

    def process(self, items, parameters, context):
        return [item.with_json(item.json_data, paired_index=i) for i, item in enumerate(items)]


class FilterNode(TransformNode):
    """Keep only the items matching a condition."""

    type = "flowforge.filter"
    version = 1

    description = {
        "displayName": "Filter",
        "name": "filter",
        "group": ["transform"],
        "description": "Removes items that do not match a condition",
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": _condition_parameters(),
    }

    def process(self, items, parameters, context):
        return filter_data(items, lambda item, i: _test_item(item, i, parameters))


class SortNode(TransformNode):
    """Sort items by a field."""

    type = "flowforge.sort"
    version = 1

    description = {
        "displayName": "Sort",
        "name": "sort",
        "group": ["transform"],
        "description": "Sorts items by a field",
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Field",
                "name": "field",
                "type": "string",
                "required": True,
            },
            {
                "displayName": "Direction",
                "name": "direction",
                "type": "enum",
                "default": "asc",
                "options": [
                    {"name": "Ascending", "value": "asc"},
                    {"name": "Descending", "value": "desc"},
                ],
            },
        ],
    }

    def process(self, items, parameters, context):
        return sort_data(items, parameters.get("field"), parameters.get("direction"))


class ConvertTypesNode(TransformNode):
    """Coerce item fields to number, string, boolean, date, array or object."""

    type = "flowforge.convertTypes"
    version = 1

    description = {
        "displayName": "Convert Types",
        "name": "convertTypes",
        "group": ["transform"],
        "description": "Converts field values to other types",
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Types",
                "name": "types",
                "type": "json",
                "required": True,
                "description": 'Field path to type, e.g. {"age": "number"}',
            },
        ],
    }

    def process(self, items, parameters, context):
        type_map = parameters.get("types")
        if isinstance(type_map, str):
            type_map = json.loads(type_map)
        if not isinstance(type_map, dict):
            raise self.error("Types must be a JSON object", context)
        return transform_data_types(items, type_map)


class HttpRequestNode(TransformNode):
    """
    HTTP Request Node - Make HTTP requests.

    Supports GET, POST, PUT, DELETE, PATCH methods.
    SYNC-CELERY SAFE: Uses requests with timeout.
    """

    type = "flowforge.httpRequest"
    version = 1

    description = {
        "displayName": "HTTP Request",
        "name": "httpRequest",
        "group": ["input", "output"],
        "description": "Make HTTP requests",
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Method",
                "name": "method",
                "type": "enum",
                "default": "GET",
                "options": ["GET", "POST", "PUT", "DELETE", "PATCH"],
            },
            {
                "displayName": "URL",
                "name": "url",
                "type": "string",
                "default": "",
                "required": True,
            },
            {
                "displayName": "Headers",
                "name": "headers",
                "type": "json",
                "default": {},
            },
            {
                "displayName": "Query Parameters",
                "name": "query",
                "type": "json",
                "default": {},
            },
            {
                "displayName": "Body",
                "name": "body",
                "type": "json",
                "default": None,
            },
            {
                "displayName": "Timeout",
                "name": "timeout",
                "type": "number",
                "default": None,
                "description": "Timeout in seconds (defaults to http_request_timeout_s)",
            },
            {
                "displayName": "Fail On Error Status",
                "name": "failOnErrorStatus",
                "type": "boolean",
                "default": True,
            },
        ],
    }

    def __init__(self) -> None:
        super().__init__()
        self.client: Optional[HttpClient] = None

    def setup(self, context: ExecutionContext) -> None:
        self.client = HttpClient(timeout=get_settings().http_request_timeout_s)

    def teardown(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None

    def process(self, items, parameters, context):
        results = []
        for i, item in enumerate(items):
            method = parameters.get("method", i)
            url = parameters.get("url", i)
            if not url:
                raise self.error("URL is required", context, i)

            response = self.client.request(
                method,
                url,
                params=_as_json(parameters.get("query", i)) or None,
                json=_as_json(parameters.get("body", i)) if method in ("POST", "PUT", "PATCH") else None,
                headers=_as_json(parameters.get("headers", i)) or None,
                timeout=parameters.get("timeout", i),
            )
            if parameters.get("failOnErrorStatus", i):
                response.raise_for_status(node_id=context.node_id)

            results.append(item.with_json({
                "statusCode": response.status_code,
                "headers": response.headers,
                "body": response.body(),
            }, paired_index=i))
        return results


def _as_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value) if value.strip() else None
    return value


# ==============================================================================
# Branching
# ==============================================================================

class IfNode(BranchNode):
    """Route each item to "true" or "false" depending on a condition."""

    type = "flowforge.if"
    version = 1

    description = {
        "displayName": "If",
        "name": "if",
        "group": ["flow"],
        "description": "Routes items depending on a condition",
        "inputs": ["main"],
        "outputs": ["true", "false"],
    }

    properties = {
        "parameters": _condition_parameters(),
    }

    def route(self, item, index, parameters, context):
        return "true" if _test_item(item, index, parameters) else "false"


class SwitchNode(BranchNode):
    """
    Route each item to the output of the first matching rule.

    Rules: [{"operation": "equal", "value": "a", "output": 0}, ...]
    Items matching no rule go to ``fallbackOutput`` or are dropped when
    it is -1.
    """

    type = "flowforge.switch"
    version = 1

    description = {
        "displayName": "Switch",
        "name": "switch",
        "group": ["flow"],
        "description": "Routes items to one of several outputs",
        "inputs": ["main"],
        "outputs": ["output0", "output1", "output2", "output3"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Field",
                "name": "field",
                "type": "string",
                "required": True,
            },
            {
                "displayName": "Rules",
                "name": "rules",
                "type": "json",
                "default": [],
            },
            {
                "displayName": "Fallback Output",
                "name": "fallbackOutput",
                "type": "number",
                "default": -1,
            },
        ],
    }

    def route(self, item, index, parameters, context):
        actual = get_nested_value(item.json_data, parameters.get("field", index))
        rules = _as_json(parameters.get("rules", index)) or []
        for rule in rules:
            if compare(actual, rule.get("operation", "equal"), rule.get("value")):
                return f"output{int(rule.get('output', 0))}"
        fallback = int(parameters.get("fallbackOutput", index))
        return None if fallback < 0 else f"output{fallback}"


class MergeNode(BaseMergeNode):
    """
    Merge Node - Combine the items of two inputs.

    Runs once every connected input has resolved; inputs without
    items are left out.
    """

    type = "flowforge.merge"
    version = 1

    description = {
        "displayName": "Merge",
        "name": "merge",
        "group": ["flow"],
        "description": "Merges data of multiple streams",
        "inputs": ["input1", "input2"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Mode",
                "name": "mode",
                "type": "enum",
                "default": "append",
                "options": [
                    {"name": "Append", "value": MergeStrategy.APPEND.value},
                    {"name": "Merge", "value": MergeStrategy.MERGE.value},
                    {"name": "Combine By Position", "value": MergeStrategy.COMBINE.value},
                ],
            },
        ],
    }

    def transform(self, inputs, parameters, context) -> NodeOutputs:
        ordered = {slot: inputs[slot] for slot in self.input_slots() if slot in inputs}
        return {"main": merge_input_data(ordered, parameters.get("mode"))}


# Export all nodes
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
    "compare",
]
