"""
Expression Engine - Safe evaluation of {{ }} expressions.

Expressions are parsed with ``ast`` and evaluated by walking the tree;
only literals, names from the expression context, operators, indexing,
attribute reads and calls to whitelisted functions are allowed.

Context variables:
    $json, $binary              current item
    $input.all() / .first() / .last() / .item
    $node["Name"].json, $('Name').all()
    $workflow, $execution, $vars, $parameters
    $now, $today, $itemIndex, $runIndex

Evaluation never mutates the context: dict attributes read keys and
methods of mutable containers are not reachable.
"""

from __future__ import annotations

import ast
import json
import keyword
import logging
import operator
import re
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from flowforge.errors import ExpressionError

from node_sdk.context import ExecutionContext
from node_sdk.items import NodeItem
from node_sdk.parameters import EXPRESSION_PATTERN

from .functions import BUILTIN_FUNCTIONS


logger = logging.getLogger(__name__)

VARIABLE_PREFIX = "ff_"

# Quoted strings are left untouched by the rewrites below
_STRING_PATTERN = re.compile(r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')")
_NODE_REF_PATTERN = re.compile(r"\$\(")
_VARIABLE_PATTERN = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")
_RESERVED_ATTR_PATTERN = re.compile(r"\.([A-Za-z_][A-Za-z0-9_]*)")
_JS_OPERATORS = [
    (re.compile(r"===?"), "=="),
    (re.compile(r"!==?"), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
]

# Methods of these types are never exposed
_MUTABLE_TYPES = (dict, list, set, bytearray)

# Attributes readable on values other than dicts and accessors
_SAFE_ATTRIBUTES = {
    str: frozenset({
        "lower", "upper", "strip", "lstrip", "rstrip", "split", "splitlines",
        "startswith", "endswith", "replace", "title", "capitalize", "find",
        "count", "isdigit", "zfill",
    }),
    datetime: frozenset({
        "year", "month", "day", "hour", "minute", "second", "weekday",
        "isoformat", "strftime", "timestamp", "date",
    }),
    date: frozenset({
        "year", "month", "day", "weekday", "isoformat", "strftime",
    }),
}


class InputAccessor:
    """$input: read access to the node's input items."""

    def __init__(self, items: List[NodeItem], index: int):
        self._items = items
        self._index = index

    def all(self) -> List[Dict[str, Any]]:
        return [item.json_data for item in self._items]

    def first(self) -> Optional[Dict[str, Any]]:
        return self._items[0].json_data if self._items else None

    def last(self) -> Optional[Dict[str, Any]]:
        return self._items[-1].json_data if self._items else None

    @property
    def item(self) -> Optional[Dict[str, Any]]:
        if 0 <= self._index < len(self._items):
            return self._items[self._index].json_data
        return None

    @property
    def length(self) -> int:
        return len(self._items)


class NodeReference(InputAccessor):
    """$('Name'): read access to another node's output."""

    @property
    def json(self) -> Optional[Dict[str, Any]]:
        return self.item if self.item is not None else self.first()


class SafeExpressionEvaluator:
    """Evaluates a single expression body against a name mapping."""

    operators = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
        ast.Pow: operator.pow,
    }

    comparisons = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
        ast.In: lambda x, y: x in y,
        ast.NotIn: lambda x, y: x not in y,
    }

    unary_ops = {
        ast.UAdd: operator.pos,
        ast.USub: operator.neg,
        ast.Not: operator.not_,
    }

    def evaluate(self, expression: str, names: Dict[str, Any]) -> Any:
        """
        Evaluate an expression body (without delimiters).

        Raises:
            ExpressionError: On syntax errors or evaluation failures
        """
        tree = self.parse(expression)
        try:
            return self._eval_node(tree.body, names)
        except ExpressionError:
            raise
        except Exception as e:
            raise ExpressionError(
                f"Expression evaluation failed: {e}", expression
            ) from e

    def parse(self, expression: str) -> ast.Expression:
        try:
            return _parse(_preprocess(expression))
        except SyntaxError as e:
            raise ExpressionError(f"Syntax error in expression: {e.msg}", expression) from e

    def _eval_node(self, node: ast.AST, names: Dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in names:
                return names[node.id]
            if node.id in BUILTIN_FUNCTIONS:
                return BUILTIN_FUNCTIONS[node.id]
            raise NameError(f"Name '{_display_name(node.id)}' is not defined")

        if isinstance(node, ast.Attribute):
            return self._eval_attribute(self._eval_node(node.value, names), node.attr)

        if isinstance(node, ast.Subscript):
            obj = self._eval_node(node.value, names)
            key = self._eval_node(node.slice, names)
            if obj is None:
                return None
            if isinstance(obj, dict):
                return obj.get(key)
            if isinstance(obj, (list, tuple, str)) and isinstance(key, int):
                return obj[key] if -len(obj) <= key < len(obj) else None
            return obj[key]

        if isinstance(node, ast.BinOp):
            op = self.operators.get(type(node.op))
            if op is None:
                raise ValueError(f"Unsupported binary operator: {type(node.op).__name__}")
            return op(self._eval_node(node.left, names), self._eval_node(node.right, names))

        if isinstance(node, ast.UnaryOp):
            op = self.unary_ops.get(type(node.op))
            if op is None:
                raise ValueError(f"Unsupported unary operator: {type(node.op).__name__}")
            return op(self._eval_node(node.operand, names))

        if isinstance(node, ast.BoolOp):
            result: Any = None
            for value_node in node.values:
                result = self._eval_node(value_node, names)
                if isinstance(node.op, ast.And) and not result:
                    return result
                if isinstance(node.op, ast.Or) and result:
                    return result
            return result

        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left, names)
            for op, right_node in zip(node.ops, node.comparators):
                right = self._eval_node(right_node, names)
                comparison = self.comparisons.get(type(op))
                if comparison is None:
                    raise ValueError(f"Unsupported comparison: {type(op).__name__}")
                if not comparison(left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self._eval_node(node.test, names):
                return self._eval_node(node.body, names)
            return self._eval_node(node.orelse, names)

        if isinstance(node, ast.Call):
            func = self._eval_node(node.func, names)
            if not callable(func):
                raise ValueError(f"Object is not callable: {func!r}")
            args = [self._eval_node(arg, names) for arg in node.args]
            kwargs = {kw.arg: self._eval_node(kw.value, names) for kw in node.keywords if kw.arg}
            return func(*args, **kwargs)

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval_node(item, names) for item in node.elts]

        if isinstance(node, ast.Dict):
            return {
                self._eval_node(k, names): self._eval_node(v, names)
                for k, v in zip(node.keys, node.values)
                if k is not None
            }

        if isinstance(node, ast.Slice):
            return slice(
                self._eval_node(node.lower, names) if node.lower else None,
                self._eval_node(node.upper, names) if node.upper else None,
                self._eval_node(node.step, names) if node.step else None,
            )

        raise ValueError(f"Unsupported syntax: {type(node).__name__}")

    def _eval_attribute(self, obj: Any, attr: str) -> Any:
        if obj is None:
            return None
        if attr.startswith("_"):
            raise ValueError(f"Access to private attribute '{attr}' is not allowed")

        # Dicts: attribute access reads keys
        if isinstance(obj, dict):
            return obj.get(attr)
        if attr == "length" and isinstance(obj, (list, tuple, str)):
            return len(obj)
        if isinstance(obj, InputAccessor):
            return getattr(obj, attr, None)
        # datetime before date: datetime is a date subclass
        for kind in (str, datetime, date):
            if isinstance(obj, kind) and attr in _SAFE_ATTRIBUTES[kind]:
                return getattr(obj, attr)
        raise ValueError(f"Attribute '{attr}' is not available on {type(obj).__name__}")


@lru_cache(maxsize=1024)
def _parse(processed: str) -> ast.Expression:
    return ast.parse(processed.strip(), mode="eval")


@lru_cache(maxsize=1024)
def _preprocess(expression: str) -> str:
    """Rewrite $-variables and JS operators into Python syntax."""
    parts = _STRING_PATTERN.split(expression)
    rewritten = []
    for index, part in enumerate(parts):
        # Odd indexes are quoted strings
        if index % 2 == 1:
            rewritten.append(part)
            continue
        part = _NODE_REF_PATTERN.sub(f"{VARIABLE_PREFIX}node_ref(", part)
        part = _VARIABLE_PATTERN.sub(lambda m: f"{VARIABLE_PREFIX}{m.group(1)}", part)
        for pattern, replacement in _JS_OPERATORS:
            part = pattern.sub(replacement, part)
        part = _RESERVED_ATTR_PATTERN.sub(
            lambda m: f"[{m.group(1)!r}]" if keyword.iskeyword(m.group(1)) else m.group(0),
            part,
        )
        rewritten.append(part)
    return "".join(rewritten)


def _display_name(name: str) -> str:
    if name.startswith(VARIABLE_PREFIX):
        return "$" + name[len(VARIABLE_PREFIX):]
    return name


class ExpressionEngine:
    """
    Resolves parameter values against an ExecutionContext.

    Usage:
        engine = ExpressionEngine()
        engine.resolve("Hello {{ $json.name }}", context)   # -> "Hello Ada"
        engine.resolve("={{ $json.count * 2 }}", context)    # -> 84
    """

    def __init__(self) -> None:
        self.evaluator = SafeExpressionEvaluator()

    def has_expressions(self, value: Any) -> bool:
        """True if ``value`` (or anything nested in it) contains an expression."""
        if isinstance(value, str):
            return EXPRESSION_PATTERN.search(value) is not None
        if isinstance(value, dict):
            return any(self.has_expressions(v) for v in value.values())
        if isinstance(value, list):
            return any(self.has_expressions(v) for v in value)
        return False

    def resolve(self, value: Any, context: ExecutionContext) -> Any:
        """
        Resolve every expression in ``value``.

        Strings that are exactly one expression return the raw result;
        other strings are rendered as templates. Lists and dicts are
        resolved recursively into new containers.
        """
        if isinstance(value, dict):
            return {k: self.resolve(v, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v, context) for v in value]
        if not isinstance(value, str):
            return value

        template = value[1:] if value.startswith("=") else value
        matches = list(EXPRESSION_PATTERN.finditer(template))
        if not matches:
            return value

        names = self.build_names(context)
        if len(matches) == 1 and matches[0].span() == (0, len(template)):
            return self.evaluator.evaluate(matches[0].group(1).strip(), names)

        rendered = []
        last = 0
        for match in matches:
            rendered.append(template[last:match.start()])
            rendered.append(_render(self.evaluator.evaluate(match.group(1).strip(), names)))
            last = match.end()
        rendered.append(template[last:])
        return "".join(rendered)

    def evaluate(self, expression: str, context: ExecutionContext) -> Any:
        """Evaluate an expression, with or without {{ }} delimiters."""
        body = expression.strip()
        match = EXPRESSION_PATTERN.fullmatch(body)
        if match:
            body = match.group(1).strip()
        return self.evaluator.evaluate(body, self.build_names(context))

    def validate(self, expression: str) -> Optional[str]:
        """Syntax check; returns the error message or None."""
        bodies = [m.group(1).strip() for m in EXPRESSION_PATTERN.finditer(expression)]
        if not bodies:
            bodies = [expression.strip()]
        for body in bodies:
            try:
                self.evaluator.parse(body)
            except ExpressionError as e:
                return e.message
        return None

    def build_names(self, context: ExecutionContext) -> Dict[str, Any]:
        """Variables visible to expressions for one item."""
        item = context.item
        items = list(context.input_items)
        now = datetime.now(timezone.utc)
        p = VARIABLE_PREFIX

        node_outputs = context.node_outputs

        def node_ref(name: str) -> NodeReference:
            if name not in node_outputs:
                raise ExpressionError(f"Referenced node '{name}' has no output", name)
            return NodeReference(list(node_outputs[name]), context.item_index)

        return {
            f"{p}json": item.json_data if item else {},
            f"{p}binary": {k: v.model_dump(by_alias=True) for k, v in item.binary.items()} if item else {},
            f"{p}input": InputAccessor(items, context.item_index),
            f"{p}node": {
                name: {
                    "json": outputs[0].json_data if outputs else {},
                    "items": [o.json_data for o in outputs],
                }
                for name, outputs in node_outputs.items()
            },
            f"{p}node_ref": node_ref,
            f"{p}workflow": {
                "id": context.workflow.id,
                "name": context.workflow.name,
                "active": context.workflow.active,
            },
            f"{p}execution": {
                "id": context.execution.id,
                "mode": context.execution.mode.value,
                "startedAt": context.execution.started_at.isoformat(),
            },
            f"{p}vars": dict(context.variables),
            f"{p}parameters": dict(context.parameters),
            f"{p}now": now,
            f"{p}today": now.replace(hour=0, minute=0, second=0, microsecond=0),
            f"{p}itemIndex": context.item_index,
            f"{p}runIndex": context.run_index,
            "true": True,
            "false": False,
            "null": None,
        }


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


__all__ = [
    "ExpressionEngine",
    "SafeExpressionEvaluator",
    "InputAccessor",
    "NodeReference",
]
