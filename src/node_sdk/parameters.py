"""
Node parameter schema.

Parameters use a closed set of kinds: string, number, boolean, enum and
json. Static values are checked against the schema when a graph is saved
and again before a node runs; values produced by expressions are checked
after resolution.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


EXPRESSION_PATTERN = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)


class ParameterKind(str, Enum):
    """Closed set of parameter kinds."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ENUM = "enum"
    JSON = "json"


class NodeParameter(BaseModel):
    """
    A single parameter in the node's properties.

    Nodes declare parameters as dicts in ``properties["parameters"]``;
    they are parsed into this model by the registry.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str = Field(..., description="Parameter key (internal name)")
    display_name: str = Field("", alias="displayName", description="Human-readable label")
    kind: ParameterKind = Field(..., alias="type", description="Parameter kind")
    default: Any = Field(None, description="Default value")
    required: bool = Field(False, description="Is parameter required?")
    description: Optional[str] = Field(None, description="Help text")
    options: List[Any] = Field(
        default_factory=list,
        description="Allowed values for enum parameters",
    )

    @model_validator(mode="after")
    def _enum_needs_options(self) -> "NodeParameter":
        if self.kind == ParameterKind.ENUM and not self.options:
            raise ValueError(f"enum parameter '{self.name}' declares no options")
        return self

    @property
    def option_values(self) -> List[Any]:
        """Allowed enum values (options may be plain values or {name, value})."""
        values = []
        for option in self.options:
            if isinstance(option, dict):
                values.append(option.get("value"))
            else:
                values.append(option)
        return values


def is_expression(value: Any) -> bool:
    """True when ``value`` is a string containing a {{ }} expression."""
    return isinstance(value, str) and EXPRESSION_PATTERN.search(value) is not None


def check_parameter_value(parameter: NodeParameter, value: Any) -> Optional[str]:
    """
    Check one value against its parameter declaration.

    Returns:
        Error message, or None when the value is acceptable.
    """
    if value is None:
        return None

    kind = parameter.kind
    if kind == ParameterKind.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return f"Parameter {parameter.name} must be a number"
    elif kind == ParameterKind.BOOLEAN:
        if not isinstance(value, bool):
            return f"Parameter {parameter.name} must be a boolean"
    elif kind == ParameterKind.STRING:
        if not isinstance(value, str):
            return f"Parameter {parameter.name} must be a string"
    elif kind == ParameterKind.ENUM:
        allowed = parameter.option_values
        if value not in allowed:
            return (
                f"Parameter {parameter.name} must be one of: "
                f"{', '.join(str(v) for v in allowed)}"
            )
    elif kind == ParameterKind.JSON:
        if isinstance(value, str):
            try:
                json.loads(value)
            except ValueError:
                return f"Parameter {parameter.name} must be valid JSON"
    return None


def validate_parameters(
    schema: List[NodeParameter],
    parameters: Dict[str, Any],
    check_expressions: bool = False,
) -> List[str]:
    """
    Validate parameters against a schema.

    Expression strings are only checked for presence unless
    ``check_expressions`` is set (used after resolution).

    Returns:
        List of error messages (empty when valid)
    """
    errors: List[str] = []
    for parameter in schema:
        value = parameters.get(parameter.name)
        if parameter.required and (value is None or value == ""):
            errors.append(f"Missing required parameter: {parameter.name}")
            continue
        if not check_expressions and is_expression(value):
            continue
        error = check_parameter_value(parameter, value)
        if error:
            errors.append(error)
    return errors


__all__ = [
    "EXPRESSION_PATTERN",
    "ParameterKind",
    "NodeParameter",
    "is_expression",
    "check_parameter_value",
    "validate_parameters",
]
