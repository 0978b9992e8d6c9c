"""
Built-in functions available inside expressions.

    {{ upper($json.name) }}
    {{ dateAdd($now, 3, "days") }}
    {{ round(average(pluck($input.all(), "price")), 2) }}
"""

from __future__ import annotations

import hashlib
import json
import math
import random
import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta


_UNITS = {
    "year": "years", "years": "years",
    "month": "months", "months": "months",
    "week": "weeks", "weeks": "weeks",
    "day": "days", "days": "days",
    "hour": "hours", "hours": "hours",
    "minute": "minutes", "minutes": "minutes",
    "second": "seconds", "seconds": "seconds",
}

_SECONDS_PER_UNIT = {
    "weeks": 7 * 86400,
    "days": 86400,
    "hours": 3600,
    "minutes": 60,
    "seconds": 1,
}


def to_datetime(value: Any) -> datetime:
    """
    Coerce strings, timestamps and dates into an aware datetime.

    Numbers are epoch milliseconds, the unit of JSON timestamps such as
    ``Date.now()``.
    """
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        result = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        result = date_parser.parse(value)
    else:
        raise ValueError(f"Cannot interpret {value!r} as a date")
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


def _unit(unit: str) -> str:
    try:
        return _UNITS[unit.lower()]
    except KeyError:
        raise ValueError(f"Unknown date unit: {unit}") from None


def date_format(value: Any, fmt: str = "%Y-%m-%d") -> str:
    return to_datetime(value).strftime(fmt)


def date_add(value: Any, amount: float, unit: str = "days") -> datetime:
    unit = _unit(unit)
    if unit in ("years", "months"):
        return to_datetime(value) + relativedelta(**{unit: int(amount)})
    return to_datetime(value) + relativedelta(**{unit: amount})


def date_diff(first: Any, second: Any, unit: str = "days") -> float:
    """``second - first`` expressed in ``unit``."""
    unit = _unit(unit)
    start, end = to_datetime(first), to_datetime(second)
    if unit in ("years", "months"):
        delta = relativedelta(end, start)
        months = delta.years * 12 + delta.months
        return months / 12 if unit == "years" else months
    return (end - start).total_seconds() / _SECONDS_PER_UNIT[unit]


def _length(value: Any) -> int:
    if value is None:
        return 0
    return len(value)


def _round(value: float, decimals: int = 0) -> float:
    factor = 10 ** decimals
    rounded = math.floor(float(value) * factor + 0.5) / factor
    return int(rounded) if decimals == 0 else rounded


def _values(values: tuple) -> List[Any]:
    if len(values) == 1 and isinstance(values[0], (list, tuple)):
        return list(values[0])
    return list(values)


def _min(*values: Any) -> Any:
    return min(_values(values))


def _max(*values: Any) -> Any:
    return max(_values(values))


def _first(values: Any) -> Any:
    return values[0] if values else None


def _last(values: Any) -> Any:
    return values[-1] if values else None


def _average(values: List[float]) -> float:
    if not values:
        return 0
    return sum(values) / len(values)


def _unique(values: List[Any]) -> List[Any]:
    seen: List[Any] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def _sort(values: List[Any], reverse: bool = False) -> List[Any]:
    return sorted(values, reverse=reverse)


def _pluck(values: List[Dict[str, Any]], field: str) -> List[Any]:
    return [v.get(field) if isinstance(v, dict) else None for v in values]


def _substring(value: str, start: int, end: Optional[int] = None) -> str:
    return str(value)[start:end]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return False


def _hash(value: Any) -> str:
    if not isinstance(value, str):
        value = json.dumps(value, sort_keys=True, default=str)
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _random_int(low: int = 0, high: int = 100) -> int:
    return random.randint(int(low), int(high))


def _random_float(low: float = 0.0, high: float = 1.0) -> float:
    return random.uniform(low, high)


BUILTIN_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    # String
    "length": _length,
    "upper": lambda s: str(s).upper(),
    "lower": lambda s: str(s).lower(),
    "trim": lambda s: str(s).strip(),
    "split": lambda s, sep=None: str(s).split(sep),
    "replace": lambda s, old, new: str(s).replace(old, new),
    "substring": _substring,
    # Math
    "round": _round,
    "floor": lambda x: math.floor(x),
    "ceil": lambda x: math.ceil(x),
    "abs": abs,
    "min": _min,
    "max": _max,
    # Date
    "now": lambda: datetime.now(timezone.utc),
    "dateFormat": date_format,
    "dateAdd": date_add,
    "dateDiff": date_diff,
    # Array
    "first": _first,
    "last": _last,
    "sum": lambda values: sum(values),
    "average": _average,
    "unique": _unique,
    "sort": _sort,
    "pluck": _pluck,
    # Object
    "keys": lambda obj: list(obj.keys()),
    "values": lambda obj: list(obj.values()),
    # Utility
    "isEmpty": _is_empty,
    "isNull": lambda value: value is None,
    "hash": _hash,
    "uuid": lambda: str(uuid.uuid4()),
    "randomInt": _random_int,
    "randomFloat": _random_float,
    "jsonParse": json.loads,
    "jsonStringify": lambda obj: json.dumps(obj, default=str),
    # Conversions
    "len": _length,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "list": list,
    "dict": dict,
}


__all__ = ["BUILTIN_FUNCTIONS", "to_datetime", "date_format", "date_add", "date_diff"]
