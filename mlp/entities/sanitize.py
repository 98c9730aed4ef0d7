"""Attribute sanitizers, one pure function per semantic type.

Every write into an entity instance goes through sanitize(), so create,
update and move all see the same normalized values.
"""

import json
import math
import re
from collections.abc import Callable
from typing import Any

from mlp.models import SemanticType
from mlp.utils.json import is_json_text
from mlp.utils.text import strip_tags

_INT_PREFIX = re.compile(r"^\s*[+-]?\d+")
_FLOAT_PREFIX = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def sanitize_boolean(value: Any) -> bool:
    return bool(value)


def sanitize_text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return strip_tags(str(value))


def sanitize_integer(value: Any) -> int | None:
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return int(value)
    if isinstance(value, str):
        match = _INT_PREFIX.match(value)
        return int(match.group(0)) if match else None
    return None


def sanitize_float(value: Any) -> float | None:
    if isinstance(value, (int, float)):
        value = float(value)
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        match = _FLOAT_PREFIX.match(value)
        return float(match.group(0)) if match else None
    return None


def sanitize_json(value: Any) -> str | None:
    if value is None:
        return None
    if is_json_text(value):
        return value
    return json.dumps(value)


def sanitize_composite(value: Any) -> str | None:
    """Tuples serialize as '(a,b,c)', the text form of a composite column."""
    if isinstance(value, (list, tuple)):
        return "(" + ",".join("" if v is None else str(v) for v in value) + ")"
    if isinstance(value, str) and value.startswith("(") and value.endswith(")"):
        return value
    return None


def sanitize_default(value: Any) -> Any:
    return None if value == "" else value


_SANITIZERS: dict[SemanticType, Callable[[Any], Any]] = {
    SemanticType.BOOLEAN: sanitize_boolean,
    SemanticType.TEXT: sanitize_text,
    SemanticType.INTEGER: sanitize_integer,
    SemanticType.FLOAT: sanitize_float,
    SemanticType.JSON: sanitize_json,
    SemanticType.COMPOSITE: sanitize_composite,
    SemanticType.DEFAULT: sanitize_default,
}


def sanitize(value: Any, semantic_type: SemanticType = SemanticType.DEFAULT) -> Any:
    """Normalize a value for storage according to its semantic type."""
    return _SANITIZERS[semantic_type](value)
