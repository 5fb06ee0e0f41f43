"""
Typed sensor values.

A value is always one of four kinds; each kind maps to exactly one table
suffix, one SQL column type and one converter. The lookup tables below are
keyed by every ValueType member so there is no fallthrough case.
"""

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict

from .errors import ConfigError, TypeConversionFailed

DEFAULT_FLOAT_TOLERANCE = 1e-6


class ValueType(Enum):
    TEXT = "string"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    DOUBLE = "double"

    @property
    def table_suffix(self) -> str:
        return self.value

    @property
    def sql_type(self) -> str:
        return SQL_TYPES[self]

    @classmethod
    def parse(cls, name: str | None) -> "ValueType":
        """
        Accepts the names written into the catalog's ``datatype`` column,
        including the Qt type names older deployments stored there.
        """
        key = (name or "").strip().lower()
        try:
            return TYPE_ALIASES[key]
        except KeyError:
            raise ConfigError(f"Unknown datatype: {name!r}") from None


TYPE_ALIASES: Dict[str, ValueType] = {
    "": ValueType.TEXT,
    "text": ValueType.TEXT,
    "string": ValueType.TEXT,
    "str": ValueType.TEXT,
    "qstring": ValueType.TEXT,
    "bool": ValueType.BOOLEAN,
    "boolean": ValueType.BOOLEAN,
    "int": ValueType.INTEGER,
    "integer": ValueType.INTEGER,
    "qlonglong": ValueType.INTEGER,
    "longlong": ValueType.INTEGER,
    "double": ValueType.DOUBLE,
    "float": ValueType.DOUBLE,
    "real": ValueType.DOUBLE,
}

SQL_TYPES: Dict[ValueType, str] = {
    ValueType.TEXT: "text",
    ValueType.BOOLEAN: "boolean",
    ValueType.INTEGER: "bigint",
    ValueType.DOUBLE: "double precision",
}

_TRUE_WORDS = {"true", "on", "yes", "1"}
_FALSE_WORDS = {"false", "off", "no", "0"}


@dataclass(frozen=True)
class TypedValue:
    type: ValueType
    value: Any

    def __str__(self) -> str:
        return f"{self.value!r}:{self.type.name.lower()}"


# ---------------------------------------------------------------------------
# Converters
# ---------------------------------------------------------------------------


def _to_text(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    return json.dumps(raw, separators=(",", ":"))


def _to_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        if raw in (0, 1):
            return bool(raw)
        raise ValueError(f"{raw!r} is not 0 or 1")
    if isinstance(raw, str):
        word = raw.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ValueError(f"{raw!r} is not a boolean")


def _to_integer(raw: Any) -> int:
    if isinstance(raw, bool):
        raise ValueError("boolean is not an integer")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        if raw.is_integer():
            return int(raw)
        raise ValueError(f"{raw!r} has a fractional part")
    if isinstance(raw, str):
        return int(raw.strip())
    raise ValueError(f"{type(raw).__name__} is not an integer")


def _to_double(raw: Any) -> float:
    if isinstance(raw, bool):
        raise ValueError("boolean is not a number")
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        return float(raw.strip())
    raise ValueError(f"{type(raw).__name__} is not a number")


CONVERTERS: Dict[ValueType, Callable[[Any], Any]] = {
    ValueType.TEXT: _to_text,
    ValueType.BOOLEAN: _to_boolean,
    ValueType.INTEGER: _to_integer,
    ValueType.DOUBLE: _to_double,
}


def convert(raw: Any, value_type: ValueType) -> TypedValue:
    """Convert a decoded JSON value (or payload text) to ``value_type``."""
    try:
        return TypedValue(value_type, CONVERTERS[value_type](raw))
    except (TypeError, ValueError, OverflowError) as e:
        raise TypeConversionFailed(
            f"Cannot convert {raw!r} to {value_type.name.lower()}: {e}"
        ) from e


def values_equal(
    a: TypedValue,
    b: TypedValue,
    rel_tol: float = DEFAULT_FLOAT_TOLERANCE,
) -> bool:
    if a.type is not b.type:
        return False
    if a.type is ValueType.DOUBLE:
        return math.isclose(a.value, b.value, rel_tol=rel_tol, abs_tol=1e-12)
    return a.value == b.value
