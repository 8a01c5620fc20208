"""Semantic types for entity fields and expressions.

Every field reference and literal in a query carries a semantic type. The
planner uses these to reject incompatible comparisons before any data is
touched, and the SQL backend uses them to coerce driver values back into
Python objects.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Any


class SemanticType(Enum):
    """Semantic type of a field or expression."""

    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    STRING = "string"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    NULL = "null"
    SEQUENCE = "sequence"

    @property
    def is_numeric(self) -> bool:
        return self in _NUMERIC

    @property
    def is_orderable(self) -> bool:
        """Whether values of this type can be ordered and compared with < and >."""
        return self not in (SemanticType.SEQUENCE, SemanticType.NULL)

    def compatible_with(self, other: SemanticType) -> bool:
        """Check whether two types may be compared or joined.

        NULL is compatible with everything, numeric types are mutually
        compatible, and all other types must match exactly.
        """
        if self is SemanticType.NULL or other is SemanticType.NULL:
            return True
        if self.is_numeric and other.is_numeric:
            return True
        return self is other


_NUMERIC = frozenset({SemanticType.INTEGER, SemanticType.FLOAT, SemanticType.DECIMAL})


# Python type -> semantic type. bool must be checked before int.
_PYTHON_TYPES: list[tuple[type, SemanticType]] = [
    (bool, SemanticType.BOOLEAN),
    (int, SemanticType.INTEGER),
    (float, SemanticType.FLOAT),
    (Decimal, SemanticType.DECIMAL),
    (str, SemanticType.STRING),
    (dt.datetime, SemanticType.DATETIME),
    (dt.date, SemanticType.DATE),
]


def type_of_value(value: Any) -> SemanticType | None:
    """Infer the semantic type of a Python literal.

    Returns:
        The semantic type, or None if the value has no SQL-compatible type.
    """
    if value is None:
        return SemanticType.NULL
    for py_type, semantic in _PYTHON_TYPES:
        if isinstance(value, py_type):
            return semantic
    return None


def type_of_annotation(annotation: Any) -> SemanticType | None:
    """Map a Python class annotation to a semantic type."""
    for py_type, semantic in _PYTHON_TYPES:
        if annotation is py_type:
            return semantic
    return None


def numeric_result(left: SemanticType, right: SemanticType) -> SemanticType:
    """Result type of arithmetic between two numeric types."""
    if SemanticType.FLOAT in (left, right):
        return SemanticType.FLOAT
    if SemanticType.DECIMAL in (left, right):
        return SemanticType.DECIMAL
    return SemanticType.INTEGER


def coerce_value(value: Any, semantic_type: SemanticType) -> Any:
    """Coerce a driver value into the Python type for a semantic type.

    Relational drivers (SQLite in particular) return dates as ISO strings,
    booleans as integers, and decimals as floats.
    """
    if value is None:
        return None
    if semantic_type is SemanticType.DATE and isinstance(value, str):
        return dt.date.fromisoformat(value[:10])
    if semantic_type is SemanticType.DATETIME and isinstance(value, str):
        return dt.datetime.fromisoformat(value)
    if semantic_type is SemanticType.BOOLEAN and isinstance(value, int):
        return bool(value)
    if semantic_type is SemanticType.DECIMAL and not isinstance(value, Decimal):
        return Decimal(str(value))
    if semantic_type is SemanticType.FLOAT and isinstance(value, int):
        return float(value)
    return value
