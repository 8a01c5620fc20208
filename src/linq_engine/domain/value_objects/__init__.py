"""Value objects for the query engine domain.

Value objects are immutable types that represent domain concepts.
They have no identity - two value objects with the same attributes are equal.

Exports:
    Types:
        - SemanticType: Semantic type of a field or expression
        - type_of_value, type_of_annotation: Python -> semantic type mapping
        - coerce_value: Driver value -> Python value for a semantic type

    Operators:
        - ComparisonOp, LogicalOp, ArithmeticOp: Expression operators
        - ScalarFunction, AggregateFunction: Built-in functions
        - SortDirection, JoinKind, RelationKind: Query and schema options
"""

from linq_engine.domain.value_objects.operators import (
    AggregateFunction,
    ArithmeticOp,
    ComparisonOp,
    JoinKind,
    LogicalOp,
    RelationKind,
    ScalarFunction,
    SortDirection,
)
from linq_engine.domain.value_objects.types import (
    SemanticType,
    coerce_value,
    numeric_result,
    type_of_annotation,
    type_of_value,
)

__all__ = [
    # Types
    "SemanticType",
    "type_of_value",
    "type_of_annotation",
    "numeric_result",
    "coerce_value",
    # Operators
    "ComparisonOp",
    "LogicalOp",
    "ArithmeticOp",
    "ScalarFunction",
    "AggregateFunction",
    "SortDirection",
    "JoinKind",
    "RelationKind",
]
