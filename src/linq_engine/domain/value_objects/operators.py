"""Operator and option enumerations shared by expressions, plans and backends."""

from __future__ import annotations

from enum import Enum


class ComparisonOp(Enum):
    """Comparison operators for predicates."""

    EQ = "="
    NE = "<>"
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="

    @property
    def is_equality(self) -> bool:
        return self in (ComparisonOp.EQ, ComparisonOp.NE)


class LogicalOp(Enum):
    """Logical operators for combining predicates."""

    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class ArithmeticOp(Enum):
    """Arithmetic operators for derived values."""

    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"


class ScalarFunction(Enum):
    """Built-in scalar functions both backends can evaluate."""

    LOWER = "LOWER"
    UPPER = "UPPER"
    LENGTH = "LENGTH"


class AggregateFunction(Enum):
    """Aggregate functions.

    COUNT and SUM are defined as 0 over empty input; MIN, MAX and AVERAGE
    have no value for empty input.
    """

    COUNT = "count"
    MIN = "min"
    MAX = "max"
    SUM = "sum"
    AVERAGE = "average"

    @property
    def default_alias(self) -> str:
        return self.value.capitalize()

    @property
    def defined_on_empty(self) -> bool:
        return self in (AggregateFunction.COUNT, AggregateFunction.SUM)


class SortDirection(Enum):
    """Ordering direction."""

    ASCENDING = "asc"
    DESCENDING = "desc"


class JoinKind(Enum):
    """Join semantics."""

    INNER = "inner"
    LEFT = "left"


class RelationKind(Enum):
    """Cardinality of a relation between entities."""

    TO_ONE = "to_one"
    TO_MANY = "to_many"
