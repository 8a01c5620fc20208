"""In-process evaluation of bound expressions.

Evaluation follows SQL three-valued logic so that in-memory results agree
with a relational backend: comparisons and arithmetic involving None yield
None (unknown), AND/OR propagate unknown, and a filter keeps only rows for
which the predicate is exactly True.

A row frame maps binding names to values: an entity instance (an object or
a mapping) for entity bindings, a plain value for value bindings, and for
grouped rows ``Key`` plus ``Items`` (the list of member frames).
"""

from __future__ import annotations

import re
from decimal import Decimal
from functools import lru_cache
from typing import Any, Callable, Mapping, Sequence

from linq_engine.domain.entities.entity import RelationDescriptor
from linq_engine.domain.entities.expression import (
    AggregateCall,
    Arithmetic,
    BoundField,
    ClientCall,
    Comparison,
    Expr,
    Function,
    IsNull,
    Like,
    Literal,
    Logical,
)
from linq_engine.domain.errors import EmptyAggregate, QueryExecutionError, SourceError
from linq_engine.domain.value_objects import (
    AggregateFunction,
    ArithmeticOp,
    ComparisonOp,
    LogicalOp,
    ScalarFunction,
)

Frame = Mapping[str, Any]
Navigator = Callable[[Any, RelationDescriptor], Any]

ITEMS = "Items"


def read_member(instance: Any, name: str) -> Any:
    """Read a field or relation member from an entity instance.

    Raises:
        SourceError: If the instance has no such member.
    """
    if isinstance(instance, Mapping):
        try:
            return instance[name]
        except KeyError:
            raise SourceError(f"Source row has no member '{name}'") from None
    try:
        return getattr(instance, name)
    except AttributeError:
        raise SourceError(
            f"Source object {type(instance).__name__} has no member '{name}'"
        ) from None


def has_member(instance: Any, name: str) -> bool:
    if isinstance(instance, Mapping):
        return name in instance
    return hasattr(instance, name)


@lru_cache(maxsize=256)
def like_regex(pattern: str) -> re.Pattern[str]:
    """Compile a SQL LIKE pattern (``%`` any run, ``_`` one character)."""
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile(f"^{''.join(parts)}$", re.IGNORECASE | re.DOTALL)


def compare(left: Any, op: ComparisonOp, right: Any) -> bool | None:
    """Compare two values; None on either side makes the result unknown."""
    if left is None or right is None:
        return None
    if op == ComparisonOp.EQ:
        return left == right
    elif op == ComparisonOp.NE:
        return left != right
    elif op == ComparisonOp.LT:
        return left < right
    elif op == ComparisonOp.LE:
        return left <= right
    elif op == ComparisonOp.GT:
        return left > right
    elif op == ComparisonOp.GE:
        return left >= right
    raise QueryExecutionError(f"Unsupported comparison operator: {op}")


def compute_aggregate(
    function: AggregateFunction,
    values: Sequence[Any],
    alias: str | None = None,
    *,
    row_count: int | None = None,
) -> Any:
    """Aggregate a column of values.

    Nulls are ignored. COUNT and SUM of no values are 0; MIN, MAX and
    AVERAGE of no values raise EmptyAggregate.

    Args:
        function: Aggregate function.
        values: Operand values, one per row (may contain None).
        alias: Output name, used in error messages.
        row_count: For COUNT(*), the number of rows.
    """
    if function == AggregateFunction.COUNT:
        if row_count is not None:
            return row_count
        return sum(1 for v in values if v is not None)

    present = [v for v in values if v is not None]
    if function == AggregateFunction.SUM:
        if not present:
            return 0
        total = present[0]
        for v in present[1:]:
            total = total + v
        return total
    if not present:
        raise EmptyAggregate(function.value, alias)
    if function == AggregateFunction.MIN:
        return min(present)
    if function == AggregateFunction.MAX:
        return max(present)
    if function == AggregateFunction.AVERAGE:
        total = sum(present, Decimal(0) if isinstance(present[0], Decimal) else 0)
        return float(total) / len(present)
    raise QueryExecutionError(f"Unsupported aggregate: {function}")


class ExpressionEvaluator:
    """Evaluates bound expressions against row frames.

    Args:
        navigate: Resolves a to-one relation for an entity instance that
            does not carry the related object itself (e.g. by foreign-key
            lookup). Without it, relations must be present as members.
    """

    def __init__(self, navigate: Navigator | None = None) -> None:
        self._navigate = navigate

    def evaluate(self, expr: Expr, frame: Frame, outer: Sequence[Frame] = ()) -> Any:
        if isinstance(expr, BoundField):
            return self._field(expr, frame, outer)
        elif isinstance(expr, Literal):
            return expr.value
        elif isinstance(expr, Comparison):
            left = self.evaluate(expr.left, frame, outer)
            right = self.evaluate(expr.right, frame, outer)
            return compare(left, expr.op, right)
        elif isinstance(expr, Logical):
            return self._logical(expr, frame, outer)
        elif isinstance(expr, IsNull):
            value = self.evaluate(expr.operand, frame, outer)
            return (value is not None) if expr.negated else (value is None)
        elif isinstance(expr, Like):
            value = self.evaluate(expr.operand, frame, outer)
            if value is None:
                return None
            return like_regex(expr.pattern).match(str(value)) is not None
        elif isinstance(expr, Arithmetic):
            return self._arithmetic(expr, frame, outer)
        elif isinstance(expr, Function):
            value = self.evaluate(expr.operand, frame, outer)
            if value is None:
                return None
            if expr.function == ScalarFunction.LOWER:
                return str(value).lower()
            if expr.function == ScalarFunction.UPPER:
                return str(value).upper()
            return len(str(value))
        elif isinstance(expr, AggregateCall):
            return self.aggregate(expr.function, expr.operand, frame[ITEMS], outer)
        elif isinstance(expr, ClientCall):
            args = [self.evaluate(a, frame, outer) for a in expr.args]
            try:
                return expr.fn(*args)
            except Exception as e:
                raise QueryExecutionError(
                    f"Client function {expr.display_name} failed: {e}"
                ) from e
        raise QueryExecutionError(
            f"Cannot evaluate unbound expression {expr.render()}"
        )

    def truth(self, expr: Expr, frame: Frame, outer: Sequence[Frame] = ()) -> bool:
        """Evaluate a predicate; unknown counts as false."""
        return self.evaluate(expr, frame, outer) is True

    def aggregate(
        self,
        function: AggregateFunction,
        operand: Expr | None,
        frames: Sequence[Frame],
        outer: Sequence[Frame] = (),
        alias: str | None = None,
    ) -> Any:
        """Aggregate an operand over a sequence of frames."""
        if operand is None:
            return compute_aggregate(function, (), alias, row_count=len(frames))
        values = [self.evaluate(operand, f, outer) for f in frames]
        return compute_aggregate(function, values, alias)

    def navigate(self, instance: Any, relation: RelationDescriptor) -> Any:
        """Follow a to-one relation from an entity instance."""
        if instance is None:
            return None
        if has_member(instance, relation.name):
            return read_member(instance, relation.name)
        if self._navigate is None:
            raise SourceError(
                f"Cannot navigate '{relation.name}': the source row does not carry it"
            )
        return self._navigate(instance, relation)

    def _field(self, expr: BoundField, frame: Frame, outer: Sequence[Frame]) -> Any:
        if expr.depth:
            try:
                frame = outer[expr.depth - 1]
            except IndexError:
                raise QueryExecutionError(
                    f"Outer reference {expr.render()} has no enclosing row"
                ) from None
        value = frame[expr.binding]
        if not expr.path:
            return value
        for relation in expr.relations:
            value = self.navigate(value, relation)
            if value is None:
                return None
        if value is None:
            return None
        return read_member(value, expr.path[-1])

    def _logical(self, expr: Logical, frame: Frame, outer: Sequence[Frame]) -> bool | None:
        if expr.op == LogicalOp.NOT:
            value = self.evaluate(expr.operands[0], frame, outer)
            return None if value is None else not value
        unknown = False
        if expr.op == LogicalOp.AND:
            for operand in expr.operands:
                value = self.evaluate(operand, frame, outer)
                if value is False:
                    return False
                if value is None:
                    unknown = True
            return None if unknown else True
        for operand in expr.operands:
            value = self.evaluate(operand, frame, outer)
            if value is True:
                return True
            if value is None:
                unknown = True
        return None if unknown else False

    def _arithmetic(self, expr: Arithmetic, frame: Frame, outer: Sequence[Frame]) -> Any:
        left = self.evaluate(expr.left, frame, outer)
        right = self.evaluate(expr.right, frame, outer)
        if left is None or right is None:
            return None
        if isinstance(left, Decimal) and isinstance(right, float):
            right = Decimal(str(right))
        elif isinstance(right, Decimal) and isinstance(left, float):
            left = Decimal(str(left))
        if expr.op == ArithmeticOp.ADD:
            return left + right
        if expr.op == ArithmeticOp.SUB:
            return left - right
        if expr.op == ArithmeticOp.MUL:
            return left * right
        if right == 0:
            return None
        return float(left) / float(right)
