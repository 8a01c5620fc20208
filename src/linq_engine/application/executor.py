"""Query Executor using Volcano iterator model.

This module interprets logical plans in-process using a pull-based
iterator model.

The Volcano model:
    - Each operator is an iterator with open(), next(), close() methods
    - Operators pull rows from their children on demand
    - Enables pipelining without materializing intermediate results

SORT, GROUP and whole-input AGGREGATE buffer their entire input before
producing output; JOIN buffers its right side into a hash table and streams
the left. Every other operator streams one row at a time.

Rows flowing between operators are frames: dicts mapping binding names to
entity instances or values (see ``domain.services.evaluator``). Frames are
turned into ResultRows only at the root.

References:
    - Graefe, "Volcano" (1994)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Sequence

from linq_engine.domain.entities.entity import EntityDescriptor, RelationDescriptor
from linq_engine.domain.entities.expression import Expr
from linq_engine.domain.entities.plan import (
    AggregateStep,
    BindingKind,
    FilterStep,
    GroupStep,
    JoinStep,
    LetStep,
    LimitStep,
    LogicalPlan,
    OrderStep,
    PlanStep,
    ProjectStep,
    RowShape,
    ScanStep,
)
from linq_engine.domain.entities.row import ResultRow
from linq_engine.domain.errors import EmptyAggregate, QueryError, QueryExecutionError, SourceError
from linq_engine.domain.services.evaluator import ExpressionEvaluator, Frame, read_member
from linq_engine.domain.services.registry import EntityRegistry
from linq_engine.domain.value_objects import JoinKind, SemanticType, SortDirection
from linq_engine.ports.outbound.data_source import SourceConnection

Outer = Sequence[Frame]

_END = object()


def _no_check() -> None:
    return None


@dataclass
class ExecutionContext:
    """Per-execution state shared by every operator of one plan.

    Attributes:
        connection: Open data-source connection
        evaluator: Expression evaluator bound to this connection
        check: Called between rows; raises to cancel or time out
        scan_cache: Entity scans already read by correlated sub-plans
    """

    connection: SourceConnection
    evaluator: ExpressionEvaluator
    check: Callable[[], None] = _no_check
    scan_cache: dict[str, list[Any]] = field(default_factory=dict)


class Operator(ABC):
    """Base class for executor operators (Volcano model)."""

    @abstractmethod
    def open(self) -> None:
        """Initialize the operator."""
        pass

    @abstractmethod
    def next(self) -> Frame | None:
        """Return the next frame or None if exhausted."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Clean up resources."""
        pass

    def __iter__(self) -> Iterator[Frame]:
        """Allow iteration over operator results."""
        self.open()
        try:
            while True:
                row = self.next()
                if row is None:
                    break
                yield row
        finally:
            self.close()


def _drain(op: Operator) -> list[Frame]:
    rows = []
    while True:
        row = op.next()
        if row is None:
            return rows
        rows.append(row)


class SeqScanOperator(Operator):
    """Sequential scan over every instance of an entity.

    Inside a correlated sub-plan the scan is read once per execution and
    replayed from the context's cache for every outer row.
    """

    def __init__(
        self,
        entity: EntityDescriptor,
        alias: str,
        ctx: ExecutionContext,
        cached: bool = False,
    ) -> None:
        self._entity = entity
        self._alias = alias
        self._ctx = ctx
        self._cached = cached
        self._rows: Iterator[Any] | None = None

    def open(self) -> None:
        try:
            if self._cached:
                rows = self._ctx.scan_cache.get(self._entity.name)
                if rows is None:
                    rows = list(self._ctx.connection.scan(self._entity))
                    self._ctx.scan_cache[self._entity.name] = rows
                self._rows = iter(rows)
            else:
                self._rows = iter(self._ctx.connection.scan(self._entity))
        except QueryError:
            raise
        except Exception as e:
            raise SourceError(f"Failed to scan '{self._entity.name}': {e}") from e

    def next(self) -> Frame | None:
        self._ctx.check()
        assert self._rows is not None
        try:
            instance = next(self._rows, _END)
        except QueryError:
            raise
        except Exception as e:
            raise SourceError(f"Failed to read '{self._entity.name}': {e}") from e
        if instance is _END:
            return None
        if instance is None:
            raise SourceError(f"'{self._entity.name}' yielded a null instance")
        return {self._alias: instance}

    def close(self) -> None:
        self._rows = None


class FilterOperator(Operator):
    """Filter operator that keeps rows whose predicate is true."""

    def __init__(self, child: Operator, predicate: Expr, ctx: ExecutionContext, outer: Outer) -> None:
        self._child = child
        self._predicate = predicate
        self._ctx = ctx
        self._outer = outer

    def open(self) -> None:
        self._child.open()

    def next(self) -> Frame | None:
        while True:
            row = self._child.next()
            if row is None:
                return None
            if self._ctx.evaluator.truth(self._predicate, row, self._outer):
                return row

    def close(self) -> None:
        self._child.close()


class ProjectOperator(Operator):
    """Project operator that computes named output values."""

    def __init__(
        self,
        child: Operator,
        items: tuple[tuple[str, Expr], ...],
        ctx: ExecutionContext,
        outer: Outer,
    ) -> None:
        self._child = child
        self._items = items
        self._ctx = ctx
        self._outer = outer

    def open(self) -> None:
        self._child.open()

    def next(self) -> Frame | None:
        row = self._child.next()
        if row is None:
            return None
        if not self._items:
            return row
        evaluate = self._ctx.evaluator.evaluate
        return {name: evaluate(expr, row, self._outer) for name, expr in self._items}

    def close(self) -> None:
        self._child.close()


def sort_key(value: Any) -> tuple[int, Any]:
    """Sort key placing None before every value."""
    if value is None:
        return (0, 0)
    return (1, value)


class SortOperator(Operator):
    """Stable sort operator.

    Sorting is done in one stable pass per key, least significant key
    first, so rows with equal keys keep their input order. None sorts first
    in ascending order and last in descending order.
    """

    def __init__(
        self,
        child: Operator,
        keys: tuple[tuple[Expr, SortDirection], ...],
        ctx: ExecutionContext,
        outer: Outer,
    ) -> None:
        self._child = child
        self._keys = keys
        self._ctx = ctx
        self._outer = outer
        self._sorted_rows: list[Frame] = []
        self._current_idx = 0

    def open(self) -> None:
        self._child.open()
        rows = _drain(self._child)
        evaluate = self._ctx.evaluator.evaluate
        for expr, direction in reversed(self._keys):
            rows.sort(
                key=lambda row: sort_key(evaluate(expr, row, self._outer)),
                reverse=direction == SortDirection.DESCENDING,
            )
        self._sorted_rows = rows
        self._current_idx = 0

    def next(self) -> Frame | None:
        if self._current_idx >= len(self._sorted_rows):
            return None
        row = self._sorted_rows[self._current_idx]
        self._current_idx += 1
        return row

    def close(self) -> None:
        self._child.close()
        self._sorted_rows = []
        self._current_idx = 0


class LimitOperator(Operator):
    """Limit operator that skips ``offset`` rows and returns at most ``limit``."""

    def __init__(self, child: Operator, limit: int | None, offset: int = 0) -> None:
        self._child = child
        self._limit = limit
        self._offset = offset
        self._returned = 0
        self._offset_done = False

    def open(self) -> None:
        self._child.open()
        self._returned = 0
        self._offset_done = False

    def next(self) -> Frame | None:
        if not self._offset_done:
            self._offset_done = True
            for _ in range(self._offset):
                if self._child.next() is None:
                    return None

        if self._limit is not None and self._returned >= self._limit:
            return None
        row = self._child.next()
        if row is None:
            return None
        self._returned += 1
        return row

    def close(self) -> None:
        self._child.close()


class HashJoinOperator(Operator):
    """Equi-join: builds a hash table on the right input, probes with the left.

    Output follows left input order; matches for one left row follow right
    input order. Keys containing None never match. A LEFT join emits an
    unmatched left row once, with every right binding set to None.
    """

    def __init__(
        self,
        left: Operator,
        right: Operator,
        left_keys: tuple[Expr, ...],
        right_keys: tuple[Expr, ...],
        join_kind: JoinKind,
        right_bindings: tuple[str, ...],
        ctx: ExecutionContext,
        outer: Outer,
    ) -> None:
        self._left = left
        self._right = right
        self._left_keys = left_keys
        self._right_keys = right_keys
        self._join_kind = join_kind
        self._right_bindings = right_bindings
        self._ctx = ctx
        self._outer = outer
        self._table: dict[tuple[Any, ...], list[Frame]] = {}
        self._pending: list[Frame] = []

    def _key(self, keys: tuple[Expr, ...], row: Frame) -> tuple[Any, ...] | None:
        values = tuple(self._ctx.evaluator.evaluate(k, row, self._outer) for k in keys)
        if any(v is None for v in values):
            return None
        return values

    def open(self) -> None:
        self._right.open()
        self._table = {}
        for row in _drain(self._right):
            key = self._key(self._right_keys, row)
            if key is not None:
                self._table.setdefault(key, []).append(row)
        self._right.close()
        self._left.open()
        self._pending = []

    def next(self) -> Frame | None:
        while not self._pending:
            left = self._left.next()
            if left is None:
                return None
            key = self._key(self._left_keys, left)
            matches = self._table.get(key, []) if key is not None else []
            if matches:
                self._pending = [{**left, **right} for right in matches]
            elif self._join_kind == JoinKind.LEFT:
                return {**left, **{name: None for name in self._right_bindings}}
        return self._pending.pop(0)

    def close(self) -> None:
        self._left.close()
        self._table = {}
        self._pending = []


class GroupOperator(Operator):
    """Partition rows by key, groups in order of first appearance."""

    def __init__(self, child: Operator, key: Expr, ctx: ExecutionContext, outer: Outer) -> None:
        self._child = child
        self._key = key
        self._ctx = ctx
        self._outer = outer
        self._groups: list[Frame] = []
        self._current_idx = 0

    def open(self) -> None:
        self._child.open()
        groups: dict[Any, list[Frame]] = {}
        for row in _drain(self._child):
            key = self._ctx.evaluator.evaluate(self._key, row, self._outer)
            groups.setdefault(key, []).append(row)
        self._groups = [{"Key": key, "Items": items} for key, items in groups.items()]
        self._current_idx = 0

    def next(self) -> Frame | None:
        if self._current_idx >= len(self._groups):
            return None
        group = self._groups[self._current_idx]
        self._current_idx += 1
        return group

    def close(self) -> None:
        self._child.close()
        self._groups = []


class AggregateOperator(Operator):
    """Aggregate the whole input into one row, or each group into one row."""

    def __init__(self, child: Operator, step: AggregateStep, ctx: ExecutionContext, outer: Outer) -> None:
        self._child = child
        self._step = step
        self._ctx = ctx
        self._outer = outer
        self._done = False

    def open(self) -> None:
        self._child.open()
        self._done = False

    def next(self) -> Frame | None:
        step = self._step
        evaluator = self._ctx.evaluator
        if step.per_group:
            group = self._child.next()
            if group is None:
                return None
            value = evaluator.aggregate(step.function, step.operand, group["Items"], self._outer, step.alias)
            return {"Key": group["Key"], step.alias: value}
        if self._done:
            return None
        self._done = True
        rows = _drain(self._child)
        value = evaluator.aggregate(step.function, step.operand, rows, self._outer, step.alias)
        return {step.alias: value}

    def close(self) -> None:
        self._child.close()


class LetOperator(Operator):
    """Bind a correlated sub-plan's result to every input row.

    The sub-plan runs once per input row, with that row as its outer frame.
    A scalar sub-plan binds its single aggregate value (None when a MIN,
    MAX or AVERAGE has no input); otherwise the sub-plan's rows are bound
    as a tuple of ResultRows.
    """

    def __init__(
        self,
        child: Operator,
        step: LetStep,
        executor: QueryExecutor,
        ctx: ExecutionContext,
        outer: Outer,
    ) -> None:
        self._child = child
        self._step = step
        self._executor = executor
        self._ctx = ctx
        self._outer = outer

    def open(self) -> None:
        self._child.open()

    def next(self) -> Frame | None:
        row = self._child.next()
        if row is None:
            return None
        step = self._step
        outer = (row, *self._outer)
        op = self._executor.build(step.subplan, self._ctx, outer)
        if step.scalar:
            try:
                frames = list(op)
            except EmptyAggregate:
                value = None
            else:
                value = frames[0][step.subplan.root.shape.bindings[0].name]
        else:
            shape = step.subplan.shape
            value = tuple(to_row(frame, shape) for frame in op)
        return {**row, step.name: value}

    def close(self) -> None:
        self._child.close()


def to_row(frame: Frame, shape: RowShape) -> ResultRow:
    """Convert an execution frame into a ResultRow of the given shape."""
    columns = shape.columns()
    values = []
    for column in columns:
        binding = shape.get(column.binding)
        assert binding is not None
        if binding.kind == BindingKind.ENTITY:
            instance = frame[column.binding]
            assert column.field is not None
            values.append(None if instance is None else read_member(instance, column.field))
        elif column.type == SemanticType.SEQUENCE and shape.element is not None and column.name == "Items":
            values.append(tuple(to_row(item, shape.element) for item in frame[column.name]))
        else:
            values.append(frame[column.name])
    return ResultRow([c.name for c in columns], values)


class QueryExecutor:
    """Executes logical plans in-process.

    The executor converts logical plans into physical operator trees and
    executes them using the Volcano iterator model. It holds no per-query
    state, so one instance serves concurrent queries.
    """

    def __init__(self, registry: EntityRegistry) -> None:
        self._registry = registry

    def context(self, connection: SourceConnection, check: Callable[[], None] = _no_check) -> ExecutionContext:
        """Create the execution context for one run over a connection."""

        def navigate(instance: Any, relation: RelationDescriptor) -> Any:
            target = self._registry.get(relation.target)
            key = read_member(instance, relation.foreign_key)
            return connection.lookup(target, target.key, key)

        return ExecutionContext(
            connection=connection,
            evaluator=ExpressionEvaluator(navigate),
            check=check,
        )

    def rows(self, plan: LogicalPlan, ctx: ExecutionContext) -> Iterator[ResultRow]:
        """Lazily execute a plan, yielding result rows."""
        shape = plan.shape
        for frame in self.build(plan, ctx):
            yield to_row(frame, shape)

    def build(self, plan: LogicalPlan, ctx: ExecutionContext, outer: Outer = ()) -> Operator:
        """Build a physical operator tree from a logical plan."""
        operators: dict[int, Operator] = {}
        for step in plan.steps:
            operators[step.index] = self._operator(step, plan, operators, ctx, outer)
        return operators[plan.root.index]

    def _operator(
        self,
        step: PlanStep,
        plan: LogicalPlan,
        operators: dict[int, Operator],
        ctx: ExecutionContext,
        outer: Outer,
    ) -> Operator:
        if isinstance(step, ScanStep):
            return SeqScanOperator(step.entity, step.alias, ctx, cached=bool(outer))
        child = operators[step.input]
        if isinstance(step, FilterStep):
            return FilterOperator(child, step.predicate, ctx, outer)
        elif isinstance(step, ProjectStep):
            return ProjectOperator(child, step.items, ctx, outer)
        elif isinstance(step, OrderStep):
            return SortOperator(child, step.keys, ctx, outer)
        elif isinstance(step, LimitStep):
            return LimitOperator(child, step.count, step.offset)
        elif isinstance(step, JoinStep):
            right_index = step.inputs[1]
            return HashJoinOperator(
                child,
                operators[right_index],
                step.left_keys,
                step.right_keys,
                step.join_kind,
                tuple(b.name for b in plan[right_index].shape.bindings),
                ctx,
                outer,
            )
        elif isinstance(step, GroupStep):
            return GroupOperator(child, step.key, ctx, outer)
        elif isinstance(step, AggregateStep):
            return AggregateOperator(child, step, ctx, outer)
        elif isinstance(step, LetStep):
            return LetOperator(child, step, self, ctx, outer)
        raise QueryExecutionError(f"Unsupported plan step: {step.operation.value}")
