"""SQL Target Adapter using sqlglot.

Compiles a logical plan into a single SELECT statement by building a
sqlglot AST and rendering it for a dialect. Steps are folded into a
SELECT under construction (a frame) for as long as SQL clause order allows;
when a step must apply to the output of earlier ones (a filter after a
LIMIT, a second LIMIT, an aggregate over grouped output) the frame is
wrapped into a derived table and compilation continues on top of it.

Field references compile to qualified columns. To-one navigation
(``Actor.Movie.Title``) compiles to a correlated scalar sub-query, and a
scalar ``let`` compiles to a correlated sub-query over its own sub-plan.

Every output column is explicit and aliased with its quoted output name,
so rows come back in the order of the plan's output columns. Rendering is
deterministic: the same plan always compiles to the same text.

Not expressible (raises UnsupportedOperation):
    - client-side function calls
    - sequence-valued ``let`` sub-queries
    - grouped rows without aggregation (``Items``)
    - joins whose right side is itself a join
    - a MIN, MAX or AVERAGE consumed by a later step instead of being
      returned as is

References:
    - sqlglot documentation: https://sqlglot.com/
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Sequence, Union

from sqlglot import exp

from linq_engine.domain.entities.entity import EntityDescriptor, RelationDescriptor
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
from linq_engine.domain.errors import UnsupportedOperation
from linq_engine.domain.services.registry import EntityRegistry
from linq_engine.domain.value_objects import (
    AggregateFunction,
    ArithmeticOp,
    ComparisonOp,
    JoinKind,
    LogicalOp,
    ScalarFunction,
    SemanticType,
    SortDirection,
)
from linq_engine.ports.outbound.target_adapter import CompiledQuery

_COMPARISONS: dict[ComparisonOp, type[exp.Expression]] = {
    ComparisonOp.EQ: exp.EQ,
    ComparisonOp.NE: exp.NEQ,
    ComparisonOp.LT: exp.LT,
    ComparisonOp.LE: exp.LTE,
    ComparisonOp.GT: exp.GT,
    ComparisonOp.GE: exp.GTE,
}

_ARITHMETIC: dict[ArithmeticOp, type[exp.Expression]] = {
    ArithmeticOp.ADD: exp.Add,
    ArithmeticOp.SUB: exp.Sub,
    ArithmeticOp.MUL: exp.Mul,
    ArithmeticOp.DIV: exp.Div,
}

_FUNCTIONS: dict[ScalarFunction, type[exp.Expression]] = {
    ScalarFunction.LOWER: exp.Lower,
    ScalarFunction.UPPER: exp.Upper,
    ScalarFunction.LENGTH: exp.Length,
}

# Aggregates that have no value over empty input
_STRICT_AGGREGATES = (
    AggregateFunction.MIN,
    AggregateFunction.MAX,
    AggregateFunction.AVERAGE,
)


@dataclass
class _EntityRef:
    """An entity binding reachable through a table alias."""

    entity: EntityDescriptor
    alias: str
    columns: dict[str, str]

    def column(self, name: str) -> exp.Column:
        return exp.column(self.columns.get(name, name), table=self.alias, quoted=True)


@dataclass
class _ValueRef:
    """A value binding and the SQL expression that computes it."""

    expr: exp.Expression
    type: SemanticType
    strict: AggregateFunction | None = None

    def get(self) -> exp.Expression:
        return self.expr.copy()


_Ref = Union[_EntityRef, _ValueRef]
_Scope = dict[str, _Ref]


@dataclass
class _Frame:
    """A SELECT under construction."""

    shape: RowShape
    scope: _Scope
    source: exp.Expression
    joins: list[tuple[exp.Expression, exp.Expression, str]] = field(default_factory=list)
    where: list[exp.Expression] = field(default_factory=list)
    group: exp.Expression | None = None
    element_scope: _Scope | None = None
    having: list[exp.Expression] = field(default_factory=list)
    aggregated: bool = False
    projected: bool = False
    order: list[exp.Ordered] = field(default_factory=list)
    limit: int | None = None
    offset: int = 0

    @property
    def grouped(self) -> bool:
        return self.group is not None and not self.aggregated

    @property
    def limited(self) -> bool:
        return self.limit is not None or self.offset > 0

    @property
    def strict(self) -> dict[str, AggregateFunction]:
        """Value bindings holding a MIN, MAX or AVERAGE that may have no value."""
        return {
            name: ref.strict
            for name, ref in self.scope.items()
            if isinstance(ref, _ValueRef) and ref.strict is not None
        }


class _Compilation:
    """State of one compile call: alias counters and enclosing scopes."""

    def __init__(self, adapter: SQLTargetAdapter) -> None:
        self._adapter = adapter
        self._derived = 0
        self._subquery_tables = 0
        self._nav = 0

    def unsupported(self, message: str) -> UnsupportedOperation:
        return UnsupportedOperation(message, backend=self._adapter.backend)

    def require_defined(self, frame: _Frame, action: str) -> None:
        """Reject steps that would hide a MIN, MAX or AVERAGE of no rows.

        SQL turns such an aggregate into NULL. Only a column passed straight
        to the output can be checked when rows come back.
        """
        if frame.strict:
            names = ", ".join(sorted(frame.strict))
            raise self.unsupported(
                f"Cannot {action} after aggregate {names}; "
                "an empty input must raise EmptyAggregate"
            )

    def strict_columns(self, frame: _Frame) -> dict[str, AggregateFunction]:
        """Output columns where a NULL means the aggregate had no input values."""
        strict = frame.strict
        return {
            column.name: strict[column.binding]
            for column in frame.shape.columns()
            if column.binding in strict
        }

    # Plans and steps

    def plan(self, plan: LogicalPlan, outers: tuple[_Scope, ...] = ()) -> _Frame:
        frames: dict[int, _Frame] = {}
        for step in plan.steps:
            frames[step.index] = self.step(step, frames, outers)
        return frames[plan.root.index]

    def step(self, step: PlanStep, frames: dict[int, _Frame], outers: tuple[_Scope, ...]) -> _Frame:
        if isinstance(step, ScanStep):
            return self.scan(step, outers)
        frame = frames[step.input]
        if isinstance(step, FilterStep):
            return self.filter(step, frame, outers)
        if isinstance(step, JoinStep):
            return self.join(step, frame, frames[step.inputs[1]], outers)
        if isinstance(step, GroupStep):
            return self.group(step, frame, outers)
        if isinstance(step, AggregateStep):
            return self.aggregate(step, frame, outers)
        if isinstance(step, OrderStep):
            return self.order(step, frame, outers)
        if isinstance(step, LimitStep):
            return self.limit(step, frame)
        if isinstance(step, LetStep):
            return self.let(step, frame, outers)
        if isinstance(step, ProjectStep):
            return self.project(step, frame, outers)
        raise self.unsupported(f"Unsupported plan step: {step.operation.value}")

    def scan(self, step: ScanStep, outers: tuple[_Scope, ...]) -> _Frame:
        alias = step.alias
        if outers:
            # Inside a correlated sub-query; keep clear of the outer aliases.
            self._subquery_tables += 1
            alias = f"_s{self._subquery_tables}"
        ref = _EntityRef(step.entity, alias, {f.name: f.name for f in step.entity.fields})
        return _Frame(
            shape=step.shape,
            scope={step.alias: ref},
            source=exp.table_(step.entity.table_name, alias=alias, quoted=True),
        )

    def filter(self, step: FilterStep, frame: _Frame, outers: tuple[_Scope, ...]) -> _Frame:
        self.require_defined(frame, "filter")
        if frame.grouped:
            frame.having.append(self.expr(step.predicate, frame, outers))
            frame.shape = step.shape
            return frame
        if frame.aggregated or frame.limited:
            frame = self.wrap(frame)
        frame.where.append(self.expr(step.predicate, frame, outers))
        frame.shape = step.shape
        return frame

    def join(
        self,
        step: JoinStep,
        left: _Frame,
        right: _Frame,
        outers: tuple[_Scope, ...],
    ) -> _Frame:
        if right.joins:
            raise self.unsupported("Cannot compile a join whose right side is itself a join")
        self.require_defined(left, "join")
        self.require_defined(right, "join")
        if left.grouped or left.aggregated or left.limited:
            left = self.wrap(left)
        simple = not (
            right.grouped
            or right.aggregated
            or right.limited
            or right.projected
            or right.order
            or any(isinstance(r, _ValueRef) for r in right.scope.values())
        )
        if not simple:
            right = self.wrap(right)

        merged = _Frame(
            shape=step.shape,
            scope={**left.scope, **right.scope},
            source=left.source,
            joins=list(left.joins),
            where=list(left.where),
            order=list(left.order),
            projected=left.projected,
        )
        conditions = [
            exp.EQ(
                this=self.expr(lk, merged, outers),
                expression=self.expr(rk, merged, outers),
            )
            for lk, rk in zip(step.left_keys, step.right_keys)
        ]
        conditions.extend(right.where)
        join_type = "left" if step.join_kind == JoinKind.LEFT else "inner"
        merged.joins.append((right.source, exp.and_(*conditions), join_type))
        return merged

    def group(self, step: GroupStep, frame: _Frame, outers: tuple[_Scope, ...]) -> _Frame:
        self.require_defined(frame, "group")
        if frame.grouped or frame.aggregated or frame.limited:
            frame = self.wrap(frame)
        key = self.expr(step.key, frame, outers)
        key_binding = step.shape.get("Key")
        assert key_binding is not None and key_binding.type is not None
        frame.element_scope = dict(frame.scope)
        frame.group = key
        frame.scope = {"Key": _ValueRef(key, key_binding.type)}
        frame.order = []
        frame.shape = step.shape
        return frame

    def aggregate(self, step: AggregateStep, frame: _Frame, outers: tuple[_Scope, ...]) -> _Frame:
        strict = step.function if step.function in _STRICT_AGGREGATES else None
        if step.per_group:
            assert frame.grouped and frame.element_scope is not None
            call = self.aggregate_call(step.function, step.operand, frame.element_scope, outers)
            frame.scope = {
                "Key": frame.scope["Key"],
                step.alias: _ValueRef(call, step.shape.bindings[1].type or SemanticType.NULL, strict),
            }
        else:
            self.require_defined(frame, "aggregate")
            if frame.aggregated or frame.limited or frame.group is not None:
                frame = self.wrap(frame)
            call = self.aggregate_call(step.function, step.operand, frame.scope, outers)
            frame.scope = {
                step.alias: _ValueRef(call, step.shape.bindings[0].type or SemanticType.NULL, strict)
            }
            frame.order = []
        frame.aggregated = True
        frame.projected = True
        frame.shape = step.shape
        return frame

    def order(self, step: OrderStep, frame: _Frame, outers: tuple[_Scope, ...]) -> _Frame:
        if frame.limited:
            frame = self.wrap(frame)
        keys = [
            exp.Ordered(
                this=self.expr(key, frame, outers),
                desc=direction == SortDirection.DESCENDING,
                nulls_first=direction == SortDirection.ASCENDING,
            )
            for key, direction in step.keys
        ]
        # The latest ordering is the most significant; earlier ones break ties.
        frame.order = keys + frame.order
        frame.shape = step.shape
        return frame

    def limit(self, step: LimitStep, frame: _Frame) -> _Frame:
        if frame.grouped:
            raise self.unsupported("Cannot limit grouped rows before they are aggregated")
        self.require_defined(frame, "limit")
        if frame.limited:
            frame = self.wrap(frame)
        frame.limit = step.count
        frame.offset = step.offset
        frame.shape = step.shape
        return frame

    def let(self, step: LetStep, frame: _Frame, outers: tuple[_Scope, ...]) -> _Frame:
        if not step.scalar:
            raise self.unsupported(
                f"Cannot compile sequence-valued let '{step.name}'; only aggregates can be correlated"
            )
        if frame.grouped:
            raise self.unsupported("Cannot bind a let over grouped rows before they are aggregated")
        if frame.aggregated:
            frame = self.wrap(frame)
        sub = self.plan(step.subplan, (frame.scope,) + outers)
        subquery = exp.Subquery(this=self.select(sub))
        value_type = step.shape.bindings[-1].type or SemanticType.NULL
        frame.scope = {**frame.scope, step.name: _ValueRef(subquery, value_type)}
        frame.shape = step.shape
        return frame

    def project(self, step: ProjectStep, frame: _Frame, outers: tuple[_Scope, ...]) -> _Frame:
        if not step.items:
            frame.shape = step.shape
            return frame
        scope: _Scope = {}
        kept: set[str] = set()
        for (name, item), binding in zip(step.items, step.shape.bindings):
            value_type = binding.type or SemanticType.NULL
            passed = self.strict_ref(item, frame)
            if passed is not None:
                assert isinstance(item, BoundField)
                kept.add(item.binding)
                scope[name] = _ValueRef(passed.get(), value_type, passed.strict)
            elif (
                isinstance(item, AggregateCall)
                and item.function in _STRICT_AGGREGATES
                and frame.element_scope is not None
            ):
                call = self.aggregate_call(item.function, item.operand, frame.element_scope, outers)
                scope[name] = _ValueRef(call, value_type, item.function)
            else:
                scope[name] = _ValueRef(self.expr(item, frame, outers), value_type)
        dropped = set(frame.strict) - kept
        if dropped:
            names = ", ".join(sorted(dropped))
            raise self.unsupported(
                f"Cannot drop aggregate {names}; an empty input must raise EmptyAggregate"
            )
        if frame.grouped:
            frame.aggregated = True
        frame.scope = scope
        frame.projected = True
        frame.shape = step.shape
        return frame

    def strict_ref(self, item: Expr, frame: _Frame) -> _ValueRef | None:
        """The undefined-when-empty value an item passes through unchanged, if any."""
        if not isinstance(item, BoundField) or item.path or item.depth:
            return None
        ref = frame.scope.get(item.binding)
        if isinstance(ref, _ValueRef) and ref.strict is not None:
            return ref
        return None

    # Frames

    def wrap(self, frame: _Frame) -> _Frame:
        """Turn a frame into a derived table and start a new frame over it."""
        if frame.grouped:
            raise self.unsupported("Cannot compile grouped rows without aggregation (Items)")
        self._derived += 1
        alias = f"_q{self._derived}"
        subquery = self.select(frame).subquery(alias)

        scope: _Scope = {}
        for binding in frame.shape.bindings:
            if binding.kind == BindingKind.ENTITY:
                assert binding.entity is not None
                scope[binding.name] = _EntityRef(binding.entity, alias, {})
            else:
                assert binding.type is not None
                previous = frame.scope.get(binding.name)
                scope[binding.name] = _ValueRef(
                    exp.column(binding.name, table=alias, quoted=True),
                    binding.type,
                    previous.strict if isinstance(previous, _ValueRef) else None,
                )
        for column in frame.shape.columns():
            ref = scope[column.binding]
            if isinstance(ref, _EntityRef) and column.field is not None:
                ref.columns[column.field] = column.name
        return _Frame(
            shape=frame.shape,
            scope=scope,
            source=subquery,
        )

    def select(self, frame: _Frame) -> exp.Select:
        """Render a frame as a SELECT with one aliased item per output column."""
        if frame.grouped:
            raise self.unsupported("Cannot compile grouped rows without aggregation (Items)")
        items = []
        for column in frame.shape.columns():
            if column.type == SemanticType.SEQUENCE:
                raise self.unsupported(
                    f"Cannot compile sequence-valued column '{column.name}'"
                )
            ref = frame.scope[column.binding]
            if isinstance(ref, _EntityRef):
                assert column.field is not None
                value = ref.column(column.field)
            else:
                value = ref.get()
            items.append(exp.alias_(value, column.name, quoted=True))

        query = exp.select(*items).from_(frame.source)
        for source, on, join_type in frame.joins:
            query = query.join(source, on=on, join_type=join_type)
        if frame.where:
            query = query.where(exp.and_(*frame.where))
        if frame.group is not None:
            query = query.group_by(frame.group)
        if frame.having:
            query = query.having(exp.and_(*frame.having))
        if frame.order:
            query = query.order_by(*frame.order)
        if frame.limit is not None:
            query = query.limit(frame.limit)
        elif frame.offset and self._adapter.dialect == "sqlite":
            # SQLite accepts OFFSET only after a LIMIT.
            query = query.limit(-1)
        if frame.offset:
            query = query.offset(frame.offset)
        return query

    # Expressions

    def expr(self, e: Expr, frame: _Frame, outers: tuple[_Scope, ...]) -> exp.Expression:
        return self.scalar(e, frame.scope, frame.element_scope, outers)

    def scalar(
        self,
        e: Expr,
        scope: _Scope,
        element_scope: _Scope | None,
        outers: tuple[_Scope, ...],
    ) -> exp.Expression:
        def sub(child: Expr) -> exp.Expression:
            return self.scalar(child, scope, element_scope, outers)

        if isinstance(e, BoundField):
            return self.field(e, scope, outers)
        if isinstance(e, Literal):
            return _literal(e.value)
        if isinstance(e, Comparison):
            return _COMPARISONS[e.op](this=sub(e.left), expression=sub(e.right))
        if isinstance(e, Logical):
            operands = [sub(o) for o in e.operands]
            if e.op == LogicalOp.NOT:
                return exp.not_(exp.paren(operands[0], copy=False))
            combine = exp.and_ if e.op == LogicalOp.AND else exp.or_
            return exp.paren(combine(*operands), copy=False)
        if isinstance(e, IsNull):
            test = exp.Is(this=sub(e.operand), expression=exp.Null())
            return exp.not_(test) if e.negated else test
        if isinstance(e, Like):
            return exp.Like(this=sub(e.operand), expression=exp.Literal.string(e.pattern))
        if isinstance(e, Arithmetic):
            left = sub(e.left)
            if e.op == ArithmeticOp.DIV:
                left = exp.cast(left, "DOUBLE")
            node = _ARITHMETIC[e.op](this=left, expression=sub(e.right))
            return exp.paren(node, copy=False)
        if isinstance(e, Function):
            return _FUNCTIONS[e.function](this=sub(e.operand))
        if isinstance(e, AggregateCall):
            if element_scope is None:
                raise self.unsupported(f"Aggregate {e.render()} outside grouped rows")
            if e.function in _STRICT_AGGREGATES:
                raise self.unsupported(
                    f"Cannot use {e.render()} inside an expression; "
                    "an empty group must raise EmptyAggregate"
                )
            return self.aggregate_call(e.function, e.operand, element_scope, outers)
        if isinstance(e, ClientCall):
            raise self.unsupported(
                f"Cannot compile client-side function {e.display_name}; evaluate it in-process"
            )
        raise self.unsupported(f"Cannot compile expression {e.render()}")

    def aggregate_call(
        self,
        function: AggregateFunction,
        operand: Expr | None,
        scope: _Scope,
        outers: tuple[_Scope, ...],
    ) -> exp.Expression:
        if operand is None:
            return exp.Count(this=exp.Star())
        value = self.scalar(operand, scope, None, outers)
        if function == AggregateFunction.COUNT:
            return exp.Count(this=value)
        if function == AggregateFunction.SUM:
            return exp.Coalesce(this=exp.Sum(this=value), expressions=[exp.Literal.number(0)])
        if function == AggregateFunction.MIN:
            return exp.Min(this=value)
        if function == AggregateFunction.MAX:
            return exp.Max(this=value)
        return exp.Avg(this=value)

    def field(self, e: BoundField, scope: _Scope, outers: tuple[_Scope, ...]) -> exp.Expression:
        if e.depth:
            if e.depth > len(outers):
                raise self.unsupported(f"Outer reference {e.render()} has no enclosing query")
            scope = outers[e.depth - 1]
        ref = scope.get(e.binding)
        if ref is None:
            raise self.unsupported(f"Reference {e.render()} is not visible here")
        if isinstance(ref, _ValueRef):
            if ref.type == SemanticType.SEQUENCE:
                raise self.unsupported(f"Cannot compile sequence value {e.render()}")
            if ref.strict is not None:
                raise self.unsupported(
                    f"Cannot use {e.render()} inside an expression; "
                    "an empty input must raise EmptyAggregate"
                )
            return ref.get()
        if e.relations:
            return self.navigate(ref.column, e.relations, e.path[-1])
        return ref.column(e.path[0])

    def navigate(
        self,
        owner_column: Any,
        relations: Sequence[RelationDescriptor],
        field_name: str,
    ) -> exp.Expression:
        """Follow to-one relations with correlated scalar sub-queries."""
        registry = self._adapter.registry
        if registry is None:
            raise self.unsupported("Relation navigation needs the entity registry")
        relation = relations[0]
        target = registry.get(relation.target)
        self._nav += 1
        alias = f"_n{self._nav}"

        def column(name: str) -> exp.Column:
            return exp.column(name, table=alias, quoted=True)

        if len(relations) == 1:
            value: exp.Expression = column(field_name)
        else:
            value = self.navigate(column, relations[1:], field_name)
        query = (
            exp.select(value)
            .from_(exp.table_(target.table_name, alias=alias, quoted=True))
            .where(exp.EQ(this=column(target.key), expression=owner_column(relation.foreign_key)))
        )
        return exp.Subquery(this=query)


def _literal(value: Any) -> exp.Expression:
    if value is None:
        return exp.Null()
    if isinstance(value, bool):
        return exp.Boolean(this=value)
    if isinstance(value, (int, float, Decimal)):
        return exp.Literal.number(str(value))
    if isinstance(value, dt.datetime):
        return exp.Literal.string(value.isoformat(sep=" "))
    if isinstance(value, dt.date):
        return exp.Literal.string(value.isoformat())
    return exp.Literal.string(str(value))


class SQLTargetAdapter:
    """Compiles logical plans to SQL text for a sqlglot dialect.

    Example:
        >>> adapter = SQLTargetAdapter(registry=registry)
        >>> print(adapter.compile(plan).text)
        SELECT "Movie"."Title" AS "Title" FROM "Movie" AS "Movie" WHERE ...
    """

    def __init__(
        self,
        dialect: str = "sqlite",
        pretty: bool = False,
        identify: bool = True,
        *,
        registry: EntityRegistry | None = None,
    ) -> None:
        self._dialect = dialect
        self._pretty = pretty
        self._identify = identify
        self._registry = registry

    @property
    def backend(self) -> str:
        return "sql"

    @property
    def dialect(self) -> str:
        return self._dialect

    @property
    def registry(self) -> EntityRegistry | None:
        return self._registry

    def compile(self, plan: LogicalPlan) -> CompiledQuery:
        compilation = _Compilation(self)
        frame = compilation.plan(plan)
        query = compilation.select(frame)
        text = query.sql(dialect=self._dialect, pretty=self._pretty, identify=self._identify)
        return CompiledQuery(
            text=text,
            backend=self.backend,
            columns=plan.shape.columns(),
            empty_aggregates=tuple(sorted(compilation.strict_columns(frame).items())),
        )
