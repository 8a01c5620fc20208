"""Expression Builder: the fluent, immutable query-composition API.

Two layers:

- ``ExpressionBuilder`` turns selectors, predicates and keys given as field
  names, expressions, mappings or lambdas into query nodes. Every call
  returns a new node wrapping its argument and validates it against the
  entity registry, so shape and type errors surface where the query is
  written. Builder calls never touch a data source.
- ``Query`` wraps a node with a builder (and optionally an engine) and
  offers the LINQ-style chain::

      engine.query("Movie")
          .where(lambda m: m.Release > 2000)
          .order_by("Title")
          .select("Title", "Release")
          .to_list()

Sub-queries that use ``outer(...)`` references are validated when they are
bound with ``let``, because only then is the enclosing row known.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Iterator, Mapping, Union

from linq_engine.domain.entities.expression import (
    AggregateCall,
    BoundField,
    Column,
    Expr,
    FieldProxy,
    Outer,
    wrap,
)
from linq_engine.domain.entities.plan import LogicalPlan
from linq_engine.domain.entities.query_node import (
    AggregateNode,
    FilterNode,
    GroupByNode,
    JoinNode,
    LetNode,
    LimitNode,
    OrderByNode,
    ProjectNode,
    QueryNode,
    SortKey,
    SourceNode,
)
from linq_engine.domain.entities.row import ResultRow, ResultSet
from linq_engine.domain.errors import PlanValidationError, QueryBuildError
from linq_engine.domain.services.planner import QueryPlanner
from linq_engine.domain.services.registry import EntityRegistry
from linq_engine.domain.value_objects import AggregateFunction, JoinKind, SortDirection

if TYPE_CHECKING:
    from linq_engine.application.query_engine import QueryEngine
    from linq_engine.application.results import ResultIterator
    from linq_engine.ports.outbound.target_adapter import CompiledQuery

Selector = Union[str, Expr, Callable[..., Any], Mapping[str, Any], tuple, list]
KeySelector = Union[str, Expr, Callable[..., Any]]

_AGGREGATE_NAMES = {
    "count": AggregateFunction.COUNT,
    "min": AggregateFunction.MIN,
    "max": AggregateFunction.MAX,
    "sum": AggregateFunction.SUM,
    "average": AggregateFunction.AVERAGE,
    "avg": AggregateFunction.AVERAGE,
}


def aggregate_function(fn: AggregateFunction | str) -> AggregateFunction:
    """Look up an aggregate function by enum or name."""
    if isinstance(fn, AggregateFunction):
        return fn
    try:
        return _AGGREGATE_NAMES[fn.lower()]
    except KeyError:
        raise QueryBuildError(
            f"Unknown aggregate function '{fn}'; expected one of "
            f"{', '.join(sorted(_AGGREGATE_NAMES))}"
        ) from None


class ExpressionBuilder:
    """Builds validated query nodes.

    Args:
        registry: Entity registry field references are resolved against
        planner: Planner used for validation (one is created if omitted)
    """

    def __init__(self, registry: EntityRegistry, planner: QueryPlanner | None = None) -> None:
        self._registry = registry
        self._planner = planner or QueryPlanner(registry)

    @property
    def registry(self) -> EntityRegistry:
        return self._registry

    @property
    def planner(self) -> QueryPlanner:
        return self._planner

    def source(self, entity: str, alias: str | None = None) -> SourceNode:
        """All rows of a registered entity.

        Raises:
            UnknownEntity: If the entity is not registered.
        """
        self._registry.get(entity)
        return SourceNode(entity, alias)

    def filter(self, node: QueryNode, predicate: Expr | Callable[..., Any]) -> FilterNode:
        """Rows of ``node`` for which ``predicate`` is true.

        Raises:
            TypeMismatch: If the predicate is not boolean or compares
                incompatible types.
            UnknownField: If the predicate references an unknown field.
        """
        return self._checked(FilterNode(node, self._expr(predicate)))

    def project(self, node: QueryNode, *selectors: Selector) -> ProjectNode:
        """Reshape rows; no selectors keeps the native shape.

        Selectors may be field names (``"Title"``, ``"Movie.Title"``),
        expressions, lambdas over a field proxy, or mappings of output name
        to any of these.
        """
        items: list[tuple[str, Expr]] = []
        for selector in selectors:
            items.extend(self._selectors(selector))
        return self._checked(ProjectNode(node, tuple(items)))

    def order_by(
        self,
        node: QueryNode,
        key: KeySelector,
        direction: SortDirection = SortDirection.ASCENDING,
    ) -> OrderByNode:
        """Stable ordering by ``key``; ties keep input order."""
        return self._checked(OrderByNode(node, (SortKey(self._key(key), direction),)))

    def then_by(
        self,
        node: QueryNode,
        key: KeySelector,
        direction: SortDirection = SortDirection.ASCENDING,
    ) -> OrderByNode:
        """Add a less significant key to an ``order_by`` node."""
        if not isinstance(node, OrderByNode):
            raise QueryBuildError("then_by must follow order_by")
        return self._checked(
            OrderByNode(node.input, node.keys + (SortKey(self._key(key), direction),))
        )

    def group_by(self, node: QueryNode, key: KeySelector) -> GroupByNode:
        """Partition rows into ``{"Key", "Items"}`` groups."""
        return self._checked(GroupByNode(node, self._key(key)))

    def join(
        self,
        left: QueryNode,
        right: QueryNode,
        predicate: Expr | Callable[[FieldProxy, FieldProxy], Expr] | tuple[str, str],
        kind: JoinKind = JoinKind.INNER,
    ) -> JoinNode:
        """Equi-join two inputs.

        The predicate is an expression, a ``(left_field, right_field)`` pair,
        or a two-argument lambda receiving one field proxy per side.

        Raises:
            AmbiguousJoin: If the predicate is not a conjunction of
                left/right equalities, or both sides share an alias.
            TypeMismatch: If the join keys have incompatible types.
        """
        if isinstance(predicate, tuple):
            left_field, right_field = predicate
            condition = self._qualified(left, left_field) == self._qualified(right, right_field)
        elif isinstance(predicate, Expr):
            condition = predicate
        elif callable(predicate):
            condition = wrap(predicate(_proxy_for(left), _proxy_for(right)))
        else:
            raise QueryBuildError(f"Unsupported join predicate {predicate!r}")
        return self._checked(JoinNode(left, right, condition, kind))

    def aggregate(
        self,
        node: QueryNode,
        fn: AggregateFunction | str,
        field: KeySelector | None = None,
        alias: str | None = None,
    ) -> AggregateNode:
        """Aggregate the rows of ``node``, per group if it is grouped.

        COUNT without a field counts rows. The result is named ``alias``,
        by default the capitalised function name (``Count``, ``Max``...).
        """
        function = aggregate_function(fn)
        operand = None if field is None else self._key(field)
        return self._checked(
            AggregateNode(node, function, operand, alias or function.default_alias)
        )

    def let(self, node: QueryNode, name: str, subquery: QueryNode | Query) -> LetNode:
        """Bind a named sub-query result, evaluated once per input row.

        The sub-query may reference the input row with ``outer(...)``. Its
        value is a scalar if it ends in an aggregate, otherwise a sequence of
        rows.
        """
        if isinstance(subquery, Query):
            subquery = subquery.node
        return self._checked(LetNode(node, name, subquery))

    def take(self, node: QueryNode, count: int) -> LimitNode:
        """At most ``count`` rows."""
        if isinstance(node, LimitNode):
            if node.count is not None:
                count = min(node.count, count)
            return LimitNode(node.input, count, node.offset)
        return LimitNode(node, count)

    def skip(self, node: QueryNode, count: int) -> LimitNode:
        """All rows after the first ``count``."""
        if count < 0:
            raise ValueError(f"offset must be non-negative, got {count}")
        if isinstance(node, LimitNode):
            remaining = None if node.count is None else max(node.count - count, 0)
            return LimitNode(node.input, remaining, node.offset + count)
        return LimitNode(node, None, count)

    # Normalisation

    def _checked(self, node: QueryNode) -> Any:
        if _has_outer(node):
            return node
        errors = self._planner.validate(node)
        if len(errors) == 1:
            raise errors[0]
        if errors:
            raise PlanValidationError(errors)
        return node

    def _expr(self, value: Any) -> Expr:
        if isinstance(value, Expr):
            return value
        if callable(value):
            return wrap(value(FieldProxy()))
        raise QueryBuildError(f"Expected an expression or a lambda, got {value!r}")

    def _key(self, key: KeySelector) -> Expr:
        if isinstance(key, str):
            return Column(key)
        return self._expr(key)

    def _selectors(self, selector: Selector) -> list[tuple[str, Expr]]:
        if isinstance(selector, str):
            return [(selector.rsplit(".", 1)[-1], Column(selector))]
        if isinstance(selector, Mapping):
            return [(str(name), self._key(value)) for name, value in selector.items()]
        if isinstance(selector, (tuple, list)):
            items: list[tuple[str, Expr]] = []
            for item in selector:
                items.extend(self._selectors(item))
            return items
        if isinstance(selector, Expr):
            return [(_output_name(selector), selector)]
        if callable(selector):
            return self._selectors(selector(FieldProxy()))
        raise QueryBuildError(f"Unsupported selector {selector!r}")

    def _qualified(self, node: QueryNode, field: str) -> Column:
        if isinstance(node, SourceNode) and "." not in field:
            return Column(f"{node.binding}.{field}")
        return Column(field)


def _output_name(expr: Expr) -> str:
    if isinstance(expr, Column):
        return expr.path.rsplit(".", 1)[-1]
    if isinstance(expr, BoundField):
        return expr.field_name
    if isinstance(expr, AggregateCall):
        return expr.function.default_alias
    raise QueryBuildError(
        f"Computed selector {expr.render()} needs an output name; pass a mapping"
    )


def _proxy_for(node: QueryNode) -> FieldProxy:
    if isinstance(node, SourceNode):
        return FieldProxy(node.binding)
    return FieldProxy()


def _node_exprs(node: QueryNode) -> Iterator[Expr]:
    if isinstance(node, (FilterNode, JoinNode)):
        yield node.predicate
    elif isinstance(node, ProjectNode):
        for _, expr in node.selectors:
            yield expr
    elif isinstance(node, GroupByNode):
        yield node.key
    elif isinstance(node, OrderByNode):
        for key in node.keys:
            yield key.expr
    elif isinstance(node, AggregateNode) and node.operand is not None:
        yield node.operand


def _has_outer(node: QueryNode) -> bool:
    """Whether a tree references an enclosing row outside any let."""
    for expr in _node_exprs(node):
        if any(isinstance(e, Outer) for e in expr.walk()):
            return True
    if isinstance(node, LetNode):
        return _has_outer(node.input)
    return any(_has_outer(child) for child in node.children())


class Query:
    """Immutable fluent query.

    Every composition method returns a new Query; terminal methods
    (``to_list``, ``first``, iteration...) need an engine.

    Example:
        >>> q = engine.query("Movie").where(F.Release > 2000).select("Title")
        >>> [row.Title for row in q]
        ['Inception', 'Tenet']
    """

    def __init__(
        self,
        builder: ExpressionBuilder,
        node: QueryNode,
        engine: QueryEngine | None = None,
    ) -> None:
        self._builder = builder
        self._node = node
        self._engine = engine

    @property
    def node(self) -> QueryNode:
        return self._node

    @property
    def engine(self) -> QueryEngine | None:
        return self._engine

    def _wrap(self, node: QueryNode) -> Query:
        return Query(self._builder, node, self._engine)

    # Composition

    def where(self, predicate: Expr | Callable[..., Any]) -> Query:
        return self._wrap(self._builder.filter(self._node, predicate))

    def select(self, *selectors: Selector, **named: KeySelector) -> Query:
        if named:
            selectors = (*selectors, named)
        return self._wrap(self._builder.project(self._node, *selectors))

    def order_by(self, key: KeySelector) -> Query:
        return self._wrap(self._builder.order_by(self._node, key))

    def order_by_descending(self, key: KeySelector) -> Query:
        return self._wrap(self._builder.order_by(self._node, key, SortDirection.DESCENDING))

    def then_by(self, key: KeySelector) -> Query:
        return self._wrap(self._builder.then_by(self._node, key))

    def then_by_descending(self, key: KeySelector) -> Query:
        return self._wrap(self._builder.then_by(self._node, key, SortDirection.DESCENDING))

    def group_by(self, key: KeySelector) -> Query:
        return self._wrap(self._builder.group_by(self._node, key))

    def join(
        self,
        other: Query | QueryNode,
        predicate: Any,
        kind: JoinKind = JoinKind.INNER,
    ) -> Query:
        right = other.node if isinstance(other, Query) else other
        return self._wrap(self._builder.join(self._node, right, predicate, kind))

    def left_join(self, other: Query | QueryNode, predicate: Any) -> Query:
        return self.join(other, predicate, JoinKind.LEFT)

    def let(self, name: str, subquery: Query | QueryNode) -> Query:
        return self._wrap(self._builder.let(self._node, name, subquery))

    def take(self, count: int) -> Query:
        return self._wrap(self._builder.take(self._node, count))

    def skip(self, count: int) -> Query:
        return self._wrap(self._builder.skip(self._node, count))

    def aggregate(
        self,
        fn: AggregateFunction | str,
        field: KeySelector | None = None,
        alias: str | None = None,
    ) -> Query:
        return self._wrap(self._builder.aggregate(self._node, fn, field, alias))

    def count(self, field: KeySelector | None = None, alias: str | None = None) -> Query:
        return self.aggregate(AggregateFunction.COUNT, field, alias)

    def min(self, field: KeySelector, alias: str | None = None) -> Query:
        return self.aggregate(AggregateFunction.MIN, field, alias)

    def max(self, field: KeySelector, alias: str | None = None) -> Query:
        return self.aggregate(AggregateFunction.MAX, field, alias)

    def sum(self, field: KeySelector, alias: str | None = None) -> Query:
        return self.aggregate(AggregateFunction.SUM, field, alias)

    def average(self, field: KeySelector, alias: str | None = None) -> Query:
        return self.aggregate(AggregateFunction.AVERAGE, field, alias)

    # Terminal operations

    def _require_engine(self) -> QueryEngine:
        if self._engine is None:
            raise QueryBuildError("Query is not bound to an engine")
        return self._engine

    def plan(self) -> LogicalPlan:
        """Lower the query into a fresh logical plan."""
        if self._engine is None:
            return self._builder.planner.lower(self._node)
        return self._engine.lower(self._node)

    def compile(self) -> CompiledQuery:
        """Compile the query for the engine's backend without running it."""
        return self._require_engine().compile(self._node)

    def explain(self) -> str:
        return self._require_engine().explain(self._node)

    def execute(self, timeout: float | None = None) -> ResultIterator:
        """Start a lazy execution; nothing is read until the first row is pulled."""
        return self._require_engine().execute(self._node, timeout=timeout)

    def __iter__(self) -> Iterator[ResultRow]:
        return self.execute()

    def to_list(self, timeout: float | None = None) -> ResultSet:
        """Run the query and materialise every row."""
        with self.execute(timeout) as rows:
            return rows.to_list()

    def first_or_none(self) -> ResultRow | None:
        with self.take(1).execute() as rows:
            return next(rows, None)

    def first(self) -> ResultRow:
        """First row of the result.

        Raises:
            LookupError: If the query returns no rows.
        """
        row = self.first_or_none()
        if row is None:
            raise LookupError("Query returned no rows")
        return row

    def scalar(self) -> Any:
        """Single value of a single-column, single-row result (e.g. an aggregate)."""
        rows = self.to_list()
        if len(rows) != 1 or len(rows.columns) != 1:
            raise LookupError(
                f"Expected one row with one column, got {len(rows)} row(s) "
                f"with {len(rows.columns)} column(s)"
            )
        return rows[0][rows.columns[0]]

    def __str__(self) -> str:
        return self._node.render()

    def __repr__(self) -> str:
        return f"Query({self._node.render()!r})"
