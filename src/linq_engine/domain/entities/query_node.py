"""Query nodes: the immutable expression tree built by the ExpressionBuilder.

Each node owns its children exclusively, so a query is always a tree.
Composition never mutates a node; it produces a new node wrapping the prior
ones. Nodes are pure syntax: field references are resolved against the
entity registry by the planner.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from linq_engine.domain.entities.expression import Expr
from linq_engine.domain.value_objects import AggregateFunction, JoinKind, SortDirection


class NodeKind(Enum):
    """Tag of a query node."""

    SOURCE = "source"
    FILTER = "filter"
    PROJECT = "project"
    JOIN = "join"
    GROUP_BY = "group_by"
    ORDER_BY = "order_by"
    AGGREGATE = "aggregate"
    LET = "let"
    LIMIT = "limit"


class QueryNode:
    """Base class for query nodes."""

    kind: NodeKind

    def children(self) -> tuple[QueryNode, ...]:
        return ()

    def render(self) -> str:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True, eq=False)
class SourceNode(QueryNode):
    """All rows of a registered entity."""

    entity: str
    alias: str | None = None

    kind = NodeKind.SOURCE

    @property
    def binding(self) -> str:
        return self.alias or self.entity

    def render(self) -> str:
        if self.alias:
            return f"Source({self.entity} AS {self.alias})"
        return f"Source({self.entity})"


@dataclass(frozen=True, eq=False)
class FilterNode(QueryNode):
    """Rows of the input for which the predicate is true."""

    input: QueryNode
    predicate: Expr

    kind = NodeKind.FILTER

    def children(self) -> tuple[QueryNode, ...]:
        return (self.input,)

    def render(self) -> str:
        return f"Filter({self.predicate.render()})\n  -> {self.input.render()}"


@dataclass(frozen=True, eq=False)
class ProjectNode(QueryNode):
    """Reshape rows into named output values.

    An empty selector tuple keeps the input's native shape.
    """

    input: QueryNode
    selectors: tuple[tuple[str, Expr], ...]

    kind = NodeKind.PROJECT

    def children(self) -> tuple[QueryNode, ...]:
        return (self.input,)

    def render(self) -> str:
        cols = ", ".join(f"{name}={expr.render()}" for name, expr in self.selectors) or "*"
        return f"Project({cols})\n  -> {self.input.render()}"


@dataclass(frozen=True, eq=False)
class JoinNode(QueryNode):
    """Equi-join of two inputs."""

    left: QueryNode
    right: QueryNode
    predicate: Expr
    join_kind: JoinKind = JoinKind.INNER

    kind = NodeKind.JOIN

    def children(self) -> tuple[QueryNode, ...]:
        return (self.left, self.right)

    def render(self) -> str:
        return (
            f"Join[{self.join_kind.value}]({self.predicate.render()})"
            f"\n  -> {self.left.render()}\n  -> {self.right.render()}"
        )


@dataclass(frozen=True, eq=False)
class GroupByNode(QueryNode):
    """Partition rows into (key, items) groups."""

    input: QueryNode
    key: Expr

    kind = NodeKind.GROUP_BY

    def children(self) -> tuple[QueryNode, ...]:
        return (self.input,)

    def render(self) -> str:
        return f"GroupBy({self.key.render()})\n  -> {self.input.render()}"


@dataclass(frozen=True, eq=False)
class SortKey:
    """One ordering key."""

    expr: Expr
    direction: SortDirection = SortDirection.ASCENDING

    def render(self) -> str:
        return f"{self.expr.render()} {self.direction.value.upper()}"


@dataclass(frozen=True, eq=False)
class OrderByNode(QueryNode):
    """Stable ordering by one or more keys, most significant first."""

    input: QueryNode
    keys: tuple[SortKey, ...]

    kind = NodeKind.ORDER_BY

    def children(self) -> tuple[QueryNode, ...]:
        return (self.input,)

    def render(self) -> str:
        keys = ", ".join(k.render() for k in self.keys)
        return f"OrderBy({keys})\n  -> {self.input.render()}"


@dataclass(frozen=True, eq=False)
class AggregateNode(QueryNode):
    """Aggregate the input, per group when the input is grouped."""

    input: QueryNode
    function: AggregateFunction
    operand: Expr | None
    alias: str

    kind = NodeKind.AGGREGATE

    def children(self) -> tuple[QueryNode, ...]:
        return (self.input,)

    def render(self) -> str:
        arg = "*" if self.operand is None else self.operand.render()
        return f"Aggregate({self.alias}={self.function.name}({arg}))\n  -> {self.input.render()}"


@dataclass(frozen=True, eq=False)
class LetNode(QueryNode):
    """Bind a named sub-query result, evaluated once per input row."""

    input: QueryNode
    name: str
    subquery: QueryNode

    kind = NodeKind.LET

    def children(self) -> tuple[QueryNode, ...]:
        return (self.input, self.subquery)

    def render(self) -> str:
        sub = self.subquery.render().replace("\n", "\n    ")
        return f"Let({self.name} = {sub})\n  -> {self.input.render()}"


@dataclass(frozen=True, eq=False)
class LimitNode(QueryNode):
    """Skip ``offset`` rows, then return at most ``count`` rows."""

    input: QueryNode
    count: int | None = None
    offset: int = 0

    kind = NodeKind.LIMIT

    def __post_init__(self) -> None:
        if self.count is not None and self.count < 0:
            raise ValueError(f"count must be non-negative, got {self.count}")
        if self.offset < 0:
            raise ValueError(f"offset must be non-negative, got {self.offset}")

    def children(self) -> tuple[QueryNode, ...]:
        return (self.input,)

    def render(self) -> str:
        return f"Limit({self.count}, offset={self.offset})\n  -> {self.input.render()}"
