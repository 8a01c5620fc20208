"""Logical plans: validated, ordered operation sequences.

The planner lowers a query-node tree into a LogicalPlan by post-order
traversal, so every step appears after the steps it consumes. Steps refer
to their inputs by index (an arena of steps rather than nested objects),
carry payloads whose field references are already bound, and record the
RowShape they produce.

A plan is built once, consumed once by execution, then discarded.

Example:
    >>> print(plan.describe())
    0: SCAN Movie AS Movie
    1: FILTER (Movie.Release:integer > 2000) <- [0]
    2: PROJECT Title=Movie.Title:string <- [1]
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Iterator

from linq_engine.domain.entities.entity import EntityDescriptor
from linq_engine.domain.entities.expression import Expr
from linq_engine.domain.errors import PlanConsumed
from linq_engine.domain.value_objects import (
    AggregateFunction,
    JoinKind,
    SemanticType,
    SortDirection,
)


class BindingKind(Enum):
    """What a row binding holds."""

    ENTITY = "entity"
    VALUE = "value"


@dataclass(frozen=True)
class Binding:
    """A named slot of a row: an entity instance or a single value."""

    name: str
    kind: BindingKind
    type: SemanticType | None = None
    entity: EntityDescriptor | None = None
    nullable: bool = False


@dataclass(frozen=True)
class OutputColumn:
    """A column of a result row and where its value comes from."""

    name: str
    type: SemanticType
    binding: str
    field: str | None = None
    nullable: bool = False


@dataclass(frozen=True)
class RowShape:
    """Shape of the rows flowing out of a plan step.

    Attributes:
        bindings: Ordered row bindings
        element: Shape of group items when rows are groups
    """

    bindings: tuple[Binding, ...]
    element: RowShape | None = None

    @property
    def grouped(self) -> bool:
        return self.element is not None

    def get(self, name: str) -> Binding | None:
        for binding in self.bindings:
            if binding.name == name:
                return binding
        return None

    @property
    def entity_bindings(self) -> list[Binding]:
        return [b for b in self.bindings if b.kind == BindingKind.ENTITY]

    @property
    def sole_entity(self) -> Binding | None:
        """The only entity binding, if the shape has exactly one."""
        entities = self.entity_bindings
        return entities[0] if len(entities) == 1 else None

    def columns(self) -> tuple[OutputColumn, ...]:
        """Output columns of a result row of this shape.

        Fields of a single entity are exposed unqualified; when several
        entities are bound (after a join) they are qualified by alias.
        """
        qualify = len(self.entity_bindings) > 1
        columns: list[OutputColumn] = []
        for binding in self.bindings:
            if binding.kind == BindingKind.ENTITY:
                assert binding.entity is not None
                for fd in binding.entity.fields:
                    name = f"{binding.name}.{fd.name}" if qualify else fd.name
                    columns.append(
                        OutputColumn(
                            name=name,
                            type=fd.type,
                            binding=binding.name,
                            field=fd.name,
                            nullable=fd.nullable or binding.nullable,
                        )
                    )
            else:
                assert binding.type is not None
                columns.append(
                    OutputColumn(
                        name=binding.name,
                        type=binding.type,
                        binding=binding.name,
                        nullable=binding.nullable,
                    )
                )
        return tuple(columns)

    def column_names(self) -> list[str]:
        return [c.name for c in self.columns()]

    def describe(self) -> str:
        parts = []
        for b in self.bindings:
            if b.kind == BindingKind.ENTITY:
                assert b.entity is not None
                parts.append(f"{b.name}:{b.entity.name}")
            else:
                assert b.type is not None
                parts.append(f"{b.name}:{b.type.value}")
        return "{" + ", ".join(parts) + "}"


class Operation(Enum):
    """Logical operation of a plan step."""

    SCAN = "SCAN"
    FILTER = "FILTER"
    JOIN = "JOIN"
    LET = "LET"
    GROUP = "GROUP"
    AGGREGATE = "AGGREGATE"
    ORDER = "ORDER"
    LIMIT = "LIMIT"
    PROJECT = "PROJECT"


@dataclass(frozen=True, eq=False)
class PlanStep:
    """Base class for plan steps."""

    index: int
    inputs: tuple[int, ...]
    shape: RowShape

    operation: ClassVar[Operation]

    @property
    def input(self) -> int:
        return self.inputs[0]

    def describe_payload(self) -> str:
        return ""

    def describe(self) -> str:
        line = f"{self.index}: {self.operation.value}"
        payload = self.describe_payload()
        if payload:
            line += f" {payload}"
        if self.inputs:
            line += f" <- [{', '.join(str(i) for i in self.inputs)}]"
        return line


@dataclass(frozen=True, eq=False)
class ScanStep(PlanStep):
    """Read every row of an entity."""

    entity: EntityDescriptor
    alias: str

    operation = Operation.SCAN

    def describe_payload(self) -> str:
        return f"{self.entity.name} AS {self.alias}"


@dataclass(frozen=True, eq=False)
class FilterStep(PlanStep):
    """Keep rows whose predicate evaluates to true."""

    predicate: Expr

    operation = Operation.FILTER

    def describe_payload(self) -> str:
        return self.predicate.render()


@dataclass(frozen=True, eq=False)
class JoinStep(PlanStep):
    """Equi-join: left key i must equal right key i for every i."""

    left_keys: tuple[Expr, ...]
    right_keys: tuple[Expr, ...]
    join_kind: JoinKind

    operation = Operation.JOIN

    def describe_payload(self) -> str:
        conds = " AND ".join(
            f"{lk.render()} = {rk.render()}" for lk, rk in zip(self.left_keys, self.right_keys)
        )
        return f"{self.join_kind.value.upper()} ON {conds}"


@dataclass(frozen=True, eq=False)
class LetStep(PlanStep):
    """Bind a sub-query result per input row.

    Attributes:
        name: Name of the new value binding
        subplan: Correlated sub-plan; its BoundFields with depth >= 1 refer
            to the input row
        scalar: True when the sub-plan yields a single aggregate value
    """

    name: str
    subplan: LogicalPlan
    scalar: bool

    operation = Operation.LET

    def describe_payload(self) -> str:
        kind = "scalar" if self.scalar else "sequence"
        return f"{self.name} ({kind})"

    def describe(self) -> str:
        sub = "\n".join(f"    {line}" for line in self.subplan.describe().splitlines())
        return f"{super().describe()}\n{sub}"


@dataclass(frozen=True, eq=False)
class GroupStep(PlanStep):
    """Partition rows by key, in order of first appearance."""

    key: Expr

    operation = Operation.GROUP

    def describe_payload(self) -> str:
        return self.key.render()


@dataclass(frozen=True, eq=False)
class AggregateStep(PlanStep):
    """Aggregate the whole input, or each group when ``per_group`` is set."""

    function: AggregateFunction
    operand: Expr | None
    alias: str
    per_group: bool

    operation = Operation.AGGREGATE

    def describe_payload(self) -> str:
        arg = "*" if self.operand is None else self.operand.render()
        scope = " PER GROUP" if self.per_group else ""
        return f"{self.alias}={self.function.name}({arg}){scope}"


@dataclass(frozen=True, eq=False)
class OrderStep(PlanStep):
    """Stable sort; keys are most significant first."""

    keys: tuple[tuple[Expr, SortDirection], ...]

    operation = Operation.ORDER

    def describe_payload(self) -> str:
        return ", ".join(f"{e.render()} {d.value.upper()}" for e, d in self.keys)


@dataclass(frozen=True, eq=False)
class LimitStep(PlanStep):
    """Skip ``offset`` rows then return at most ``count`` rows."""

    count: int | None
    offset: int

    operation = Operation.LIMIT

    def describe_payload(self) -> str:
        return f"{self.count} OFFSET {self.offset}"


@dataclass(frozen=True, eq=False)
class ProjectStep(PlanStep):
    """Compute named output values; empty items keep the native shape."""

    items: tuple[tuple[str, Expr], ...]

    operation = Operation.PROJECT

    def describe_payload(self) -> str:
        return ", ".join(f"{name}={expr.render()}" for name, expr in self.items) or "*"


class LogicalPlan:
    """An ordered, validated sequence of plan steps.

    The last step is the root; its shape is the shape of result rows.
    Two plans are equal when their descriptions are identical.
    """

    def __init__(self, steps: tuple[PlanStep, ...]) -> None:
        if not steps:
            raise ValueError("A logical plan needs at least one step")
        self._steps = tuple(steps)
        self._consumed = False

    @property
    def steps(self) -> tuple[PlanStep, ...]:
        return self._steps

    @property
    def root(self) -> PlanStep:
        return self._steps[-1]

    @property
    def shape(self) -> RowShape:
        return self.root.shape

    @property
    def consumed(self) -> bool:
        return self._consumed

    def mark_consumed(self) -> None:
        """Mark the plan as consumed by an execution.

        Raises:
            PlanConsumed: If the plan was already consumed.
        """
        if self._consumed:
            raise PlanConsumed("Logical plan has already been executed; lower the query again")
        self._consumed = True

    def entities(self) -> list[EntityDescriptor]:
        """Entities scanned by this plan and its sub-plans, in step order."""
        found: list[EntityDescriptor] = []
        for step in self._steps:
            if isinstance(step, ScanStep):
                found.append(step.entity)
            elif isinstance(step, LetStep):
                found.extend(step.subplan.entities())
        return found

    def describe(self) -> str:
        return "\n".join(step.describe() for step in self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[PlanStep]:
        return iter(self._steps)

    def __getitem__(self, index: int) -> PlanStep:
        return self._steps[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LogicalPlan):
            return NotImplemented
        return self.describe() == other.describe()

    def __hash__(self) -> int:
        return hash(self.describe())

    def __str__(self) -> str:
        return self.describe()

    def __repr__(self) -> str:
        return f"LogicalPlan({len(self._steps)} steps)"
