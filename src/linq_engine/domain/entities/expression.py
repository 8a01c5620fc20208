"""Scalar expression trees for predicates, selectors and keys.

Expressions are immutable and composable. Python operators are overloaded
so predicates read naturally::

    (col("Release") > 2000) & col("Title").startswith("The")
    F.Movie.Title == "Heat"

Because ``==`` builds a Comparison instead of testing equality, expressions
cannot be used as booleans (``and``/``or``/``not`` and chained comparisons
raise TypeError); use ``&``, ``|`` and ``~`` instead.

The planner rewrites Column and Outer references into BoundField nodes that
carry the resolved binding, member path and semantic type. Only bound
expressions are evaluated or compiled.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from linq_engine.domain.entities.entity import RelationDescriptor
from linq_engine.domain.value_objects import (
    AggregateFunction,
    ArithmeticOp,
    ComparisonOp,
    LogicalOp,
    ScalarFunction,
    SemanticType,
)


class Expr:
    """Base class for scalar expressions."""

    __hash__ = object.__hash__

    def render(self) -> str:
        """Deterministic textual form, used for plan descriptions."""
        raise NotImplementedError

    def children(self) -> tuple[Expr, ...]:
        return ()

    def walk(self):
        """Yield this expression and all descendants, pre-order."""
        yield self
        for child in self.children():
            yield from child.walk()

    def __str__(self) -> str:
        return self.render()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.render()})"

    def __bool__(self) -> bool:
        raise TypeError(
            "Query expressions have no truth value; combine predicates with &, | and ~"
        )

    # Comparisons

    def __eq__(self, other: Any) -> Expr:  # type: ignore[override]
        if other is None:
            return IsNull(self)
        return Comparison(ComparisonOp.EQ, self, wrap(other))

    def __ne__(self, other: Any) -> Expr:  # type: ignore[override]
        if other is None:
            return IsNull(self, negated=True)
        return Comparison(ComparisonOp.NE, self, wrap(other))

    def __lt__(self, other: Any) -> Comparison:
        return Comparison(ComparisonOp.LT, self, wrap(other))

    def __le__(self, other: Any) -> Comparison:
        return Comparison(ComparisonOp.LE, self, wrap(other))

    def __gt__(self, other: Any) -> Comparison:
        return Comparison(ComparisonOp.GT, self, wrap(other))

    def __ge__(self, other: Any) -> Comparison:
        return Comparison(ComparisonOp.GE, self, wrap(other))

    # Logic

    def __and__(self, other: Any) -> Logical:
        return Logical(LogicalOp.AND, (self, wrap(other)))

    def __rand__(self, other: Any) -> Logical:
        return Logical(LogicalOp.AND, (wrap(other), self))

    def __or__(self, other: Any) -> Logical:
        return Logical(LogicalOp.OR, (self, wrap(other)))

    def __ror__(self, other: Any) -> Logical:
        return Logical(LogicalOp.OR, (wrap(other), self))

    def __invert__(self) -> Logical:
        return Logical(LogicalOp.NOT, (self,))

    # Arithmetic

    def __add__(self, other: Any) -> Arithmetic:
        return Arithmetic(ArithmeticOp.ADD, self, wrap(other))

    def __radd__(self, other: Any) -> Arithmetic:
        return Arithmetic(ArithmeticOp.ADD, wrap(other), self)

    def __sub__(self, other: Any) -> Arithmetic:
        return Arithmetic(ArithmeticOp.SUB, self, wrap(other))

    def __rsub__(self, other: Any) -> Arithmetic:
        return Arithmetic(ArithmeticOp.SUB, wrap(other), self)

    def __mul__(self, other: Any) -> Arithmetic:
        return Arithmetic(ArithmeticOp.MUL, self, wrap(other))

    def __rmul__(self, other: Any) -> Arithmetic:
        return Arithmetic(ArithmeticOp.MUL, wrap(other), self)

    def __truediv__(self, other: Any) -> Arithmetic:
        return Arithmetic(ArithmeticOp.DIV, self, wrap(other))

    def __rtruediv__(self, other: Any) -> Arithmetic:
        return Arithmetic(ArithmeticOp.DIV, wrap(other), self)

    # Helpers

    def is_null(self) -> IsNull:
        return IsNull(self)

    def is_not_null(self) -> IsNull:
        return IsNull(self, negated=True)

    def like(self, pattern: str) -> Like:
        return Like(self, pattern)

    def contains(self, text: str) -> Like:
        return Like(self, f"%{text}%")

    def startswith(self, text: str) -> Like:
        return Like(self, f"{text}%")

    def endswith(self, text: str) -> Like:
        return Like(self, f"%{text}")

    def lower(self) -> Function:
        return Function(ScalarFunction.LOWER, self)

    def upper(self) -> Function:
        return Function(ScalarFunction.UPPER, self)

    def length(self) -> Function:
        return Function(ScalarFunction.LENGTH, self)


@dataclass(frozen=True, eq=False)
class Column(Expr):
    """Reference to a field by dotted path (``Title``, ``Movie.Title``).

    Attribute access extends the path, so ``col("Actor").Movie.Title`` is
    ``Actor.Movie.Title``.
    """

    path: str

    def __getattr__(self, name: str) -> Column:
        if name.startswith("_"):
            raise AttributeError(name)
        return Column(f"{self.path}.{name}")

    def render(self) -> str:
        return self.path


@dataclass(frozen=True, eq=False)
class Outer(Expr):
    """Correlated reference to a field of the enclosing query's row."""

    path: str

    def render(self) -> str:
        return f"outer.{self.path}"


@dataclass(frozen=True, eq=False)
class Literal(Expr):
    """A constant value."""

    value: Any

    def render(self) -> str:
        return repr(self.value)


@dataclass(frozen=True, eq=False)
class Comparison(Expr):
    """Binary comparison (e.g. ``Release > 2000``)."""

    op: ComparisonOp
    left: Expr
    right: Expr

    def children(self) -> tuple[Expr, ...]:
        return (self.left, self.right)

    def render(self) -> str:
        return f"({self.left.render()} {self.op.value} {self.right.render()})"


@dataclass(frozen=True, eq=False)
class Logical(Expr):
    """Logical AND / OR over operands, or NOT over a single operand."""

    op: LogicalOp
    operands: tuple[Expr, ...]

    def children(self) -> tuple[Expr, ...]:
        return self.operands

    def render(self) -> str:
        if self.op == LogicalOp.NOT:
            return f"NOT {self.operands[0].render()}"
        joined = f" {self.op.value} ".join(o.render() for o in self.operands)
        return f"({joined})"


@dataclass(frozen=True, eq=False)
class IsNull(Expr):
    """IS NULL / IS NOT NULL test."""

    operand: Expr
    negated: bool = False

    def children(self) -> tuple[Expr, ...]:
        return (self.operand,)

    def render(self) -> str:
        suffix = "IS NOT NULL" if self.negated else "IS NULL"
        return f"({self.operand.render()} {suffix})"


@dataclass(frozen=True, eq=False)
class Like(Expr):
    """SQL LIKE pattern match (``%`` any run, ``_`` one char, ASCII case-insensitive)."""

    operand: Expr
    pattern: str

    def children(self) -> tuple[Expr, ...]:
        return (self.operand,)

    def render(self) -> str:
        return f"({self.operand.render()} LIKE {self.pattern!r})"


@dataclass(frozen=True, eq=False)
class Arithmetic(Expr):
    """Binary arithmetic over numeric operands."""

    op: ArithmeticOp
    left: Expr
    right: Expr

    def children(self) -> tuple[Expr, ...]:
        return (self.left, self.right)

    def render(self) -> str:
        return f"({self.left.render()} {self.op.value} {self.right.render()})"


@dataclass(frozen=True, eq=False)
class Function(Expr):
    """Built-in scalar function call."""

    function: ScalarFunction
    operand: Expr

    def children(self) -> tuple[Expr, ...]:
        return (self.operand,)

    def render(self) -> str:
        return f"{self.function.value}({self.operand.render()})"


@dataclass(frozen=True, eq=False)
class AggregateCall(Expr):
    """Aggregate over the items of a group (``COUNT(*)``, ``MAX(Release)``).

    Only valid in projections and filters over grouped rows.
    """

    function: AggregateFunction
    operand: Expr | None = None

    def children(self) -> tuple[Expr, ...]:
        return () if self.operand is None else (self.operand,)

    def render(self) -> str:
        arg = "*" if self.operand is None else self.operand.render()
        return f"{self.function.name}({arg})"


@dataclass(frozen=True, eq=False)
class ClientCall(Expr):
    """Call to an arbitrary Python function.

    Client calls are evaluated in-process only; relational backends cannot
    express them.
    """

    fn: Callable[..., Any]
    args: tuple[Expr, ...]
    returns: SemanticType
    name: str = ""

    def children(self) -> tuple[Expr, ...]:
        return self.args

    @property
    def display_name(self) -> str:
        return self.name or getattr(self.fn, "__qualname__", "client_fn")

    def render(self) -> str:
        args = ", ".join(a.render() for a in self.args)
        return f"{self.display_name}({args})"


@dataclass(frozen=True, eq=False)
class BoundField(Expr):
    """A field reference resolved by the planner.

    Attributes:
        binding: Name of the row binding (entity alias or value name)
        path: Member names from the bound entity to the field, traversing
            to-one relations. Empty for value bindings.
        relations: Relations traversed, one per hop
        type: Semantic type of the referenced value
        nullable: Whether the value may be None
        depth: 0 for the current row, n for the n-th enclosing query row
    """

    binding: str
    path: tuple[str, ...]
    type: SemanticType
    nullable: bool = False
    relations: tuple[RelationDescriptor, ...] = ()
    depth: int = 0

    @property
    def field_name(self) -> str:
        return self.path[-1] if self.path else self.binding

    def render(self) -> str:
        ref = ".".join((self.binding, *self.path))
        prefix = "^" * self.depth
        return f"{prefix}{ref}:{self.type.value}"


def wrap(value: Any) -> Expr:
    """Wrap a Python value as a Literal unless it is already an expression."""
    if isinstance(value, Expr):
        return value
    return Literal(value)


def col(path: str) -> Column:
    """Reference a field by dotted path."""
    return Column(path)


def lit(value: Any) -> Literal:
    """A literal constant."""
    return Literal(value)


def outer(path: str) -> Outer:
    """Reference a field of the enclosing query row from a ``let`` sub-query."""
    return Outer(path)


def client(
    fn: Callable[..., Any],
    *args: Any,
    returns: SemanticType = SemanticType.BOOLEAN,
    name: str = "",
) -> ClientCall:
    """Call a Python function per row (in-process evaluation only)."""
    return ClientCall(fn, tuple(_selector(a) for a in args), returns, name)


def _selector(value: Any) -> Expr:
    if isinstance(value, str):
        return Column(value)
    return wrap(value)


def count(field: str | Expr | None = None) -> AggregateCall:
    """COUNT(*) over a group, or COUNT of non-null values of a field."""
    return AggregateCall(AggregateFunction.COUNT, None if field is None else _selector(field))


def min_(field: str | Expr) -> AggregateCall:
    return AggregateCall(AggregateFunction.MIN, _selector(field))


def max_(field: str | Expr) -> AggregateCall:
    return AggregateCall(AggregateFunction.MAX, _selector(field))


def sum_(field: str | Expr) -> AggregateCall:
    return AggregateCall(AggregateFunction.SUM, _selector(field))


def average(field: str | Expr) -> AggregateCall:
    return AggregateCall(AggregateFunction.AVERAGE, _selector(field))


class FieldProxy:
    """Attribute-style access to fields, for lambda selectors.

    ``F.Release > 2000`` is ``col("Release") > 2000``; a proxy created with a
    prefix qualifies every name (``FieldProxy("Movie").Id`` is ``Movie.Id``).
    """

    def __init__(self, prefix: str | None = None) -> None:
        self._prefix = prefix

    def _qualify(self, name: str) -> str:
        return f"{self._prefix}.{name}" if self._prefix else name

    def __getattr__(self, name: str) -> Column:
        if name.startswith("_"):
            raise AttributeError(name)
        return Column(self._qualify(name))

    def __getitem__(self, name: str) -> Column:
        return Column(self._qualify(name))

    def __repr__(self) -> str:
        return f"FieldProxy({self._prefix!r})"


F = FieldProxy()
