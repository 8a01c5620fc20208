"""Error taxonomy for the query engine.

Build-time errors (QueryBuildError) are raised while registering entities,
composing expressions, or lowering them into plans. They never leave partial
state behind: the caller can fix the expression and retry.

Execution-time errors (QueryExecutionError) are raised while rows are being
pulled. They move the result iterator into its FAILED state and are never
retried automatically.
"""

from __future__ import annotations

from typing import Sequence


class QueryError(Exception):
    """Base class for all query engine errors."""

    pass


class QueryBuildError(QueryError):
    """Raised when a query or schema is malformed."""

    pass


class UnknownEntity(QueryBuildError):
    """Raised when an entity name is not registered."""

    def __init__(self, entity: str) -> None:
        super().__init__(f"Unknown entity '{entity}'")
        self.entity = entity


class UnknownField(QueryBuildError):
    """Raised when a field path cannot be resolved."""

    def __init__(self, field: str, entity: str | None = None, message: str | None = None) -> None:
        if message is None:
            where = f" on entity '{entity}'" if entity else ""
            message = f"Unknown field '{field}'{where}"
        super().__init__(message)
        self.field = field
        self.entity = entity


class AmbiguousField(UnknownField):
    """Raised when a name matches more than one field or output column."""

    def __init__(self, field: str, candidates: Sequence[str]) -> None:
        super().__init__(
            field,
            message=f"Ambiguous field '{field}' (matches {', '.join(candidates)})",
        )
        self.candidates = list(candidates)


class TypeMismatch(QueryBuildError):
    """Raised when operand types are incompatible."""

    def __init__(self, message: str, expected: object = None, actual: object = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class DuplicateEntity(QueryBuildError):
    """Raised when an entity name is registered twice."""

    def __init__(self, entity: str) -> None:
        super().__init__(f"Entity '{entity}' is already registered")
        self.entity = entity


class RegistryFrozen(QueryBuildError):
    """Raised when registering into a frozen registry."""

    pass


class AmbiguousJoin(QueryBuildError):
    """Raised when a join predicate cannot be reduced to equality conditions.

    There is no implicit cartesian fallback: a join condition must be one or
    more equalities between a left-side field and a right-side field.
    """

    pass


class PlanValidationError(QueryBuildError):
    """Raised when lowering finds one or more defects.

    All defects found in the expression tree are collected so the caller
    can fix them in one pass.
    """

    def __init__(self, errors: Sequence[QueryBuildError]) -> None:
        self.errors = list(errors)
        lines = "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(f"Plan validation failed with {len(self.errors)} error(s):\n{lines}")


class EmptyAggregate(QueryError):
    """Raised when MIN, MAX or AVERAGE is applied to an empty group.

    COUNT and SUM are defined as 0 for empty input and never raise this.
    """

    def __init__(self, function: str, alias: str | None = None) -> None:
        target = f" for '{alias}'" if alias else ""
        super().__init__(f"Aggregate {function.upper()}{target} applied to an empty group")
        self.function = function
        self.alias = alias


class QueryExecutionError(QueryError):
    """Raised while a plan is being executed."""

    pass


class SourceError(QueryExecutionError):
    """Raised when the data source fails while rows are being pulled."""

    pass


class QueryTimeout(QueryExecutionError, TimeoutError):
    """Raised when a query exceeds its caller-supplied timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Query exceeded timeout of {timeout:g}s")
        self.timeout = timeout


class UnsupportedOperation(QueryExecutionError):
    """Raised when a target adapter cannot express a plan step."""

    def __init__(self, message: str, backend: str | None = None) -> None:
        super().__init__(message)
        self.backend = backend


class QueryCancelled(QueryExecutionError):
    """Raised when a result iterator has been cancelled."""

    pass


class PlanConsumed(QueryExecutionError):
    """Raised when a logical plan is executed a second time."""

    pass
