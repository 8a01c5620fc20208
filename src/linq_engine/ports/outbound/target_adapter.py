"""Target Adapter port for compiling plans to backend queries.

Adapters are swappable per backend. The in-memory adapter accepts every
plan, so no plan is ever unexecutable even when a relational backend
declines it.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import Protocol

from linq_engine.domain.entities.plan import LogicalPlan, OutputColumn
from linq_engine.domain.value_objects import AggregateFunction


@dataclass(frozen=True)
class CompiledQuery:
    """A plan compiled for a backend.

    Attributes:
        text: Backend query text; identical plans compile to identical text
        backend: Name of the adapter that produced it
        columns: Output columns, in the order values are returned
        empty_aggregates: Output columns holding a bare MIN, MAX or AVERAGE;
            a NULL there means the aggregate had no input values
    """

    text: str
    backend: str
    columns: tuple[OutputColumn, ...]
    empty_aggregates: tuple[tuple[str, AggregateFunction], ...] = ()

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def __str__(self) -> str:
        return self.text


class TargetAdapter(Protocol):
    """Protocol for plan compilers."""

    @property
    @abstractmethod
    def backend(self) -> str:
        """Name of the backend this adapter targets."""
        ...

    @abstractmethod
    def compile(self, plan: LogicalPlan) -> CompiledQuery:
        """Compile a logical plan.

        Compiling does not consume the plan.

        Raises:
            UnsupportedOperation: If the plan contains a step or expression
                the backend cannot express.
        """
        ...
