"""Data Source port for reading entity rows.

This outbound port defines the contract for the stores queries run
against: in-memory collections or a relational database.

A data source hands out connections. A connection is a scoped resource:
the execution engine acquires it when the first row is pulled and releases
it on every exit path (exhaustion, close, failure, cancellation).
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Iterable, Iterator, Protocol, runtime_checkable

from linq_engine.domain.entities.entity import EntityDescriptor

if TYPE_CHECKING:
    from linq_engine.ports.outbound.target_adapter import CompiledQuery


class SourceConnection(Protocol):
    """Protocol for an open session against a data source.

    Thread Safety:
        A connection is owned by one result iterator and is never shared.
    """

    @abstractmethod
    def scan(self, entity: EntityDescriptor) -> Iterable[Any]:
        """Return every instance of an entity.

        Instances are objects or mappings exposing the entity's fields by
        name.

        Raises:
            SourceError: If the store cannot be read.
        """
        ...

    @abstractmethod
    def lookup(self, entity: EntityDescriptor, field: str, value: Any) -> Any | None:
        """Return the first instance whose ``field`` equals ``value``.

        Used to follow to-one relations by foreign key.

        Raises:
            SourceError: If the store cannot be read.
        """
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the connection. Closing twice is a no-op."""
        ...


@runtime_checkable
class QueryConnection(SourceConnection, Protocol):
    """A connection that can also run compiled backend queries."""

    @abstractmethod
    def execute(self, compiled: CompiledQuery) -> Iterator[tuple[Any, ...]]:
        """Run a compiled query and yield raw value tuples.

        Tuples are in the order of ``compiled.columns``.

        Raises:
            SourceError: If the backend rejects the query or fails mid-way.
        """
        ...


class DataSource(Protocol):
    """Protocol for data sources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name used in logs and metrics (e.g. "memory", "sqlite")."""
        ...

    @property
    @abstractmethod
    def accepts_compiled(self) -> bool:
        """Whether connections implement QueryConnection."""
        ...

    @abstractmethod
    def connect(self, *, timeout: float | None = None) -> SourceConnection:
        """Open a connection.

        Args:
            timeout: Seconds from now after which long-running backend
                calls should abort with QueryTimeout.

        Raises:
            SourceError: If the store is unreachable.
        """
        ...
