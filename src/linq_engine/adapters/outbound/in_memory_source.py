"""In-memory Data Source implementation.

Serves entity instances from plain Python collections, the way an
object-relational layer serves already-loaded objects. Instances may be
objects (dataclasses, plain classes) or mappings.

Relation navigation uses the member named after the relation when the
instance carries it; otherwise the connection looks the target up by
foreign key in the collections it holds.
"""

from __future__ import annotations

from typing import Any, Iterable, Iterator, Mapping

from linq_engine.domain.entities.entity import EntityDescriptor
from linq_engine.domain.errors import SourceError
from linq_engine.domain.services.evaluator import has_member, read_member


class InMemoryConnection:
    """Connection over in-memory collections.

    Foreign-key indexes are built lazily, once per (entity, field), and live
    as long as the connection.
    """

    def __init__(self, collections: Mapping[str, list[Any]]) -> None:
        self._collections = collections
        self._indexes: dict[tuple[str, str], dict[Any, Any]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def scan(self, entity: EntityDescriptor) -> Iterator[Any]:
        self._check_open()
        try:
            rows = self._collections[entity.name]
        except KeyError:
            raise SourceError(f"No collection registered for entity '{entity.name}'") from None
        return iter(rows)

    def lookup(self, entity: EntityDescriptor, field: str, value: Any) -> Any | None:
        self._check_open()
        if value is None:
            return None
        key = (entity.name, field)
        index = self._indexes.get(key)
        if index is None:
            index = {}
            for instance in self.scan(entity):
                if not has_member(instance, field):
                    continue
                index.setdefault(read_member(instance, field), instance)
            self._indexes[key] = index
        return index.get(value)

    def close(self) -> None:
        self._closed = True
        self._indexes.clear()

    def _check_open(self) -> None:
        if self._closed:
            raise SourceError("Connection is closed")


class InMemoryDataSource:
    """Data source over in-memory collections keyed by entity name.

    Example:
        >>> source = InMemoryDataSource({"Movie": movies, "Actor": actors})
        >>> conn = source.connect()
        >>> list(conn.scan(registry.get("Movie")))
    """

    def __init__(self, collections: Mapping[str, Iterable[Any]] | None = None, name: str = "memory") -> None:
        self._collections: dict[str, list[Any]] = {}
        self._name = name
        for entity, rows in (collections or {}).items():
            self.add(entity, rows)

    @property
    def name(self) -> str:
        return self._name

    @property
    def accepts_compiled(self) -> bool:
        return False

    def add(self, entity: str, rows: Iterable[Any]) -> None:
        """Register (or replace) the collection for an entity."""
        self._collections[entity] = list(rows)

    def connect(self, *, timeout: float | None = None) -> InMemoryConnection:
        return InMemoryConnection(self._collections)
