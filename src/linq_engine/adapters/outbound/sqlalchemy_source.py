"""Relational Data Source implementation backed by SQLAlchemy.

Entity scans issue a column-explicit SELECT against the entity's table;
compiled queries from the SQL target adapter are passed straight to the
driver. Driver values are coerced back into the Python type of each
field's semantic type.

Timeouts:
    On SQLite a progress handler aborts the running statement once the
    connection's deadline has passed; other drivers rely on the result
    iterator checking the deadline between rows.
"""

from __future__ import annotations

import time
from typing import Any, Iterator

from sqlalchemy import column, create_engine, select, table
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from linq_engine.domain.entities.entity import EntityDescriptor
from linq_engine.domain.errors import QueryTimeout, SourceError
from linq_engine.domain.value_objects import coerce_value
from linq_engine.infrastructure.logging import get_logger
from linq_engine.ports.outbound.target_adapter import CompiledQuery

logger = get_logger(__name__)

# SQLite virtual-machine instructions between progress handler calls
PROGRESS_INTERVAL = 1000


class SQLAlchemyConnection:
    """Connection to a relational store.

    Thread Safety:
        Owned by a single result iterator; never shared.
    """

    def __init__(self, conn: Connection, timeout: float | None = None) -> None:
        self._conn = conn
        self._timeout = timeout
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._closed = False
        if self._deadline is not None and conn.dialect.name == "sqlite":
            dbapi_conn = conn.connection.dbapi_connection
            dbapi_conn.set_progress_handler(self._progress, PROGRESS_INTERVAL)

    @property
    def closed(self) -> bool:
        return self._closed

    def scan(self, entity: EntityDescriptor) -> Iterator[dict[str, Any]]:
        stmt = select(*[column(f.name) for f in entity.fields]).select_from(
            table(entity.table_name)
        )
        for values in self._run(stmt):
            yield {
                f.name: coerce_value(v, f.type) for f, v in zip(entity.fields, values)
            }

    def lookup(self, entity: EntityDescriptor, field: str, value: Any) -> dict[str, Any] | None:
        if value is None:
            return None
        stmt = (
            select(*[column(f.name) for f in entity.fields])
            .select_from(table(entity.table_name))
            .where(column(field) == value)
            .limit(1)
        )
        for values in self._run(stmt):
            return {f.name: coerce_value(v, f.type) for f, v in zip(entity.fields, values)}
        return None

    def execute(self, compiled: CompiledQuery) -> Iterator[tuple[Any, ...]]:
        logger.debug("executing_compiled_query", backend=compiled.backend, query=compiled.text)
        yield from self._run_text(compiled.text)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._deadline is not None and self._conn.dialect.name == "sqlite":
                self._conn.connection.dbapi_connection.set_progress_handler(None, 0)
            self._conn.close()
        except SQLAlchemyError as e:
            logger.warning("connection_close_failed", error=str(e))

    def _progress(self) -> int:
        # Non-zero aborts the running SQLite statement.
        return 1 if self._expired() else 0

    def _expired(self) -> bool:
        return self._deadline is not None and time.monotonic() > self._deadline

    def _run(self, stmt: Any) -> Iterator[tuple[Any, ...]]:
        self._check_open()
        try:
            result = self._conn.execute(stmt)
            for row in result:
                yield tuple(row)
        except SQLAlchemyError as e:
            raise self._translate(e) from e

    def _run_text(self, sql: str) -> Iterator[tuple[Any, ...]]:
        self._check_open()
        try:
            result = self._conn.exec_driver_sql(sql)
            for row in result:
                yield tuple(row)
        except SQLAlchemyError as e:
            raise self._translate(e) from e

    def _translate(self, error: SQLAlchemyError) -> Exception:
        if isinstance(error, OperationalError) and self._expired():
            assert self._timeout is not None
            return QueryTimeout(self._timeout)
        return SourceError(f"Data source error: {error}")

    def _check_open(self) -> None:
        if self._closed:
            raise SourceError("Connection is closed")


class SQLAlchemyDataSource:
    """Data source for a relational store reached through SQLAlchemy.

    Example:
        >>> source = SQLAlchemyDataSource("sqlite:///movies.db")
        >>> engine = QueryEngine(registry, source)
    """

    def __init__(self, engine_or_url: Engine | str, *, echo: bool = False) -> None:
        if isinstance(engine_or_url, str):
            self._engine = self._create_engine(engine_or_url, echo)
            self._owns_engine = True
        else:
            self._engine = engine_or_url
            self._owns_engine = False

    @staticmethod
    def _create_engine(url: str, echo: bool) -> Engine:
        if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:"):
            # One shared connection, or every checkout would see a new empty database.
            return create_engine(
                url,
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        return create_engine(url, echo=echo, pool_pre_ping=True)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def name(self) -> str:
        return self._engine.dialect.name

    @property
    def dialect(self) -> str:
        """sqlglot dialect name matching the engine."""
        name = self._engine.dialect.name
        return "postgres" if name == "postgresql" else name

    @property
    def accepts_compiled(self) -> bool:
        return True

    def connect(self, *, timeout: float | None = None) -> SQLAlchemyConnection:
        try:
            conn = self._engine.connect()
        except SQLAlchemyError as e:
            raise SourceError(f"Cannot connect to {self.name}: {e}") from e
        logger.debug("source_connected", backend=self.name)
        return SQLAlchemyConnection(conn, timeout)

    def dispose(self) -> None:
        """Dispose of the engine's pool if this source created it."""
        if self._owns_engine:
            self._engine.dispose()
