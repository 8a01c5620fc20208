"""Lazy result iteration.

A ResultIterator is the state machine of one plan execution::

    NOT_STARTED -> RUNNING -> COMPLETED
                           -> FAILED
                           -> CANCELLED
                           -> CLOSED

Nothing touches the data source until the first row is pulled. The
connection is acquired then and released on every exit path: exhaustion,
failure, cancellation, explicit close, ``with``-block exit, and garbage
collection of an abandoned iterator.

A FAILED iterator re-raises the same error on every later pull; it never
restarts silently.
"""

from __future__ import annotations

import contextlib
import threading
import time
from enum import Enum
from typing import Any, Callable, Iterator, Sequence

from opentelemetry import trace

from linq_engine.domain.entities.row import ResultRow, ResultSet
from linq_engine.domain.errors import (
    QueryCancelled,
    QueryError,
    QueryTimeout,
    SourceError,
)
from linq_engine.infrastructure.logging import get_logger
from linq_engine.infrastructure.metrics import MetricsRegistry
from linq_engine.infrastructure.tracing import get_tracer
from linq_engine.ports.outbound.data_source import DataSource, SourceConnection

logger = get_logger(__name__)

RowProducer = Callable[[SourceConnection, Callable[[], None]], Iterator[ResultRow]]


class ExecutionState(Enum):
    """Lifecycle state of a result iterator."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CLOSED = "closed"

    @property
    def terminal(self) -> bool:
        return self not in (ExecutionState.NOT_STARTED, ExecutionState.RUNNING)


class ResultIterator(Iterator[ResultRow]):
    """Lazy iterator over the rows of one query execution.

    Args:
        source: Data source to connect to on the first pull.
        produce: Given the open connection and a between-rows check, returns
            the row iterator.
        columns: Output column names.
        backend: Backend name for logs and metrics.
        timeout: Seconds allowed from the first pull to the last row.
        metrics: Metrics registry, or None to record nothing.

    Thread Safety:
        Rows must be pulled from one thread; ``cancel()`` may be called
        from any thread.
    """

    def __init__(
        self,
        source: DataSource,
        produce: RowProducer,
        columns: Sequence[str],
        *,
        backend: str,
        timeout: float | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._source = source
        self._produce = produce
        self._columns = tuple(columns)
        self._backend = backend
        self._timeout = timeout
        self._metrics = metrics

        self._state = ExecutionState.NOT_STARTED
        self._cancel = threading.Event()
        self._connection: SourceConnection | None = None
        self._rows: Iterator[ResultRow] | None = None
        self._error: BaseException | None = None
        self._deadline: float | None = None
        self._started = 0.0
        self._count = 0
        self._span: trace.Span | None = None

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def columns(self) -> tuple[str, ...]:
        return self._columns

    @property
    def backend(self) -> str:
        return self._backend

    @property
    def rows_returned(self) -> int:
        return self._count

    @property
    def error(self) -> BaseException | None:
        return self._error

    def __iter__(self) -> ResultIterator:
        return self

    def __next__(self) -> ResultRow:
        state = self._state
        if state == ExecutionState.FAILED:
            assert self._error is not None
            raise self._error
        if state == ExecutionState.CANCELLED:
            raise QueryCancelled("Query was cancelled")
        if state in (ExecutionState.COMPLETED, ExecutionState.CLOSED):
            raise StopIteration
        if state == ExecutionState.NOT_STARTED:
            self._start()

        assert self._rows is not None
        try:
            self._check()
            row = next(self._rows)
        except StopIteration:
            self._finish(ExecutionState.COMPLETED)
            raise
        except QueryCancelled as e:
            self._finish(ExecutionState.CANCELLED, e)
            raise
        except QueryError as e:
            self._fail(e)
            raise
        except Exception as e:
            error = SourceError(f"Data source failed: {e}")
            error.__cause__ = e
            self._fail(error)
            raise error from e
        self._count += 1
        if self._metrics is not None:
            self._metrics.rows_returned_total.labels(backend=self._backend).inc()
        return row

    def to_list(self) -> ResultSet:
        """Pull every remaining row and return them as a ResultSet.

        Fails fast on the first error.
        """
        return ResultSet(self._columns, list(self))

    def cancel(self) -> None:
        """Request cancellation; takes effect before the next row.

        Rows already yielded are not retracted. Cancelling a finished
        iterator has no effect.
        """
        self._cancel.set()

    def close(self) -> None:
        """Stop iterating and release the connection."""
        if self._state.terminal:
            return
        self._finish(ExecutionState.CLOSED)

    def __enter__(self) -> ResultIterator:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    def __del__(self) -> None:
        if getattr(self, "_state", ExecutionState.CLOSED) == ExecutionState.RUNNING:
            with contextlib.suppress(Exception):
                self.close()

    def _start(self) -> None:
        if self._cancel.is_set():
            self._finish(ExecutionState.CANCELLED, QueryCancelled("Query was cancelled"))
            raise QueryCancelled("Query was cancelled")

        self._state = ExecutionState.RUNNING
        self._started = time.monotonic()
        if self._timeout is not None:
            self._deadline = self._started + self._timeout
        self._span = get_tracer().start_span(
            "linq.execute", attributes={"linq.backend": self._backend}
        )
        try:
            self._connection = self._source.connect(timeout=self._timeout)
        except QueryError as e:
            self._fail(e)
            raise
        except Exception as e:
            error = SourceError(f"Cannot connect to data source: {e}")
            self._fail(error)
            raise error from e
        if self._metrics is not None:
            self._metrics.open_connections.inc()
        logger.debug("query_started", backend=self._backend)
        self._rows = self._produce(self._connection, self._check)

    def _check(self) -> None:
        if self._cancel.is_set():
            raise QueryCancelled("Query was cancelled")
        if self._deadline is not None and time.monotonic() > self._deadline:
            assert self._timeout is not None
            raise QueryTimeout(self._timeout)

    def _fail(self, error: BaseException) -> None:
        self._error = error
        self._finish(ExecutionState.FAILED, error)

    def _finish(self, state: ExecutionState, error: BaseException | None = None) -> None:
        previous = self._state
        self._state = state
        self._release()
        if previous != ExecutionState.RUNNING:
            return

        elapsed = time.monotonic() - self._started
        if self._metrics is not None:
            self._metrics.queries_total.labels(backend=self._backend, status=state.value).inc()
            self._metrics.query_latency_seconds.labels(backend=self._backend).observe(elapsed)
        if error is None:
            logger.info(
                "query_finished",
                backend=self._backend,
                state=state.value,
                rows=self._count,
                duration_ms=round(elapsed * 1000, 3),
            )
        else:
            logger.warning(
                "query_failed",
                backend=self._backend,
                state=state.value,
                rows=self._count,
                error_type=type(error).__name__,
                error=str(error),
            )
        if self._span is not None:
            self._span.set_attribute("linq.rows", self._count)
            self._span.set_attribute("linq.state", state.value)
            if error is not None:
                self._span.record_exception(error)
                self._span.set_status(trace.Status(trace.StatusCode.ERROR, type(error).__name__))
            self._span.end()
            self._span = None

    def _release(self) -> None:
        rows, self._rows = self._rows, None
        if rows is not None and hasattr(rows, "close"):
            rows.close()
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            connection.close()
        finally:
            if self._metrics is not None:
                self._metrics.open_connections.dec()
            logger.debug("connection_released", backend=self._backend)

    def __repr__(self) -> str:
        return f"ResultIterator(backend={self._backend!r}, state={self._state.value}, rows={self._count})"
