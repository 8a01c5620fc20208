"""Unit tests for lazy result iteration."""

from __future__ import annotations

import time
from typing import Any, Callable, Iterator

import pytest

from linq_engine.application.results import ExecutionState, ResultIterator
from linq_engine.domain.entities.row import ResultRow, ResultSet
from linq_engine.domain.errors import QueryCancelled, QueryTimeout, SourceError
from linq_engine.infrastructure.metrics import MetricsRegistry


class RecordingConnection:
    def __init__(self) -> None:
        self.closed = False

    def scan(self, entity: Any) -> list[Any]:
        return []

    def lookup(self, entity: Any, field: str, value: Any) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class RecordingSource:
    """Data source that records every connection it hands out."""

    def __init__(self, fail: Exception | None = None) -> None:
        self.connections: list[RecordingConnection] = []
        self.timeouts: list[float | None] = []
        self._fail = fail

    @property
    def name(self) -> str:
        return "recording"

    @property
    def accepts_compiled(self) -> bool:
        return False

    def connect(self, *, timeout: float | None = None) -> RecordingConnection:
        if self._fail is not None:
            raise self._fail
        self.timeouts.append(timeout)
        conn = RecordingConnection()
        self.connections.append(conn)
        return conn


class Producer:
    """Row producer yielding ``N`` values, with optional delay or failure."""

    def __init__(
        self,
        values: list[int],
        delay: float = 0.0,
        fail_after: int | None = None,
        error: Exception | None = None,
    ) -> None:
        self.values = values
        self.delay = delay
        self.fail_after = fail_after
        self.error = error or SourceError("boom")
        self.finalized = False

    def __call__(self, conn: Any, check: Callable[[], None]) -> Iterator[ResultRow]:
        def rows() -> Iterator[ResultRow]:
            try:
                for i, value in enumerate(self.values):
                    if self.fail_after is not None and i == self.fail_after:
                        raise self.error
                    check()
                    if self.delay:
                        time.sleep(self.delay)
                    yield ResultRow(["N"], [value])
            finally:
                self.finalized = True

        return rows()


def make(
    source: RecordingSource,
    producer: Producer,
    timeout: float | None = None,
    metrics: MetricsRegistry | None = None,
) -> ResultIterator:
    return ResultIterator(source, producer, ["N"], backend="recording", timeout=timeout, metrics=metrics)


@pytest.mark.unit
class TestLaziness:
    """Tests for deferred execution."""

    def test_nothing_happens_before_first_pull(self) -> None:
        """Test that no connection is opened before the first row is pulled."""
        source = RecordingSource()
        it = make(source, Producer([1, 2]))

        assert source.connections == []
        assert it.state == ExecutionState.NOT_STARTED

        assert next(it).N == 1
        assert len(source.connections) == 1
        assert it.state == ExecutionState.RUNNING

    def test_exhaustion_releases_connection(self) -> None:
        """Test that reaching the end releases the connection."""
        source = RecordingSource()
        it = make(source, Producer([1, 2]))

        assert [row.N for row in it] == [1, 2]
        assert it.state == ExecutionState.COMPLETED
        assert source.connections[0].closed
        assert it.rows_returned == 2
        with pytest.raises(StopIteration):
            next(it)

    def test_to_list(self) -> None:
        """Test materialising every row."""
        result = make(RecordingSource(), Producer([1, 2, 3])).to_list()

        assert isinstance(result, ResultSet)
        assert result.columns == ("N",)
        assert result.to_dicts() == [{"N": 1}, {"N": 2}, {"N": 3}]

    def test_timeout_passed_to_connect(self) -> None:
        """Test that the timeout reaches the data source."""
        source = RecordingSource()
        make(source, Producer([1]), timeout=5.0).to_list()
        assert source.timeouts == [5.0]


@pytest.mark.unit
class TestFailure:
    """Tests for the FAILED state."""

    def test_failure_is_sticky(self) -> None:
        """Test that later pulls re-raise the first failure."""
        source = RecordingSource()
        it = make(source, Producer([1, 2, 3], fail_after=1))

        assert next(it).N == 1
        with pytest.raises(SourceError) as first:
            next(it)
        with pytest.raises(SourceError) as second:
            next(it)

        assert first.value is second.value
        assert it.state == ExecutionState.FAILED
        assert it.error is first.value
        assert source.connections[0].closed

    def test_foreign_exception_is_wrapped(self) -> None:
        """Test that a non-query exception is wrapped as SourceError."""
        it = make(RecordingSource(), Producer([1, 2], fail_after=0, error=OSError("disk gone")))

        with pytest.raises(SourceError, match="disk gone") as exc_info:
            next(it)
        assert isinstance(exc_info.value.__cause__, OSError)

    def test_connect_failure(self) -> None:
        """Test that a failed connect fails the execution."""
        it = make(RecordingSource(fail=ConnectionError("refused")), Producer([1]))

        with pytest.raises(SourceError, match="refused"):
            next(it)
        assert it.state == ExecutionState.FAILED

    def test_timeout(self) -> None:
        """Test that a slow producer raises QueryTimeout."""
        source = RecordingSource()
        it = make(source, Producer(list(range(10)), delay=0.05), timeout=0.01)

        with pytest.raises(QueryTimeout):
            it.to_list()
        assert it.state == ExecutionState.FAILED
        assert source.connections[0].closed


@pytest.mark.unit
class TestCancelAndClose:
    """Tests for cancellation and explicit release."""

    def test_cancel_between_rows(self) -> None:
        """Test that cancel takes effect at the next pull."""
        source = RecordingSource()
        producer = Producer([1, 2, 3])
        it = make(source, producer)

        assert next(it).N == 1
        it.cancel()
        with pytest.raises(QueryCancelled):
            next(it)
        with pytest.raises(QueryCancelled):
            next(it)

        assert it.state == ExecutionState.CANCELLED
        assert it.rows_returned == 1
        assert source.connections[0].closed
        assert producer.finalized

    def test_cancel_before_start_never_connects(self) -> None:
        """Test that cancelling before the first pull never connects."""
        source = RecordingSource()
        it = make(source, Producer([1]))
        it.cancel()

        with pytest.raises(QueryCancelled):
            next(it)
        assert source.connections == []
        assert it.state == ExecutionState.CANCELLED

    def test_close_mid_iteration(self) -> None:
        """Test that close releases the connection mid-iteration."""
        source = RecordingSource()
        producer = Producer([1, 2, 3])
        it = make(source, producer)

        next(it)
        it.close()

        assert it.state == ExecutionState.CLOSED
        assert source.connections[0].closed
        assert producer.finalized
        with pytest.raises(StopIteration):
            next(it)

    def test_close_before_start(self) -> None:
        """Test closing an iterator that never started."""
        source = RecordingSource()
        it = make(source, Producer([1]))
        it.close()

        assert it.state == ExecutionState.CLOSED
        assert source.connections == []

    def test_with_block_releases(self) -> None:
        """Test that leaving a with block releases the connection."""
        source = RecordingSource()
        with make(source, Producer([1, 2, 3])) as it:
            next(it)
        assert source.connections[0].closed

    def test_cancel_after_completion_is_noop(self) -> None:
        """Test that cancelling a finished iterator changes nothing."""
        it = make(RecordingSource(), Producer([1]))
        it.to_list()
        it.cancel()
        assert it.state == ExecutionState.COMPLETED


@pytest.mark.unit
class TestMetrics:
    """Tests for execution metrics."""

    def test_completed_query(self, metrics_registry: MetricsRegistry) -> None:
        """Test the counters of a completed execution."""
        make(RecordingSource(), Producer([1, 2, 3]), metrics=metrics_registry).to_list()
        registry = metrics_registry.registry

        assert registry.get_sample_value(
            "linq_queries_total", {"backend": "recording", "status": "completed"}
        ) == 1.0
        assert registry.get_sample_value("linq_rows_returned_total", {"backend": "recording"}) == 3.0
        assert registry.get_sample_value("linq_open_connections") == 0.0

    def test_open_connection_gauge(self, metrics_registry: MetricsRegistry) -> None:
        """Test that the gauge tracks held connections."""
        it = make(RecordingSource(), Producer([1, 2]), metrics=metrics_registry)
        registry = metrics_registry.registry

        next(it)
        assert registry.get_sample_value("linq_open_connections") == 1.0
        it.close()
        assert registry.get_sample_value("linq_open_connections") == 0.0
        assert registry.get_sample_value(
            "linq_queries_total", {"backend": "recording", "status": "closed"}
        ) == 1.0

    def test_failed_query(self, metrics_registry: MetricsRegistry) -> None:
        """Test that a failed execution is counted."""
        it = make(RecordingSource(), Producer([1], fail_after=0), metrics=metrics_registry)
        with pytest.raises(SourceError):
            it.to_list()

        assert metrics_registry.registry.get_sample_value(
            "linq_queries_total", {"backend": "recording", "status": "failed"}
        ) == 1.0
