"""Unit tests for the Volcano-model query executor."""

from __future__ import annotations

from typing import Any, Iterator

import pytest

from linq_engine.adapters.outbound.in_memory_source import InMemoryDataSource
from linq_engine.application.executor import (
    LimitOperator,
    Operator,
    QueryExecutor,
    SortOperator,
    sort_key,
)
from linq_engine.domain.entities.expression import col, count, outer
from linq_engine.domain.entities.query_node import (
    AggregateNode,
    FilterNode,
    GroupByNode,
    JoinNode,
    LetNode,
    LimitNode,
    OrderByNode,
    ProjectNode,
    QueryNode,
    SortKey,
    SourceNode,
)
from linq_engine.domain.entities.row import ResultRow
from linq_engine.domain.errors import EmptyAggregate, SourceError
from linq_engine.domain.services.planner import QueryPlanner
from linq_engine.domain.services.registry import EntityRegistry
from linq_engine.domain.value_objects import AggregateFunction, JoinKind, SortDirection


class ListOperator(Operator):
    """Operator yielding fixed frames, recording open/close calls."""

    def __init__(self, frames: list[dict[str, Any]]) -> None:
        self._frames = frames
        self._idx = 0
        self.opened = 0
        self.closed = 0

    def open(self) -> None:
        self.opened += 1
        self._idx = 0

    def next(self) -> dict[str, Any] | None:
        if self._idx >= len(self._frames):
            return None
        frame = self._frames[self._idx]
        self._idx += 1
        return frame

    def close(self) -> None:
        self.closed += 1


class Runner:
    """Lowers and runs query nodes over an in-memory source."""

    def __init__(self, registry: EntityRegistry, source: InMemoryDataSource) -> None:
        self.planner = QueryPlanner(registry)
        self.executor = QueryExecutor(registry)
        self.source = source

    def rows(self, node: QueryNode) -> list[ResultRow]:
        plan = self.planner.lower(node)
        conn = self.source.connect()
        try:
            return list(self.executor.rows(plan, self.executor.context(conn)))
        finally:
            conn.close()

    def dicts(self, node: QueryNode) -> list[dict[str, Any]]:
        return [row.to_dict() for row in self.rows(node)]


@pytest.fixture
def runner(registry: EntityRegistry, memory_source: InMemoryDataSource) -> Runner:
    return Runner(registry, memory_source)


def movies() -> SourceNode:
    return SourceNode("Movie")


def actors() -> SourceNode:
    return SourceNode("Actor")


def fk_join(kind: JoinKind = JoinKind.INNER) -> JoinNode:
    return JoinNode(movies(), actors(), col("Movie.Id") == col("Actor.MovieId"), kind)


@pytest.mark.unit
class TestOperators:
    """Tests for individual operators."""

    def test_operator_iteration_opens_and_closes(self) -> None:
        """Test that iterating an operator opens and closes it once."""
        op = ListOperator([{"a": 1}, {"a": 2}])
        assert list(op) == [{"a": 1}, {"a": 2}]
        assert op.opened == 1
        assert op.closed == 1

    def test_limit_operator(self) -> None:
        child = ListOperator([{"a": i} for i in range(5)])
        assert list(LimitOperator(child, 2, offset=1)) == [{"a": 1}, {"a": 2}]

    def test_limit_without_count(self) -> None:
        """Test an offset with no count."""
        child = ListOperator([{"a": i} for i in range(3)])
        assert list(LimitOperator(child, None, offset=2)) == [{"a": 2}]

    def test_sort_key_places_none_first(self) -> None:
        assert sorted([3, None, 1], key=sort_key) == [None, 1, 3]

    def test_sort_operator_closes_child(self, registry: EntityRegistry, memory_source: InMemoryDataSource) -> None:
        """Test that sorting releases its input after buffering it."""
        executor = QueryExecutor(registry)
        ctx = executor.context(memory_source.connect())
        child = ListOperator([])
        list(SortOperator(child, (), ctx, ()))
        assert child.closed == 1


@pytest.mark.unit
class TestFilterProjectOrder:
    """Tests for filtering, projection and ordering."""

    def test_filter_then_project(self, runner: Runner) -> None:
        """Test filtering then projecting a single field."""
        node = ProjectNode(FilterNode(movies(), col("Release") > 2000), (("Title", col("Title")),))
        assert runner.dicts(node) == [{"Title": "Inception"}, {"Title": "Tenet"}]

    def test_titles_released_after_2000(self, registry: EntityRegistry) -> None:
        """Test the titles of movies released after 2000."""
        source = InMemoryDataSource(
            {"Movie": [{"Id": 1, "Title": "A", "Release": 1990, "Rating": None},
                       {"Id": 2, "Title": "B", "Release": 2005, "Rating": None}]}
        )
        node = ProjectNode(FilterNode(movies(), col("Release") > 2000), (("Title", col("Title")),))
        assert Runner(registry, source).dicts(node) == [{"Title": "B"}]

    def test_filter_composition(self, runner: Runner) -> None:
        """Test that two filters equal one filter over the conjunction."""
        p1 = col("Release") > 1996
        p2 = col("Title").startswith("T")
        chained = runner.dicts(FilterNode(FilterNode(movies(), p1), p2))
        combined = runner.dicts(FilterNode(movies(), p1 & p2))

        assert chained == combined
        assert [r["Title"] for r in chained] == ["The Matrix", "Tenet"]

    def test_null_predicate_excludes_row(self, runner: Runner) -> None:
        """Test that an unknown predicate drops the row."""
        rows = runner.dicts(FilterNode(movies(), col("Rating") > 8.5))
        assert [r["Title"] for r in rows] == ["Inception", "The Matrix"]

    def test_native_shape(self, runner: Runner) -> None:
        """Test that an unprojected row keeps every entity field."""
        rows = runner.rows(FilterNode(movies(), col("Id") == 1))
        assert rows[0].columns == ("Id", "Title", "Release", "Rating")
        assert rows[0].Title == "Heat"

    def test_order_is_stable(self, registry: EntityRegistry) -> None:
        """Test that equal keys keep their input order."""
        source = InMemoryDataSource(
            {"Actor": [
                {"Id": 1, "Name": "b", "MovieId": 2},
                {"Id": 2, "Name": "a", "MovieId": 1},
                {"Id": 3, "Name": "c", "MovieId": 2},
                {"Id": 4, "Name": "d", "MovieId": 1},
            ]}
        )
        node = OrderByNode(actors(), (SortKey(col("MovieId")),))
        rows = Runner(registry, source).dicts(node)
        assert [r["Id"] for r in rows] == [2, 4, 1, 3]

    def test_order_descending_with_nulls_last(self, runner: Runner) -> None:
        """Test descending order with None sorted last."""
        node = OrderByNode(movies(), (SortKey(col("Rating"), SortDirection.DESCENDING),))
        assert [r["Title"] for r in runner.dicts(node)] == ["Inception", "The Matrix", "Heat", "Tenet"]

    def test_order_multiple_keys(self, runner: Runner) -> None:
        """Test ordering by a primary and a secondary key."""
        node = OrderByNode(
            actors(),
            (SortKey(col("MovieId"), SortDirection.DESCENDING), SortKey(col("Name"))),
        )
        names = [r["Name"] for r in runner.dicts(node)]
        assert names == [
            "Carrie-Anne Moss",
            "Hugo Weaving",
            "Keanu Reeves",
            "Leonardo DiCaprio",
            "Al Pacino",
            "Robert De Niro",
            "Uncredited Extra",
        ]

    def test_limit_after_order(self, runner: Runner) -> None:
        node = LimitNode(OrderByNode(movies(), (SortKey(col("Release")),)), 2, 1)
        assert [r["Title"] for r in runner.dicts(node)] == ["The Matrix", "Inception"]

    def test_navigation_through_lookup(self, runner: Runner) -> None:
        """Test filtering on a related entity's field."""
        node = ProjectNode(
            FilterNode(actors(), col("Movie.Title") == "Heat"),
            (("Name", col("Name")),),
        )
        assert runner.dicts(node) == [{"Name": "Al Pacino"}, {"Name": "Robert De Niro"}]


@pytest.mark.unit
class TestJoin:
    """Tests for hash joins."""

    def test_inner_join_drops_unmatched(self, runner: Runner) -> None:
        """Test that an inner join drops rows without a match."""
        node = ProjectNode(fk_join(), (("Title", col("Movie.Title")), ("Name", col("Actor.Name"))))
        rows = runner.dicts(node)

        assert len(rows) == 6
        assert "Tenet" not in {r["Title"] for r in rows}
        assert all(r["Name"] is not None for r in rows)
        # Left input order, then right input order.
        assert [r["Name"] for r in rows[:2]] == ["Al Pacino", "Robert De Niro"]

    def test_left_join_pads_with_none(self, runner: Runner) -> None:
        """Test that a left join keeps unmatched left rows."""
        node = ProjectNode(
            fk_join(JoinKind.LEFT),
            (("Title", col("Movie.Title")), ("Name", col("Actor.Name"))),
        )
        rows = runner.dicts(node)

        assert len(rows) == 7
        assert rows[-1] == {"Title": "Tenet", "Name": None}

    def test_joined_native_shape_is_qualified(self, runner: Runner) -> None:
        """Test that joined columns are qualified by alias."""
        rows = runner.rows(fk_join())
        assert rows[0].columns[:2] == ("Movie.Id", "Movie.Title")
        assert rows[0]["Actor.Name"] == "Al Pacino"

    def test_none_keys_never_match(self, registry: EntityRegistry) -> None:
        """Test that None join keys never match each other."""
        source = InMemoryDataSource(
            {
                "Movie": [{"Id": 1, "Title": "A", "Release": 2000, "Rating": None}],
                "Actor": [{"Id": 1, "Name": "x", "MovieId": None}],
            }
        )
        assert Runner(registry, source).rows(fk_join()) == []


@pytest.mark.unit
class TestGroupAndAggregate:
    """Tests for grouping and aggregation."""

    def test_group_counts_sum_to_total(self, runner: Runner) -> None:
        """Test that per-group counts add up to the input size."""
        node = AggregateNode(GroupByNode(actors(), col("MovieId")), AggregateFunction.COUNT, None, "Count")
        rows = runner.dicts(node)

        assert rows == [
            {"Key": 1, "Count": 2},
            {"Key": 2, "Count": 1},
            {"Key": 3, "Count": 3},
            {"Key": None, "Count": 1},
        ]
        assert sum(r["Count"] for r in rows) == 7

    def test_group_items(self, runner: Runner) -> None:
        """Test that a group carries its rows as Items."""
        rows = runner.rows(GroupByNode(actors(), col("MovieId")))
        first = rows[0]

        assert first.Key == 1
        assert [item.Name for item in first.Items] == ["Al Pacino", "Robert De Niro"]

    def test_having(self, runner: Runner) -> None:
        """Test filtering groups on an aggregate."""
        grouped = GroupByNode(actors(), col("MovieId"))
        node = ProjectNode(
            FilterNode(grouped, count() > 1),
            (("MovieId", col("Key")), ("Actors", count())),
        )
        assert runner.dicts(node) == [{"MovieId": 1, "Actors": 2}, {"MovieId": 3, "Actors": 3}]

    def test_whole_input_aggregates(self, runner: Runner) -> None:
        """Test every aggregate over the whole input."""
        def value(fn: AggregateFunction, field: str | None) -> Any:
            node = AggregateNode(movies(), fn, None if field is None else col(field), "V")
            return runner.dicts(node)[0]["V"]

        assert value(AggregateFunction.COUNT, None) == 4
        assert value(AggregateFunction.COUNT, "Rating") == 3
        assert value(AggregateFunction.MIN, "Release") == 1995
        assert value(AggregateFunction.MAX, "Title") == "The Matrix"
        assert value(AggregateFunction.SUM, "Release") == 8024
        assert value(AggregateFunction.AVERAGE, "Release") == 2006.0

    def test_min_of_empty_input_fails(self, runner: Runner) -> None:
        """Test that MIN of no rows raises EmptyAggregate."""
        empty = FilterNode(movies(), col("Release") > 3000)
        with pytest.raises(EmptyAggregate):
            runner.rows(AggregateNode(empty, AggregateFunction.MIN, col("Release"), "Min"))

    def test_count_of_empty_input_is_zero(self, runner: Runner) -> None:
        """Test that COUNT and SUM of no rows are 0."""
        empty = FilterNode(movies(), col("Release") > 3000)
        assert runner.dicts(AggregateNode(empty, AggregateFunction.COUNT, None, "Count")) == [{"Count": 0}]
        assert runner.dicts(AggregateNode(empty, AggregateFunction.SUM, col("Release"), "Sum")) == [{"Sum": 0}]


@pytest.mark.unit
class TestLet:
    """Tests for correlated let sub-queries."""

    def test_scalar_let(self, runner: Runner) -> None:
        """Test a correlated count bound per movie."""
        sub = AggregateNode(
            FilterNode(actors(), col("MovieId") == outer("Id")),
            AggregateFunction.COUNT,
            None,
            "Count",
        )
        node = ProjectNode(
            LetNode(movies(), "Cast", sub),
            (("Title", col("Title")), ("Cast", col("Cast"))),
        )
        assert runner.dicts(node) == [
            {"Title": "Heat", "Cast": 2},
            {"Title": "Inception", "Cast": 1},
            {"Title": "The Matrix", "Cast": 3},
            {"Title": "Tenet", "Cast": 0},
        ]

    def test_scalar_min_let_over_no_rows_is_none(self, runner: Runner) -> None:
        """Test that a let MIN over no rows binds None."""
        sub = AggregateNode(
            FilterNode(actors(), col("MovieId") == outer("Id")),
            AggregateFunction.MIN,
            col("Name"),
            "Min",
        )
        node = ProjectNode(
            FilterNode(LetNode(movies(), "Lead", sub), col("Title") == "Tenet"),
            (("Lead", col("Lead")),),
        )
        assert runner.dicts(node) == [{"Lead": None}]

    def test_sequence_let(self, runner: Runner) -> None:
        """Test binding a sequence of related rows."""
        sub = ProjectNode(
            FilterNode(actors(), col("MovieId") == outer("Id")),
            (("Name", col("Name")),),
        )
        rows = runner.rows(FilterNode(LetNode(movies(), "Cast", sub), col("Id") == 1))
        assert [r.Name for r in rows[0].Cast] == ["Al Pacino", "Robert De Niro"]


@pytest.mark.unit
class TestSourceFailures:
    """Tests for data-source failures during execution."""

    def test_missing_collection(self, registry: EntityRegistry) -> None:
        """Test that scanning an unknown collection raises SourceError."""
        with pytest.raises(SourceError):
            Runner(registry, InMemoryDataSource({})).rows(movies())

    def test_failing_iterator_is_wrapped(self, registry: EntityRegistry) -> None:
        """Test that an error raised mid-scan becomes a SourceError."""
        def broken() -> Iterator[dict[str, Any]]:
            yield {"Id": 1, "Title": "Heat", "Release": 1995, "Rating": None}
            raise OSError("disk gone")

        class BrokenSource(InMemoryDataSource):
            def connect(self, *, timeout: float | None = None) -> Any:
                conn = super().connect(timeout=timeout)
                conn.scan = lambda entity: broken()  # type: ignore[method-assign]
                return conn

        with pytest.raises(SourceError, match="disk gone"):
            Runner(registry, BrokenSource({"Movie": []})).rows(movies())

    def test_null_instance_fails_the_scan(self, registry: EntityRegistry) -> None:
        """Test that a None in a collection raises instead of ending the scan."""
        source = InMemoryDataSource({
            "Movie": [
                {"Id": 1, "Title": "A", "Release": 2001, "Rating": None},
                None,
                {"Id": 2, "Title": "B", "Release": 2002, "Rating": None},
            ]
        })
        node = ProjectNode(movies(), (("Title", col("Title")),))

        with pytest.raises(SourceError, match="null instance"):
            Runner(registry, source).rows(node)
