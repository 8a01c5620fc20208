"""Unit tests for the query planner."""

from __future__ import annotations

import pytest

from linq_engine.domain.entities.expression import BoundField, col, count, outer
from linq_engine.domain.entities.plan import (
    AggregateStep,
    BindingKind,
    FilterStep,
    JoinStep,
    LetStep,
    Operation,
    ProjectStep,
    ScanStep,
)
from linq_engine.domain.entities.query_node import (
    AggregateNode,
    FilterNode,
    GroupByNode,
    JoinNode,
    LetNode,
    LimitNode,
    OrderByNode,
    ProjectNode,
    SortKey,
    SourceNode,
)
from linq_engine.domain.errors import (
    AmbiguousField,
    AmbiguousJoin,
    PlanConsumed,
    PlanValidationError,
    TypeMismatch,
    UnknownEntity,
    UnknownField,
)
from linq_engine.domain.services.planner import QueryPlanner
from linq_engine.domain.services.registry import EntityRegistry
from linq_engine.domain.value_objects import AggregateFunction, JoinKind, SemanticType


@pytest.fixture
def planner(registry: EntityRegistry) -> QueryPlanner:
    return QueryPlanner(registry)


def movies() -> SourceNode:
    return SourceNode("Movie")


def actors() -> SourceNode:
    return SourceNode("Actor")


@pytest.mark.unit
class TestLowering:
    """Tests for lowering query nodes into plans."""

    def test_post_order(self, planner: QueryPlanner) -> None:
        """Test that inputs are lowered before the steps that use them."""
        node = ProjectNode(
            FilterNode(movies(), col("Release") > 2000),
            (("Title", col("Title")),),
        )
        plan = planner.lower(node)

        assert [s.operation for s in plan] == [Operation.SCAN, Operation.FILTER, Operation.PROJECT]
        assert plan[1].inputs == (0,)
        assert plan[2].inputs == (1,)
        assert plan.shape.column_names() == ["Title"]

    def test_fields_are_bound(self, planner: QueryPlanner) -> None:
        """Test that field references are bound to a binding and a type."""
        plan = planner.lower(FilterNode(movies(), col("Release") > 2000))
        step = plan[1]
        assert isinstance(step, FilterStep)

        bound = step.predicate.left
        assert isinstance(bound, BoundField)
        assert bound.binding == "Movie"
        assert bound.path == ("Release",)
        assert bound.type == SemanticType.INTEGER

    def test_lowering_is_deterministic(self, planner: QueryPlanner) -> None:
        """Test that lowering the same node twice gives equal plans."""
        node = OrderByNode(
            FilterNode(movies(), (col("Release") > 1990) & (col("Title") != "Heat")),
            (SortKey(col("Title")),),
        )
        first, second = planner.lower(node), planner.lower(node)

        assert first == second
        assert first.describe() == second.describe()

    def test_describe(self, planner: QueryPlanner) -> None:
        """Test the plan description text."""
        plan = planner.lower(FilterNode(movies(), col("Release") > 2000))
        assert plan.describe() == (
            "0: SCAN Movie AS Movie\n"
            "1: FILTER (Movie.Release:integer > 2000) <- [0]"
        )

    def test_plan_consumed_once(self, planner: QueryPlanner) -> None:
        """Test that a plan can be consumed only once."""
        plan = planner.lower(movies())
        plan.mark_consumed()
        with pytest.raises(PlanConsumed):
            plan.mark_consumed()

    def test_native_shape_without_projection(self, planner: QueryPlanner) -> None:
        """Test that an empty projection keeps the entity's fields."""
        plan = planner.lower(ProjectNode(movies(), ()))
        assert plan.shape.column_names() == ["Id", "Title", "Release", "Rating"]

    def test_limit(self, planner: QueryPlanner) -> None:
        """Test lowering a limit with an offset."""
        plan = planner.lower(LimitNode(movies(), 2, 1))
        assert plan.root.operation == Operation.LIMIT
        assert plan.root.describe_payload() == "2 OFFSET 1"


@pytest.mark.unit
class TestValidation:
    """Tests for type checking and error collection."""

    def test_unknown_entity(self, planner: QueryPlanner) -> None:
        """Test that an unknown source is reported."""
        with pytest.raises(PlanValidationError) as exc_info:
            planner.lower(SourceNode("Director"))
        assert isinstance(exc_info.value.errors[0], UnknownEntity)

    def test_collects_all_errors(self, planner: QueryPlanner) -> None:
        """Test that every defect is collected before raising."""
        node = ProjectNode(movies(), (("A", col("Budget")), ("B", col("Title") + 1)))
        with pytest.raises(PlanValidationError) as exc_info:
            planner.lower(node)
        kinds = [type(e) for e in exc_info.value.errors]
        assert kinds == [UnknownField, TypeMismatch]
        assert "2 error(s)" in str(exc_info.value)

    def test_string_compared_with_integer(self, planner: QueryPlanner) -> None:
        """Test that comparing a string with an integer is a type mismatch."""
        errors = planner.validate(FilterNode(movies(), col("Title") > 5))
        assert len(errors) == 1
        assert isinstance(errors[0], TypeMismatch)

    def test_predicate_must_be_boolean(self, planner: QueryPlanner) -> None:
        """Test that a filter predicate must be boolean."""
        errors = planner.validate(FilterNode(movies(), col("Release")))
        assert isinstance(errors[0], TypeMismatch)
        assert errors[0].expected == SemanticType.BOOLEAN

    def test_duplicate_output_names(self, planner: QueryPlanner) -> None:
        """Test that duplicate output names are ambiguous."""
        errors = planner.validate(ProjectNode(movies(), (("X", col("Title")), ("X", col("Id")))))
        assert isinstance(errors[0], AmbiguousField)

    def test_sum_requires_numeric(self, planner: QueryPlanner) -> None:
        """Test that SUM needs a numeric operand."""
        errors = planner.validate(AggregateNode(movies(), AggregateFunction.SUM, col("Title"), "Sum"))
        assert isinstance(errors[0], TypeMismatch)

    def test_aggregate_call_outside_group(self, planner: QueryPlanner) -> None:
        """Test that an aggregate call needs grouped rows."""
        errors = planner.validate(ProjectNode(movies(), (("N", count()),)))
        assert isinstance(errors[0], TypeMismatch)

    def test_outer_reference_outside_let(self, planner: QueryPlanner) -> None:
        """Test that an outer reference needs an enclosing query."""
        errors = planner.validate(FilterNode(actors(), col("MovieId") == outer("Id")))
        assert isinstance(errors[0], UnknownField)


@pytest.mark.unit
class TestJoinLowering:
    """Tests for join analysis."""

    def test_foreign_key_equi_join(self, planner: QueryPlanner) -> None:
        """Test reducing a foreign-key equality to join keys."""
        plan = planner.lower(JoinNode(movies(), actors(), col("Movie.Id") == col("Actor.MovieId")))
        join = plan.root
        assert isinstance(join, JoinStep)

        assert [k.render() for k in join.left_keys] == ["Movie.Id:integer"]
        assert [k.render() for k in join.right_keys] == ["Actor.MovieId:integer"]
        assert [b.name for b in join.shape.bindings] == ["Movie", "Actor"]
        assert "Movie.Title" in join.shape.column_names()

    def test_sides_may_be_written_in_either_order(self, planner: QueryPlanner) -> None:
        """Test that key sides are assigned whatever the operand order."""
        plan = planner.lower(JoinNode(movies(), actors(), col("Actor.MovieId") == col("Movie.Id")))
        assert plan.root.left_keys[0].render() == "Movie.Id:integer"

    def test_non_equality_is_ambiguous(self, planner: QueryPlanner) -> None:
        """Test that a non-equality predicate is an ambiguous join."""
        errors = planner.validate(JoinNode(movies(), actors(), col("Movie.Id") > col("Actor.MovieId")))
        assert isinstance(errors[0], AmbiguousJoin)

    def test_same_side_comparison_is_ambiguous(self, planner: QueryPlanner) -> None:
        """Test that comparing two fields of one side is an ambiguous join."""
        errors = planner.validate(JoinNode(movies(), actors(), col("Movie.Id") == col("Movie.Release")))
        assert isinstance(errors[0], AmbiguousJoin)

    def test_incompatible_key_types(self, planner: QueryPlanner) -> None:
        """Test that join keys of different types are rejected."""
        errors = planner.validate(JoinNode(movies(), actors(), col("Movie.Title") == col("Actor.MovieId")))
        assert isinstance(errors[0], TypeMismatch)

    def test_alias_clash(self, planner: QueryPlanner) -> None:
        """Test that both join sides need distinct aliases."""
        errors = planner.validate(JoinNode(movies(), movies(), col("Id") == col("Id")))
        assert isinstance(errors[0], AmbiguousJoin)

    def test_self_join_with_alias(self, planner: QueryPlanner) -> None:
        """Test joining an entity with itself under another alias."""
        node = JoinNode(movies(), SourceNode("Movie", "Other"), col("Movie.Id") == col("Other.Id"))
        plan = planner.lower(node)
        assert [b.name for b in plan.shape.bindings] == ["Movie", "Other"]

    def test_left_join_makes_right_nullable(self, planner: QueryPlanner) -> None:
        """Test that a left join makes the right binding nullable."""
        node = JoinNode(movies(), actors(), col("Movie.Id") == col("Actor.MovieId"), JoinKind.LEFT)
        plan = planner.lower(node)
        assert plan.shape.get("Actor").nullable
        assert not plan.shape.get("Movie").nullable

    def test_unqualified_field_in_both_sides(self, planner: QueryPlanner) -> None:
        """Test that a field present on both sides must be qualified."""
        join = JoinNode(movies(), actors(), col("Movie.Id") == col("Actor.MovieId"))
        errors = planner.validate(ProjectNode(join, (("Id", col("Id")),)))
        assert isinstance(errors[0], AmbiguousField)


@pytest.mark.unit
class TestGroupAndLet:
    """Tests for grouping, aggregation and let lowering."""

    def test_group_shape(self, planner: QueryPlanner) -> None:
        """Test the Key and Items shape of grouped rows."""
        plan = planner.lower(GroupByNode(actors(), col("MovieId")))

        assert plan.shape.grouped
        assert [b.name for b in plan.shape.bindings] == ["Key", "Items"]
        assert plan.shape.get("Items").type == SemanticType.SEQUENCE
        assert plan.shape.get("Key").nullable

    def test_per_group_aggregate(self, planner: QueryPlanner) -> None:
        """Test that an aggregate over groups runs once per group."""
        node = AggregateNode(GroupByNode(actors(), col("MovieId")), AggregateFunction.COUNT, None, "Count")
        plan = planner.lower(node)
        step = plan.root
        assert isinstance(step, AggregateStep)

        assert step.per_group
        assert plan.shape.column_names() == ["Key", "Count"]

    def test_having_over_groups(self, planner: QueryPlanner) -> None:
        """Test a filter on an aggregate of each group."""
        grouped = GroupByNode(actors(), col("MovieId"))
        node = ProjectNode(
            FilterNode(grouped, count() > 1),
            (("MovieId", col("Key")), ("Actors", count())),
        )
        plan = planner.lower(node)
        assert plan.shape.column_names() == ["MovieId", "Actors"]
        assert plan.shape.get("Actors").type == SemanticType.INTEGER

    def test_average_is_float(self, planner: QueryPlanner) -> None:
        """Test that AVERAGE is typed as float."""
        plan = planner.lower(AggregateNode(movies(), AggregateFunction.AVERAGE, col("Release"), "Average"))
        assert plan.shape.get("Average").type == SemanticType.FLOAT

    def test_scalar_let(self, planner: QueryPlanner) -> None:
        """Test lowering a correlated scalar let into a nested plan."""
        sub = AggregateNode(
            FilterNode(actors(), col("MovieId") == outer("Id")),
            AggregateFunction.COUNT,
            None,
            "Count",
        )
        plan = planner.lower(FilterNode(LetNode(movies(), "Cast", sub), col("Cast") > 1))
        let = plan[1]
        assert isinstance(let, LetStep)

        assert let.scalar
        assert isinstance(let.subplan[0], ScanStep)
        correlated = let.subplan[1].predicate.right
        assert isinstance(correlated, BoundField)
        assert correlated.depth == 1
        assert correlated.binding == "Movie"
        assert plan.shape.get("Cast").kind == BindingKind.VALUE

    def test_sequence_let(self, planner: QueryPlanner) -> None:
        """Test that a non-aggregated let binds a sequence."""
        sub = FilterNode(actors(), col("MovieId") == outer("Id"))
        plan = planner.lower(LetNode(movies(), "Cast", sub))

        assert not plan.root.scalar
        assert plan.shape.get("Cast").type == SemanticType.SEQUENCE

    def test_let_name_clash(self, planner: QueryPlanner) -> None:
        """Test that a let name must not shadow a field."""
        sub = AggregateNode(actors(), AggregateFunction.COUNT, None, "Count")
        errors = planner.validate(LetNode(movies(), "Title", sub))
        assert isinstance(errors[0], AmbiguousField)

    def test_min_let_is_nullable(self, planner: QueryPlanner) -> None:
        """Test that a let MIN is nullable."""
        sub = AggregateNode(
            FilterNode(actors(), col("MovieId") == outer("Id")),
            AggregateFunction.MIN,
            col("Name"),
            "First",
        )
        plan = planner.lower(ProjectNode(LetNode(movies(), "First", sub), (("First", col("First")),)))
        assert isinstance(plan.root, ProjectStep)
        assert plan.shape.get("First").nullable
