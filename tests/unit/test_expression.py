"""Unit tests for scalar expressions."""

from __future__ import annotations

import pytest

from linq_engine.domain.entities.expression import (
    F,
    AggregateCall,
    Arithmetic,
    Column,
    Comparison,
    FieldProxy,
    IsNull,
    Like,
    Literal,
    Logical,
    client,
    col,
    count,
    max_,
    outer,
)
from linq_engine.domain.value_objects import (
    AggregateFunction,
    ArithmeticOp,
    ComparisonOp,
    LogicalOp,
    SemanticType,
)


@pytest.mark.unit
class TestExpressionOperators:
    """Tests for operator overloading on expressions."""

    def test_comparison(self) -> None:
        """Test building a comparison with an operator."""
        expr = col("Release") > 2000

        assert isinstance(expr, Comparison)
        assert expr.op == ComparisonOp.GT
        assert isinstance(expr.right, Literal)
        assert expr.render() == "(Release > 2000)"

    def test_equality_with_none_is_null_test(self) -> None:
        """Test that == None and != None become null tests."""
        assert isinstance(col("Rating") == None, IsNull)  # noqa: E711
        negated = col("Rating") != None  # noqa: E711
        assert isinstance(negated, IsNull) and negated.negated

    def test_logical_composition(self) -> None:
        """Test composing predicates with & and ~."""
        expr = (col("Release") > 2000) & ~(col("Title") == "Tenet")

        assert isinstance(expr, Logical)
        assert expr.op == LogicalOp.AND
        assert expr.operands[1].op == LogicalOp.NOT
        assert expr.render() == "((Release > 2000) AND NOT (Title = 'Tenet'))"

    def test_reflected_arithmetic(self) -> None:
        """Test arithmetic with the literal on the left."""
        expr = 2030 - col("Release")

        assert isinstance(expr, Arithmetic)
        assert expr.op == ArithmeticOp.SUB
        assert isinstance(expr.left, Literal)

    def test_no_truth_value(self) -> None:
        """Test that expressions cannot be used as Python booleans."""
        with pytest.raises(TypeError, match="no truth value"):
            bool(col("Release") > 2000)
        with pytest.raises(TypeError):
            1990 < col("Release") < 2000  # noqa: B015

    def test_string_helpers(self) -> None:
        """Test the string predicate and function helpers."""
        assert col("Title").startswith("The").pattern == "The%"
        assert col("Title").endswith("x").pattern == "%x"
        assert isinstance(col("Title").contains("at"), Like)
        assert col("Title").lower().render() == "LOWER(Title)"

    def test_walk_is_pre_order(self) -> None:
        """Test that walk visits parents before children."""
        expr = (col("A") + 1) > col("B")
        kinds = [type(e).__name__ for e in expr.walk()]
        assert kinds == ["Comparison", "Arithmetic", "Column", "Literal", "Column"]


@pytest.mark.unit
class TestExpressionConstructors:
    """Tests for expression constructors and field proxies."""

    def test_column_attribute_extends_path(self) -> None:
        """Test extending a column path by attribute access."""
        assert col("Actor").Movie.Title.path == "Actor.Movie.Title"

    def test_field_proxy(self) -> None:
        """Test building columns through the field proxy."""
        assert (F.Release > 1).left.path == "Release"
        assert FieldProxy("Movie").Id.path == "Movie.Id"
        assert FieldProxy("Movie")["Title"].path == "Movie.Title"

    def test_proxy_private_names(self) -> None:
        with pytest.raises(AttributeError):
            F._hidden

    def test_outer_reference(self) -> None:
        assert outer("Id").render() == "outer.Id"

    def test_aggregate_calls(self) -> None:
        """Test the aggregate call constructors."""
        star = count()
        assert isinstance(star, AggregateCall)
        assert star.operand is None
        assert star.render() == "COUNT(*)"
        assert max_("Release").function == AggregateFunction.MAX
        assert isinstance(max_("Release").operand, Column)

    def test_client_call(self) -> None:
        """Test wrapping a Python callable as a client call."""
        call = client(str.isupper, "Title", name="is_upper")

        assert call.returns == SemanticType.BOOLEAN
        assert call.render() == "is_upper(Title)"
        assert isinstance(call.args[0], Column)
