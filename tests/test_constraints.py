"""Tests for ConstraintEvaluator and value sets."""

from unittest.mock import Mock

from spillway.constraints import (
    AllOrNoneValueSet,
    ConstraintEvaluator,
    EquatableValueSet,
    Range,
    SortedRangeSet,
)


def test_empty_evaluator_admits_everything() -> None:
    """Test the evaluator without constraints."""
    evaluator = ConstraintEvaluator.empty()

    assert evaluator.is_empty
    assert evaluator.apply("anything", 42)
    assert evaluator.apply_row({"a": 1, "b": None})


def test_unconstrained_column_is_admitted() -> None:
    """Test that only constrained columns are checked."""
    evaluator = ConstraintEvaluator({"year": EquatableValueSet([2020])})

    assert evaluator.constrained_columns == ["year"]
    assert evaluator.apply("month", 13)
    assert not evaluator.apply("year", 2019)


def test_equatable_value_set() -> None:
    """Test allow-lists and deny-lists."""
    allow = EquatableValueSet(["a", "b"])
    deny = EquatableValueSet(["a", "b"], white_list=False)

    assert allow.contains("a")
    assert not allow.contains("c")
    assert not deny.contains("a")
    assert deny.contains("c")


def test_null_handling() -> None:
    """Test that nulls follow null_allowed rather than the values."""
    assert not EquatableValueSet([1]).contains(None)
    assert EquatableValueSet([1], null_allowed=True).contains(None)
    assert AllOrNoneValueSet(False, null_allowed=True).contains(None)
    assert not AllOrNoneValueSet(True).contains(None)
    assert AllOrNoneValueSet(True).contains(5)


def test_ranges() -> None:
    """Test range bounds and inclusiveness."""
    assert Range.all().includes(-10**9)
    assert Range.equal(5).includes(5)
    assert not Range.equal(5).includes(6)
    assert not Range.greater_than(5).includes(5)
    assert Range.greater_than_or_equal(5).includes(5)
    assert not Range.less_than(5).includes(5)
    assert Range.less_than_or_equal(5).includes(5)

    window = Range.range(1, False, 10, True)
    assert not window.includes(1)
    assert window.includes(2)
    assert window.includes(10)
    assert not window.includes(11)


def test_sorted_range_set() -> None:
    """Test a union of ranges."""
    value_set = SortedRangeSet([Range.less_than(0), Range.range(10, True, 20, False)])

    assert value_set.contains(-1)
    assert not value_set.contains(0)
    assert value_set.contains(10)
    assert not value_set.contains(20)


def test_incomparable_values_are_rejected() -> None:
    """Test values that cannot be ordered against the range bounds."""
    value_set = SortedRangeSet([Range.greater_than(10)])

    assert not value_set.contains("eleven")


def test_apply_row() -> None:
    """Test row filtering over several constraints."""
    evaluator = ConstraintEvaluator(
        {
            "year": SortedRangeSet([Range.greater_than_or_equal(2000)]),
            "state": EquatableValueSet(["WA", "OR"]),
        }
    )

    assert evaluator.apply_row({"year": 2001, "state": "WA", "other": "x"})
    assert not evaluator.apply_row({"year": 1999, "state": "WA"})
    assert not evaluator.apply_row({"year": 2001, "state": "CA"})
    # A missing constrained column is a null
    assert not evaluator.apply_row({"year": 2001})


def test_apply_row_evaluates_every_constraint() -> None:
    """Test that evaluation does not stop at the first rejecting column."""
    first = Mock(spec=EquatableValueSet)
    first.contains.return_value = False
    second = Mock(spec=EquatableValueSet)
    second.contains.return_value = True
    evaluator = ConstraintEvaluator({"a": first, "b": second})

    assert not evaluator.apply_row({"a": 1, "b": 2})
    first.contains.assert_called_once_with(1)
    second.contains.assert_called_once_with(2)


def test_evaluation_is_deterministic() -> None:
    """Test that the same row always gets the same answer."""
    evaluator = ConstraintEvaluator({"id": SortedRangeSet([Range.range(0, True, 100, False)])})
    rows = [{"id": i} for i in range(-5, 105, 7)]

    first = [evaluator.apply_row(row) for row in rows]
    second = [evaluator.apply_row(row) for row in rows]

    assert first == second
    assert any(first) and not all(first)
