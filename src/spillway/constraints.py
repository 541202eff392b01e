"""Row-level predicates used to drop rows before they occupy Block space."""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from typing_extensions import override


class ValueSet(ABC):
    """The set of values a single column may take."""

    null_allowed: bool = False

    @abstractmethod
    def contains_value(self, value: Any) -> bool:
        """Return True if a non-null value belongs to the set."""
        ...

    def contains(self, value: Any) -> bool:
        if value is None:
            return self.null_allowed
        try:
            return self.contains_value(value)
        except TypeError:
            # Values that cannot be compared with the set are outside it.
            return False


class AllOrNoneValueSet(ValueSet):
    """Either every non-null value or none of them."""

    def __init__(self, all_values: bool, null_allowed: bool = False) -> None:
        self.all_values = all_values
        self.null_allowed = null_allowed

    @override
    def contains_value(self, value: Any) -> bool:
        return self.all_values


class EquatableValueSet(ValueSet):
    """An explicit allow-list (or deny-list when ``white_list`` is False) of values."""

    def __init__(self, values: Iterable[Any], white_list: bool = True, null_allowed: bool = False) -> None:
        self.values = frozenset(values)
        self.white_list = white_list
        self.null_allowed = null_allowed

    @override
    def contains_value(self, value: Any) -> bool:
        return (value in self.values) == self.white_list


@dataclass(frozen=True)
class Range:
    """
    An interval over comparable values.

    A bound of None is unbounded on that side.
    """

    low: Any = None
    high: Any = None
    low_inclusive: bool = True
    high_inclusive: bool = True

    @classmethod
    def all(cls) -> "Range":
        return cls()

    @classmethod
    def equal(cls, value: Any) -> "Range":
        return cls(value, value)

    @classmethod
    def greater_than(cls, value: Any) -> "Range":
        return cls(low=value, low_inclusive=False)

    @classmethod
    def greater_than_or_equal(cls, value: Any) -> "Range":
        return cls(low=value)

    @classmethod
    def less_than(cls, value: Any) -> "Range":
        return cls(high=value, high_inclusive=False)

    @classmethod
    def less_than_or_equal(cls, value: Any) -> "Range":
        return cls(high=value)

    @classmethod
    def range(
        cls, low: Any, low_inclusive: bool, high: Any, high_inclusive: bool
    ) -> "Range":
        return cls(low, high, low_inclusive, high_inclusive)

    def includes(self, value: Any) -> bool:
        if self.low is not None:
            if value < self.low or (value == self.low and not self.low_inclusive):
                return False
        if self.high is not None:
            if value > self.high or (value == self.high and not self.high_inclusive):
                return False
        return True


class SortedRangeSet(ValueSet):
    """A union of ranges."""

    def __init__(self, ranges: Iterable[Range], null_allowed: bool = False) -> None:
        self.ranges = tuple(ranges)
        self.null_allowed = null_allowed

    @override
    def contains_value(self, value: Any) -> bool:
        return any(r.includes(value) for r in self.ranges)


class ConstraintEvaluator:
    """
    Decide whether a row may enter a Block.

    Holds one ValueSet per constrained column. Columns without a constraint
    admit every value. Evaluation is pure: the same inputs always give the
    same answer.
    """

    def __init__(self, constraints: Mapping[str, ValueSet] | None = None) -> None:
        self._constraints = dict(constraints or {})

    @classmethod
    def empty(cls) -> "ConstraintEvaluator":
        """Evaluator that admits every row."""
        return cls()

    @property
    def constrained_columns(self) -> list[str]:
        return list(self._constraints)

    @property
    def is_empty(self) -> bool:
        return not self._constraints

    def apply(self, column: str, value: Any) -> bool:
        """
        Test one column value.

        Args:
            column: Column name.
            value: Candidate value (None is a null).

        Returns:
            bool: True if the column is unconstrained or the value is in its set.
        """
        value_set = self._constraints.get(column)
        if value_set is None:
            return True
        return value_set.contains(value)

    def apply_row(self, row: Mapping[str, Any]) -> bool:
        """
        Test every constrained column of a row.

        All constraints are evaluated, none are skipped after a first failure.
        A constrained column that is absent from the row is tested as a null.
        """
        results = [self.apply(column, row.get(column)) for column in self._constraints]
        return all(results)
