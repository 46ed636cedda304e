"""
Metadata filters for vector search.

Builds (id, metadata) -> bool predicates from filter dictionaries of the form

    {"category": "food", "amount": [(">=", 10), ("<", 100)], "date": [(">=", date(2024, 1, 1))]}

Plain values match by equality and range filters are lists of
(operator, value) tuples.
"""

from datetime import date, datetime
from typing import Any, Mapping, Optional

from vaultsearch.types import FilterFn

# Operator mapping for range filters
# Each operator is a lambda that takes two values (a, b) and returns a boolean
OPERATORS = {
    '>=': lambda a, b: a >= b,
    '>': lambda a, b: a > b,
    '<=': lambda a, b: a <= b,
    '<': lambda a, b: a < b,
    '==': lambda a, b: a == b,
    '!=': lambda a, b: a != b,
}


def is_range_filter(value: object) -> bool:
    """
    Check if a value is a range filter (list of tuples).

    Args:
        value: The value to check.

    Returns:
        True if value is a list of (operator, value) tuples.
    """
    return (
        isinstance(value, list)
        and all(isinstance(v, tuple) and len(v) == 2 for v in value)
    )


def _coerce_date(value: Any, like: Any) -> Any:
    """
    Parse an ISO string into a date/datetime when compared against one.

    Metadata from callers or custom codecs may hold dates as ISO 8601 strings.
    """
    if not isinstance(value, str) or not isinstance(like, (date, datetime)):
        return value

    has_time = 'T' in value or ' ' in value
    try:
        if isinstance(like, datetime) or has_time:
            parsed = datetime.fromisoformat(value)
            if not isinstance(like, datetime):
                return parsed.date()
            return parsed
        return date.fromisoformat(value)
    except ValueError:
        return value


def _compare(op: str, actual: Any, expected: Any) -> bool:
    actual = _coerce_date(actual, expected)
    try:
        return OPERATORS[op](actual, expected)
    except TypeError:
        return False


def _matches(actual: Any, condition: Any) -> bool:
    if condition is None:
        return actual is None

    if is_range_filter(condition):
        if actual is None:
            return False
        return all(
            _compare(op, actual, op_value)
            for op, op_value in condition
            if op in OPERATORS and op_value is not None
        )

    return _compare('==', actual, condition)


def metadata_filter(filter_dict: Optional[Mapping[str, Any]]) -> Optional[FilterFn]:
    """
    Build a search filter from a filter dictionary.

    Args:
        filter_dict: Field name -> expected value, None, or range filter.

    Returns:
        A predicate usable as the filter argument of search(), or None for an
        empty filter so unfiltered searches stay cacheable.
    """
    if not filter_dict:
        return None

    conditions = dict(filter_dict)

    def predicate(vector_id: str, metadata: Optional[Any]) -> bool:
        if not isinstance(metadata, Mapping):
            return False
        return all(
            _matches(metadata.get(field), condition)
            for field, condition in conditions.items()
        )

    return predicate
