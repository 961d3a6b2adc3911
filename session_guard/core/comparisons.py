from __future__ import annotations

from typing import Any

from .models import Operator

_NUMERIC_OPERATORS = {
    Operator.GT.value,
    Operator.GTE.value,
    Operator.LT.value,
    Operator.LTE.value,
}


def _is_number(value: Any) -> bool:
    # bool is an int subclass but never a number for rule purposes
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strict_equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, list) or isinstance(expected, list):
        return False
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    if _is_number(actual) and _is_number(expected):
        return actual == expected
    if isinstance(actual, str) and isinstance(expected, str):
        return str(actual) == str(expected)
    return type(actual) is type(expected) and actual == expected


def _contains_strict(items: list, actual: Any) -> bool:
    return any(_strict_equals(actual, item) for item in items)


def compare(actual: Any, operator: Any, expected: Any) -> bool:
    """
    Evaluate ``actual <operator> expected``.

    Never raises: operands of the wrong type, a non-list for ``in``/``not_in``
    and unknown operators all fail to match.
    """
    op = operator.value if isinstance(operator, Operator) else operator

    if op == Operator.EQ.value:
        return _strict_equals(actual, expected)

    if op == Operator.NEQ.value:
        return not _strict_equals(actual, expected)

    if op in _NUMERIC_OPERATORS:
        if not (_is_number(actual) and _is_number(expected)):
            return False
        if op == Operator.GT.value:
            return actual > expected
        if op == Operator.GTE.value:
            return actual >= expected
        if op == Operator.LT.value:
            return actual < expected
        return actual <= expected

    if op == Operator.IN.value:
        if not isinstance(expected, list):
            return False
        return _contains_strict(expected, actual)

    if op == Operator.NOT_IN.value:
        if not isinstance(expected, list):
            return False
        return not _contains_strict(expected, actual)

    if op in (Operator.CONTAINS.value, Operator.NOT_CONTAINS.value):
        if not (isinstance(actual, str) and isinstance(expected, str)):
            return False
        found = expected.lower() in actual.lower()
        return found if op == Operator.CONTAINS.value else not found

    return False
