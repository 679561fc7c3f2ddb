"""Condition evaluation for ``condition`` and ``conditional_paths`` steps."""

import logging
from decimal import Decimal
from typing import Any, Mapping, Optional

from core.constants import ConditionOperator
from core.utils import to_decimal
from workflow.templating import get_nested_value, render_template

logger = logging.getLogger(__name__)


def _equal(left: Any, right: Any) -> bool:
    # Booleans are never equal to the numbers 1/0 here
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _numeric(value: Any) -> Optional[Decimal]:
    """Numbers and numeric strings (aggregates arrive as decimal strings) as Decimal."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal, str)):
        return None
    number = to_decimal(value.strip() if isinstance(value, str) else value)
    if number is None or not number.is_finite():
        return None
    return number


def evaluate_condition(condition: Mapping[str, Any], lookup: Mapping[str, Any]) -> bool:
    """Evaluate ``{field, operator, value}`` against the context.

    ``field`` is a dotted path into the context; ``value`` may contain
    ``{{...}}`` tokens. ``greaterThan``/``lessThan`` compare numeric strings
    as numbers. Unknown operators and incomparable operands evaluate to
    False.
    """
    condition = condition or {}
    field_value = get_nested_value(lookup, condition.get("field"))
    expected = render_template(condition.get("value"), lookup)
    operator = condition.get("operator")

    try:
        op = ConditionOperator(operator)
    except ValueError:
        logger.warning(f"Unknown condition operator '{operator}', evaluating to False")
        return False

    if op == ConditionOperator.EQUALS:
        return _equal(field_value, expected)
    if op == ConditionOperator.NOT_EQUALS:
        return not _equal(field_value, expected)
    if op == ConditionOperator.CONTAINS:
        if field_value is None or expected is None:
            return False
        if isinstance(field_value, (list, tuple)):
            return expected in field_value
        return str(expected) in str(field_value)
    if op == ConditionOperator.EXISTS:
        return field_value is not None

    left, right = _numeric(field_value), _numeric(expected)
    if left is None or right is None:
        left, right = field_value, expected
    try:
        if op == ConditionOperator.GREATER_THAN:
            return left > right
        return left < right
    except TypeError:
        return False


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _compare(left: Any, right: Any, predicate) -> bool:
    a, b = _numeric(left), _numeric(right)
    if a is None or b is None:
        return False
    return predicate(a, b)


PATH_OPERATORS = {
    "equals": lambda field, value: _text(field) == _text(value),
    "not_equals": lambda field, value: _text(field) != _text(value),
    "contains": lambda field, value: _text(value).lower() in _text(field).lower(),
    "not_contains": lambda field, value: _text(value).lower() not in _text(field).lower(),
    "in": lambda field, value: _text(field) in [v.strip() for v in _text(value).split(",")],
    "not_in": lambda field, value: _text(field) not in [v.strip() for v in _text(value).split(",")],
    "greater_than": lambda field, value: _compare(field, value, lambda a, b: a > b),
    "less_than": lambda field, value: _compare(field, value, lambda a, b: a < b),
    "greater_than_or_equal": lambda field, value: _compare(field, value, lambda a, b: a >= b),
    "less_than_or_equal": lambda field, value: _compare(field, value, lambda a, b: a <= b),
    "starts_with": lambda field, value: _text(field).startswith(_text(value)),
    "ends_with": lambda field, value: _text(field).endswith(_text(value)),
    "is_empty": lambda field, value: not _text(field).strip(),
    "is_not_empty": lambda field, value: bool(_text(field).strip()),
}


def match_path_condition(condition: Mapping[str, Any], lookup: Mapping[str, Any]) -> dict:
    """Evaluate one ``{field, operator, value}`` clause of a conditional path.

    Values compare as text; ``in``/``not_in`` take a comma-separated list
    and the ordering operators need numeric operands on both sides.

    Returns:
        ``{field, operator, value, field_value, matches}``
    """
    field = condition.get("field")
    operator = condition.get("operator")
    field_value = get_nested_value(lookup, field)
    expected = render_template(condition.get("value"), lookup)

    check = PATH_OPERATORS.get(operator)
    if check is None:
        logger.warning(f"Unknown path operator '{operator}', evaluating to False")
        matches = False
    else:
        matches = bool(check(field_value, expected))
    return {
        "field": field,
        "operator": operator,
        "value": expected,
        "field_value": field_value,
        "matches": matches,
    }
