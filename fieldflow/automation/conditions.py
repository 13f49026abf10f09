# fieldflow/automation/conditions.py
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from fieldflow.common.automation import Condition

logger = logging.getLogger(__name__)


def get_nested_value(data: Any, path: Optional[str]) -> Any:
    """Follow a dotted path through nested dicts (and attributes). Missing keys give None."""
    if not path:
        return data
    current = data
    for key in path.split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, (list, tuple)) and key.isdigit():
            index = int(key)
            current = current[index] if index < len(current) else None
        else:
            current = getattr(current, key, None)
    return current


def _loose_equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    if left is None or right is None:
        return False
    return str(getattr(left, "value", left)) == str(getattr(right, "value", right))


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(check: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        a, b = _number(left), _number(right)
        if a is None or b is None:
            return False
        return check(a, b)

    return compare


def _text(value: Any) -> str:
    return "" if value is None else str(value).lower()


def _is_empty(value: Any, _: Any = None) -> bool:
    if value is None or value == "":
        return True
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return not value


def _as_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value]
    if value is None:
        return []
    return [part.strip() for part in str(value).split(",")]


def _field_text(value: Any) -> str:
    return str(getattr(value, "value", value))


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": _loose_equals,
    "strict_equals": lambda a, b: type(a) is type(b) and a == b,
    "not_equals": lambda a, b: not _loose_equals(a, b),
    "greater_than": _compare(lambda a, b: a > b),
    "greater_than_or_equals": _compare(lambda a, b: a >= b),
    "less_than": _compare(lambda a, b: a < b),
    "less_than_or_equals": _compare(lambda a, b: a <= b),
    "contains": lambda a, b: _text(b) in _text(a),
    "not_contains": lambda a, b: _text(b) not in _text(a),
    "starts_with": lambda a, b: _text(a).startswith(_text(b)),
    "ends_with": lambda a, b: _text(a).endswith(_text(b)),
    "is_empty": _is_empty,
    "is_not_empty": lambda a, b: not _is_empty(a),
    "in": lambda a, b: _field_text(a) in _as_list(b),
    "not_in": lambda a, b: _field_text(a) not in _as_list(b),
}

ALIASES = {
    "==": "equals",
    "===": "strict_equals",
    "!=": "not_equals",
    ">": "greater_than",
    ">=": "greater_than_or_equals",
    "<": "less_than",
    "<=": "less_than_or_equals",
}


def evaluate_condition(condition: Condition, data: Dict[str, Any]) -> bool:
    operator = ALIASES.get(condition.operator, condition.operator)
    check = OPERATORS.get(operator)
    if check is None:
        logger.warning("Unknown condition operator '%s'", condition.operator)
        return False
    value = get_nested_value(data, condition.field)
    return bool(check(value, condition.value))


def evaluate_conditions(conditions: Iterable[Condition], data: Dict[str, Any]) -> bool:
    """All conditions must hold; an empty list always matches."""
    return all(evaluate_condition(c, data) for c in conditions)
