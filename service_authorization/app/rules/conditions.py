"""
Attribute and time condition evaluation.

Pure functions shared by the permission registry and the policy
evaluator: dotted-path resolution into an ``AuthorizationContext``,
operator semantics for typed conditions, time-window checks and glob
pattern matching.
"""

import re
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from shared.logging import get_logger
from .models import AuthorizationContext, ConditionOperator, TimeCondition

logger = get_logger("authorization.conditions")


class _Missing:
    """Sentinel for attribute paths that do not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()

# Alternate spellings accepted for the first path segment
ROOT_ALIASES = {
    "user_id": "actor_id",
    "userId": "actor_id",
    "actorId": "actor_id",
    "tenantId": "tenant_id",
    "resourceId": "resource_id",
    "resourceAttributes": "resource_attributes",
    "user_attributes": "actor_attributes",
    "userAttributes": "actor_attributes",
    "actorAttributes": "actor_attributes",
    "requestContext": "request_context",
}

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def resolve_path(context: AuthorizationContext, path: str) -> Any:
    """Resolve a dotted path against the context.

    Returns ``MISSING`` when any segment is absent; a present ``None`` is
    returned as ``None``.
    """
    parts = path.split(".")
    root = ROOT_ALIASES.get(parts[0], parts[0])
    if root not in context.__dataclass_fields__:
        return MISSING
    value: Any = getattr(context, root)

    for part in parts[1:]:
        if value is None:
            return MISSING
        if isinstance(value, dict):
            if part not in value:
                return MISSING
            value = value[part]
        elif isinstance(value, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(value):
                return MISSING
            value = value[index]
        else:
            return MISSING

    return value


def resolve_operand(condition, context: AuthorizationContext) -> Any:
    """Comparison value of a condition, with ${path} references resolved."""
    variable = condition.variable_path
    if variable is not None:
        return resolve_path(context, variable)
    return condition.value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> Optional[float]:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and _ISO_DATE.match(value):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without cross-type coercion (booleans never equal numbers)."""
    if left is MISSING or right is MISSING:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    return type(left) is type(right) and left == right


def _ordered_pair(left: Any, right: Any) -> Optional[Tuple[Any, Any]]:
    """Coerce both operands to a mutually comparable type, if one exists."""
    if left is MISSING or right is MISSING or left is None or right is None:
        return None
    if isinstance(left, bool) or isinstance(right, bool):
        return None
    if _is_number(left) and _is_number(right):
        return left, right

    left_date, right_date = _to_datetime(left), _to_datetime(right)
    if left_date is not None and right_date is not None:
        return left_date, right_date

    if isinstance(left, str) and isinstance(right, str):
        return left, right

    # number against numeric string
    if _is_number(left) or _is_number(right):
        left_num, right_num = _to_number(left), _to_number(right)
        if left_num is not None and right_num is not None:
            return left_num, right_num
    return None


def _compare(predicate: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def evaluate(field_value: Any, compare_value: Any) -> bool:
        pair = _ordered_pair(field_value, compare_value)
        if pair is None:
            return False
        return predicate(*pair)
    return evaluate


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _contains_item(items: Iterable[Any], item: Any) -> bool:
    return any(strict_equals(candidate, item) for candidate in items)


def _contains(field_value: Any, compare_value: Any) -> bool:
    if isinstance(field_value, str) and isinstance(compare_value, str):
        return compare_value in field_value
    if _is_sequence(field_value):
        return _contains_item(field_value, compare_value)
    return False


def _not_contains(field_value: Any, compare_value: Any) -> bool:
    if isinstance(field_value, str) and isinstance(compare_value, str):
        return compare_value not in field_value
    if _is_sequence(field_value):
        return not _contains_item(field_value, compare_value)
    return True


def _starts_with(field_value: Any, compare_value: Any) -> bool:
    return isinstance(field_value, str) and isinstance(compare_value, str) and field_value.startswith(compare_value)


def _ends_with(field_value: Any, compare_value: Any) -> bool:
    return isinstance(field_value, str) and isinstance(compare_value, str) and field_value.endswith(compare_value)


def _in(field_value: Any, compare_value: Any) -> bool:
    if not _is_sequence(compare_value):
        return False
    if _is_sequence(field_value):
        # array against array: any overlap
        return any(_contains_item(compare_value, item) for item in field_value)
    return _contains_item(compare_value, field_value)


def _not_in(field_value: Any, compare_value: Any) -> bool:
    if not _is_sequence(compare_value):
        return True
    return not _in(field_value, compare_value)


def _exists(field_value: Any, compare_value: Any) -> bool:
    return field_value is not MISSING and field_value is not None


def _not_exists(field_value: Any, compare_value: Any) -> bool:
    return not _exists(field_value, compare_value)


def _between(field_value: Any, compare_value: Any) -> bool:
    if isinstance(field_value, bool):
        return False
    number = _to_number(field_value)
    if number is None:
        return False
    low, high = compare_value
    return low <= number <= high


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern)


def _regex(field_value: Any, compare_value: Any) -> bool:
    if not isinstance(field_value, str) or not isinstance(compare_value, str):
        return False
    return compile_pattern(compare_value).search(field_value) is not None


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS.value: strict_equals,
    ConditionOperator.NOT_EQUALS.value: lambda left, right: not strict_equals(left, right),
    ConditionOperator.CONTAINS.value: _contains,
    ConditionOperator.NOT_CONTAINS.value: _not_contains,
    ConditionOperator.STARTS_WITH.value: _starts_with,
    ConditionOperator.ENDS_WITH.value: _ends_with,
    ConditionOperator.GREATER_THAN.value: _compare(lambda left, right: left > right),
    ConditionOperator.LESS_THAN.value: _compare(lambda left, right: left < right),
    ConditionOperator.GREATER_THAN_OR_EQUAL.value: _compare(lambda left, right: left >= right),
    ConditionOperator.LESS_THAN_OR_EQUAL.value: _compare(lambda left, right: left <= right),
    ConditionOperator.IN.value: _in,
    ConditionOperator.NOT_IN.value: _not_in,
    ConditionOperator.EXISTS.value: _exists,
    ConditionOperator.NOT_EXISTS.value: _not_exists,
    ConditionOperator.BETWEEN.value: _between,
    ConditionOperator.REGEX.value: _regex,
}


def evaluate_operator(operator: str, field_value: Any, compare_value: Any) -> bool:
    """Apply one operator to already-resolved operands."""
    handler = OPERATORS.get(operator)
    if handler is None:
        logger.warning("Unknown condition operator", operator=operator)
        return False
    return handler(field_value, compare_value)


def evaluate_condition(condition, context: AuthorizationContext) -> bool:
    """Evaluate a single typed condition against the context."""
    field_value = resolve_path(context, condition.field)
    compare_value = resolve_operand(condition, context)
    return evaluate_operator(condition.operator, field_value, compare_value)


def evaluate_conditions(conditions: Iterable[Any], context: AuthorizationContext) -> bool:
    """All conditions must hold (logical AND)."""
    return all(evaluate_condition(condition, context) for condition in conditions)


def evaluate_time_condition(condition: TimeCondition, now: datetime) -> bool:
    """Check ``now`` against a time window; every specified check must pass."""
    zone = condition.zone
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(zone)

    if condition.start_time is not None:
        start = condition.start_time
        if start.tzinfo is None:
            start = start.replace(tzinfo=zone)
        if local < start:
            return False

    if condition.end_time is not None:
        end = condition.end_time
        if end.tzinfo is None:
            end = end.replace(tzinfo=zone)
        # upper bound is inclusive
        if local > end:
            return False

    if condition.days_of_week:
        # Python weekday() is Monday=0; convert to Sunday=0
        if (local.weekday() + 1) % 7 not in condition.days_of_week:
            return False

    if condition.hours_of_day:
        if local.hour not in condition.hours_of_day:
            return False

    return True


@lru_cache(maxsize=1024)
def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Anchored regex for a glob where ``*`` matches any sequence."""
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$", re.DOTALL)


def matches_glob(pattern: str, value: str) -> bool:
    """Exact comparison unless the pattern carries ``*``."""
    if "*" not in pattern:
        return pattern == value
    return glob_to_regex(pattern).match(value) is not None
