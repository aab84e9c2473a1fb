"""
Unit tests for condition evaluation, time windows and glob matching.
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from service_authorization.app.rules.conditions import (
    MISSING, evaluate_condition, evaluate_conditions, evaluate_operator,
    evaluate_time_condition, matches_glob, resolve_path,
)
from service_authorization.app.rules.models import TimeCondition, parse_conditions


def condition(**raw):
    return parse_conditions([raw])[0]


class TestResolvePath:
    """Path resolution into the authorization context."""

    def test_distinguishes_missing_from_none(self, make_context):
        context = make_context(resource_attributes={"owner": None})

        assert resolve_path(context, "resource_attributes.owner") is None
        assert resolve_path(context, "resource_attributes.team") is MISSING

    def test_nested_and_indexed_values(self, make_context):
        context = make_context(actor_attributes={"groups": [{"name": "ops"}], "profile": {"level": 3}})

        assert resolve_path(context, "actor_attributes.profile.level") == 3
        assert resolve_path(context, "actor_attributes.groups.0.name") == "ops"
        assert resolve_path(context, "actor_attributes.groups.5.name") is MISSING

    def test_root_aliases(self, make_context):
        context = make_context(actor_id="alice")

        assert resolve_path(context, "userId") == "alice"
        assert resolve_path(context, "actor_id") == "alice"
        assert resolve_path(context, "unknown_root.value") is MISSING

    def test_traversal_through_scalar_is_missing(self, make_context):
        context = make_context(environment={"region": "eu"})

        assert resolve_path(context, "environment.region.code") is MISSING


class TestOperators:
    """Operator semantics on resolved operands."""

    def test_equals_is_strict(self):
        assert evaluate_operator("equals", 1, 1.0) is True
        assert evaluate_operator("equals", True, 1) is False
        assert evaluate_operator("equals", "1", 1) is False
        assert evaluate_operator("notEquals", MISSING, "x") is True

    def test_contains_on_strings_and_lists(self):
        assert evaluate_operator("contains", "engineering", "gine") is True
        assert evaluate_operator("contains", ["a", "b"], "b") is True
        assert evaluate_operator("contains", 42, "4") is False
        assert evaluate_operator("notContains", 42, "4") is True

    def test_starts_and_ends_with_require_strings(self):
        assert evaluate_operator("startsWith", "report.pdf", "report") is True
        assert evaluate_operator("endsWith", "report.pdf", ".pdf") is True
        assert evaluate_operator("startsWith", 123, "1") is False

    def test_ordering_numbers_dates_and_strings(self):
        assert evaluate_operator("greaterThan", 10, 5) is True
        assert evaluate_operator("lessThanOrEqual", "5", 5) is True
        assert evaluate_operator("greaterThan", "2024-02-01", "2024-01-31T23:59:59Z") is True
        assert evaluate_operator("lessThan", "apple", "banana") is True
        assert evaluate_operator("greaterThan", MISSING, 1) is False
        assert evaluate_operator("greaterThan", True, 0) is False

    def test_membership(self):
        assert evaluate_operator("in", "eu", ["eu", "us"]) is True
        assert evaluate_operator("in", ["x", "us"], ["eu", "us"]) is True
        assert evaluate_operator("in", "eu", "eu") is False
        assert evaluate_operator("notIn", "eu", "eu") is True
        assert evaluate_operator("notIn", "apac", ["eu", "us"]) is True

    def test_existence(self):
        assert evaluate_operator("exists", "value", None) is True
        assert evaluate_operator("exists", None, None) is False
        assert evaluate_operator("notExists", MISSING, None) is True

    def test_between_and_regex(self):
        assert evaluate_operator("between", 5, (1, 10)) is True
        assert evaluate_operator("between", 10, (1, 10)) is True
        assert evaluate_operator("between", "abc", (1, 10)) is False
        assert evaluate_operator("regex", "user-42", r"\d+") is True
        assert evaluate_operator("regex", 42, r"\d+") is False

    def test_unknown_operator_is_false(self):
        assert evaluate_operator("approximately", 1, 1) is False


class TestConditionModels:
    """Typed conditions are validated when constructed."""

    def test_variable_reference_resolves_against_context(self, make_context):
        owner_check = condition(field="resource_attributes.owner", operator="equals", value="${actor_id}")

        assert evaluate_condition(owner_check, make_context(actor_id="u1", resource_attributes={"owner": "u1"}))
        assert not evaluate_condition(owner_check, make_context(actor_id="u2", resource_attributes={"owner": "u1"}))

    def test_all_conditions_must_hold(self, make_context):
        conditions = parse_conditions([
            {"field": "actor_attributes.department", "operator": "equals", "value": "finance"},
            {"field": "actor_attributes.level", "operator": "greaterThanOrEqual", "value": 3},
        ])

        assert evaluate_conditions(conditions, make_context(actor_attributes={"department": "finance", "level": 3}))
        assert not evaluate_conditions(conditions, make_context(actor_attributes={"department": "finance", "level": 2}))

    @pytest.mark.parametrize("raw", [
        {"field": "x", "operator": "between", "value": [10, 1]},
        {"field": "x", "operator": "between", "value": [1]},
        {"field": "x", "operator": "between", "value": [True, 3]},
        {"field": "x", "operator": "regex", "value": "("},
        {"field": "x", "operator": "in", "value": "eu"},
        {"field": "x", "operator": "approximately", "value": 1},
        {"field": " ", "operator": "exists"},
        {"operator": "equals", "value": 1},
    ])
    def test_malformed_conditions_rejected(self, raw):
        with pytest.raises(PydanticValidationError):
            parse_conditions([raw])

    def test_membership_accepts_variable_reference(self, make_context):
        allowed = condition(field="environment.region", operator="in", value="${actor_attributes.regions}")

        context = make_context(environment={"region": "eu"}, actor_attributes={"regions": ["eu", "us"]})
        assert evaluate_condition(allowed, context)


class TestTimeConditions:
    """Time windows evaluated at an explicit instant."""

    def test_weekday_window(self):
        weekdays = TimeCondition(days_of_week=[1, 2, 3, 4, 5])

        assert evaluate_time_condition(weekdays, datetime(2024, 1, 15, 12, tzinfo=timezone.utc))  # Monday
        assert not evaluate_time_condition(weekdays, datetime(2024, 1, 13, 12, tzinfo=timezone.utc))  # Saturday
        assert not evaluate_time_condition(weekdays, datetime(2024, 1, 14, 12, tzinfo=timezone.utc))  # Sunday

    def test_bounds_are_inclusive(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        end = datetime(2024, 1, 31, tzinfo=timezone.utc)
        window = TimeCondition(start_time=start, end_time=end)

        assert evaluate_time_condition(window, start)
        assert evaluate_time_condition(window, end)
        assert not evaluate_time_condition(window, datetime(2024, 1, 31, 0, 0, 1, tzinfo=timezone.utc))

    def test_hours_use_condition_timezone(self):
        business_hours = TimeCondition(hours_of_day=list(range(9, 17)), timezone="America/New_York")

        # 15:00 UTC is 10:00 in New York during January
        assert evaluate_time_condition(business_hours, datetime(2024, 1, 15, 15, tzinfo=timezone.utc))
        assert not evaluate_time_condition(business_hours, datetime(2024, 1, 15, 10, tzinfo=timezone.utc))

    def test_unknown_timezone_rejected(self):
        with pytest.raises(PydanticValidationError):
            TimeCondition(timezone="Mars/Olympus_Mons")


class TestGlobMatching:

    def test_glob_correctness(self):
        assert matches_glob("documents:*", "documents:123")
        assert not matches_glob("documents:*", "folders:123")

    def test_literal_characters_are_escaped(self):
        assert matches_glob("reports.v1*", "reports.v1-final")
        assert not matches_glob("reports.v1*", "reportsXv1-final")

    def test_exact_match_without_wildcard(self):
        assert matches_glob("documents", "documents")
        assert not matches_glob("documents", "documents:1")
