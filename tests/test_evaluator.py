"""
Tests for the condition evaluator.

Covers value coercion, every operator, cross-type equality, missing data
and the never-raise contract.
"""

import pytest

from lifecycle_engine.conditions.base import Condition
from lifecycle_engine.conditions.context import UserContextSnapshot
from lifecycle_engine.conditions.evaluator import (
    as_number,
    coerce_value,
    evaluate,
    loose_equals,
    to_text,
)
from lifecycle_engine.conditions.trace import EvaluationTrace


def ctx(**kwargs) -> UserContextSnapshot:
    return UserContextSnapshot.from_mapping(kwargs)


def cond(field, operator, value="", group_id=0) -> Condition:
    return Condition(field, operator, value, group_id)


class TestCoerceValue:

    @pytest.mark.parametrize("text,expected", [
        ("true", True),
        ("false", False),
        ("42", 42),
        ("-3", -3),
        ("3.5", 3.5),
        (" 7 ", 7),
        ("1e3", 1000.0),
        (".5", 0.5),
    ])
    def test_coerces(self, text, expected):
        result = coerce_value(text)
        assert result == expected
        assert type(result) is type(expected)

    @pytest.mark.parametrize("text", ["abc", "True", "FALSE", "", "12abc", "1,5", "vip,beta"])
    def test_leaves_text(self, text):
        assert coerce_value(text) == text

    def test_none_is_empty_text(self):
        assert coerce_value(None) == ""


class TestHelpers:

    def test_as_number_rejects_booleans(self):
        assert as_number(True) is None
        assert as_number(False) is None

    def test_as_number_accepts_numeric_text(self):
        assert as_number("15") == 15.0
        assert as_number("x") is None

    def test_to_text_joins_lists(self):
        assert to_text(["vip", " beta "]) == "vip,beta"
        assert to_text(("vip",)) == "vip"

    def test_to_text_integral_float(self):
        assert to_text(15.0) == "15"
        assert to_text(True) == "true"

    def test_loose_equals_none(self):
        assert loose_equals(None, "") is False
        assert loose_equals(None, "null") is False


class TestNumericOperators:

    def test_credits_balance_lt_20(self):
        condition = cond("credits_balance", "LT", "20")
        assert evaluate(condition, ctx(credits=15)) is True
        assert evaluate(condition, ctx(credits=25)) is False

    @pytest.mark.parametrize("operator", ["GT", "GTE", "LT", "LTE"])
    def test_non_numeric_target_is_false(self, operator):
        assert evaluate(cond("credits", operator, "lots"), ctx(credits=15)) is False

    @pytest.mark.parametrize("operator", ["GT", "GTE", "LT", "LTE"])
    def test_non_numeric_attribute_is_false(self, operator):
        assert evaluate(cond("preferred_model", operator, "5"), ctx(preferred_model="flux")) is False

    def test_missing_attribute_is_false(self):
        assert evaluate(cond("credits", "GT", "0"), ctx()) is False
        assert evaluate(cond("credits", "LT", "100"), ctx()) is False

    def test_booleans_are_not_numbers(self):
        assert evaluate(cond("is_paid_user", "GT", "0"), ctx(is_paid_user=True)) is False
        assert evaluate(cond("credits", "GT", "true"), ctx(credits=5)) is False

    def test_boundaries(self):
        snapshot = ctx(credits=20)
        assert evaluate(cond("credits", "GTE", "20"), snapshot) is True
        assert evaluate(cond("credits", "LTE", "20"), snapshot) is True
        assert evaluate(cond("credits", "GT", "20"), snapshot) is False
        assert evaluate(cond("credits", "LT", "20"), snapshot) is False

    def test_numeric_text_attribute(self):
        assert evaluate(cond("credits", "GT", "10"), ctx(credits="15")) is True

    def test_float_threshold(self):
        assert evaluate(cond("hours_since_last_activity", "GT", "2.5"),
                        ctx(hours_since_last_activity=3)) is True


class TestEquality:

    def test_numeric_text_equals_number(self):
        assert evaluate(cond("credits", "EQUALS", "15"), ctx(credits=15)) is True
        assert evaluate(cond("credits", "EQUALS", "15.0"), ctx(credits=15)) is True
        assert evaluate(cond("credits", "EQUALS", "16"), ctx(credits=15)) is False

    def test_boolean_literals(self):
        assert evaluate(cond("is_paid_user", "EQUALS", "true"), ctx(is_paid_user=True)) is True
        assert evaluate(cond("is_paid_user", "EQUALS", "false"), ctx(is_paid_user=False)) is True
        assert evaluate(cond("is_paid_user", "EQUALS", "false"), ctx(is_paid_user=True)) is False

    def test_boolean_text_attribute_any_case(self):
        assert evaluate(cond("is_paid_user", "EQUALS", "true"), ctx(is_paid_user="TRUE")) is True
        assert evaluate(cond("is_paid_user", "EQUALS", "false"), ctx(is_paid_user=" False")) is True
        assert evaluate(cond("is_paid_user", "EQUALS", "true"), ctx(is_paid_user="False")) is False

    def test_boolean_equals_one_and_zero(self):
        assert evaluate(cond("is_paid_user", "EQUALS", "1"), ctx(is_paid_user=True)) is True
        assert evaluate(cond("is_paid_user", "EQUALS", "0"), ctx(is_paid_user=False)) is True

    def test_text_equality(self):
        assert evaluate(cond("preferred_model", "EQUALS", "flux"), ctx(preferred_model="flux")) is True
        assert evaluate(cond("preferred_model", "NOT_EQUALS", "flux"), ctx(preferred_model="sdxl")) is True

    def test_missing_attribute(self):
        assert evaluate(cond("preferred_model", "EQUALS", ""), ctx()) is False
        assert evaluate(cond("preferred_model", "NOT_EQUALS", "flux"), ctx()) is True


class TestMembership:

    def test_tags_in_list(self):
        condition = cond("user_tags", "IN", "vip,beta")
        assert evaluate(condition, ctx(tags="vip")) is True
        assert evaluate(condition, ctx(tags=["beta"])) is True
        assert evaluate(condition, ctx(tags=["other"])) is False

    def test_list_element_matches(self):
        assert evaluate(cond("user_tags", "IN", "vip, beta"), ctx(tags=["new", "beta"])) is True

    def test_whitespace_is_trimmed(self):
        assert evaluate(cond("preferred_model", "IN", " flux , sdxl "), ctx(preferred_model="sdxl")) is True

    def test_not_in(self):
        assert evaluate(cond("preferred_model", "NOT_IN", "flux,sdxl"), ctx(preferred_model="mj")) is True
        assert evaluate(cond("preferred_model", "NOT_IN", "flux,sdxl"), ctx(preferred_model="flux")) is False

    def test_missing_attribute(self):
        assert evaluate(cond("preferred_model", "IN", "flux"), ctx()) is False
        assert evaluate(cond("preferred_model", "NOT_IN", "flux"), ctx()) is True

    def test_number_in_list(self):
        assert evaluate(cond("total_payments", "IN", "1,2,3"), ctx(total_payments=2)) is True


class TestPresence:

    def test_exists(self):
        assert evaluate(cond("credits", "EXISTS"), ctx(credits=0)) is True
        assert evaluate(cond("credits", "EXISTS"), ctx()) is False

    def test_not_exists(self):
        assert evaluate(cond("credits", "NOT_EXISTS"), ctx()) is True
        assert evaluate(cond("credits", "NOT_EXISTS"), ctx(credits=1)) is False


class TestFieldFallback:

    def test_extra_attribute(self):
        assert evaluate(cond("referrals", "GTE", "3"), ctx(referrals=3)) is True

    def test_extra_camel_case_variant(self):
        assert evaluate(cond("streak_days", "GT", "4"), ctx(streakDays=5)) is True

    def test_unknown_field_missing(self):
        assert evaluate(cond("nonexistent", "EXISTS"), ctx(credits=1)) is False


class TestNeverRaises:

    def test_unknown_operator(self):
        assert evaluate(cond("credits", "ROUGHLY", "15"), ctx(credits=15)) is False

    def test_operator_case_insensitive(self):
        assert evaluate(cond("credits", "lt", "20"), ctx(credits=15)) is True

    def test_stored_row(self):
        row = {"field": "credits_balance", "operator": "LT", "value": "20"}
        assert evaluate(row, ctx(credits=1)) is True

    def test_malformed_row(self):
        assert evaluate({"field": "credits", "operator": "GT", "groupId": "x"}, ctx(credits=1)) is False

    def test_bad_context(self):
        assert evaluate(cond("credits", "GT", "1"), "not a context") is False

    def test_mapping_context(self):
        assert evaluate(cond("credits", "GT", "1"), {"credits": 5}) is True

    def test_failing_accessor(self):
        from lifecycle_engine.conditions.fields import FieldRegistry

        registry = FieldRegistry("broken")
        registry.register("boom", lambda c: 1 / 0)
        assert evaluate(cond("boom", "EXISTS"), ctx(), registry=registry) is False


class TestTraceRecording:

    def test_records_entry(self):
        trace = EvaluationTrace(candidate="r1")
        evaluate(cond("credits", "LT", "20", group_id=1), ctx(credits=15), trace)

        assert len(trace.entries) == 1
        entry = trace.entries[0]
        assert entry.field == "credits"
        assert entry.actual == 15
        assert entry.result is True
        assert entry.group_id == 1

    def test_records_failure_with_actual(self):
        trace = EvaluationTrace(candidate="r1")
        evaluate(cond("credits", "GT", "abc"), ctx(credits=15), trace)
        assert trace.entries[0].result is False
        assert trace.entries[0].actual == 15
