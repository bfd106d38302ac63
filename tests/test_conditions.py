"""Tests for condition evaluation and its coercion rules."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from automation.conditions import check, evaluate, evaluate_one
from core.models.automations import Condition
from crm.models import MISSING, Contact, Lead


def cond(field: str, operator: str, value=None) -> Condition:
    return Condition(field=field, operator=operator, value=value)


@pytest.fixture
def lead() -> Lead:
    return Lead(
        owner_id="owner_1",
        name="Ada Lovelace",
        email="ada@example.com",
        source="website",
        score=72,
        tags=["vip", "newsletter"],
        custom_fields={"industry": "saas", "seats": 40, "trial": True},
        created_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
    )


class TestEvaluate:
    def test_empty_conditions_match(self, lead):
        assert evaluate([], lead) is True

    def test_all_conditions_must_hold(self, lead):
        assert evaluate([cond("source", "equals", "website"), cond("score", "greater_than", 50)], lead)
        assert not evaluate([cond("source", "equals", "website"), cond("score", "greater_than", 90)], lead)

    def test_condition_accepts_op_alias(self, lead):
        condition = Condition.model_validate({"field": "source", "op": "equals", "value": "website"})
        assert evaluate_one(condition, lead)


class TestEquality:
    def test_equals_string(self, lead):
        assert evaluate_one(cond("source", "equals", "website"), lead)
        assert not evaluate_one(cond("source", "equals", "referral"), lead)
        assert evaluate_one(cond("source", "not_equals", "referral"), lead)

    def test_int_and_float_compare_numerically(self, lead):
        assert evaluate_one(cond("score", "equals", 72), lead)
        assert evaluate_one(cond("score", "equals", 72.0), lead)

    def test_no_string_number_coercion(self, lead):
        assert not evaluate_one(cond("score", "equals", "72"), lead)

    def test_bools_only_equal_bools(self, lead):
        assert evaluate_one(cond("custom_fields.trial", "equals", True), lead)
        assert not evaluate_one(cond("custom_fields.trial", "equals", 1), lead)
        assert not check("equals", 1, True)

    def test_camel_case_path(self, lead):
        assert evaluate_one(cond("customFields.industry", "equals", "saas"), lead)


class TestMissingFields:
    @pytest.mark.parametrize("operator", [
        "equals", "not_equals", "contains", "not_contains", "starts_with",
        "ends_with", "greater_than", "less_than", "in_list", "not_in_list",
    ])
    def test_missing_field_fails_closed(self, lead, operator):
        assert not evaluate_one(cond("custom_fields.unknown", operator, ["x"]), lead)

    def test_none_counts_as_missing(self, lead):
        assert lead.phone is None
        assert not evaluate_one(cond("phone", "not_equals", "555"), lead)
        assert evaluate_one(cond("phone", "is_empty"), lead)

    def test_malformed_path_is_missing(self, lead):
        assert lead.get_path("a.b.c") is MISSING
        assert not evaluate_one(cond("a.b.c", "equals", "x"), lead)
        assert evaluate_one(cond("a.b.c", "is_empty"), lead)

    def test_is_empty_and_not_empty(self, lead):
        assert evaluate_one(cond("notes", "is_empty"), lead)
        assert evaluate_one(cond("tags", "is_not_empty"), lead)
        assert not evaluate_one(cond("email", "is_empty"), lead)


class TestStringsAndLists:
    def test_contains_substring(self, lead):
        assert evaluate_one(cond("email", "contains", "@example"), lead)
        assert evaluate_one(cond("email", "not_contains", "gmail"), lead)

    def test_contains_list_member(self, lead):
        assert evaluate_one(cond("tags", "contains", "vip"), lead)
        assert not evaluate_one(cond("tags", "contains", "cold"), lead)
        assert evaluate_one(cond("tags", "not_contains", "cold"), lead)

    def test_starts_and_ends_with(self, lead):
        assert evaluate_one(cond("name", "starts_with", "Ada"), lead)
        assert evaluate_one(cond("email", "ends_with", ".com"), lead)
        assert not evaluate_one(cond("score", "starts_with", "7"), lead)

    def test_in_list(self, lead):
        assert evaluate_one(cond("source", "in_list", ["website", "ad"]), lead)
        assert not evaluate_one(cond("source", "in_list", ["referral"]), lead)
        assert evaluate_one(cond("source", "not_in_list", ["referral"]), lead)

    def test_in_list_requires_list_value(self, lead):
        assert not evaluate_one(cond("source", "in_list", "website"), lead)
        assert not evaluate_one(cond("source", "not_in_list", "website"), lead)

    def test_in_list_on_list_field_is_overlap(self, lead):
        assert evaluate_one(cond("tags", "in_list", ["cold", "vip"]), lead)
        assert evaluate_one(cond("tags", "not_in_list", ["cold"]), lead)


class TestOrdering:
    def test_number_comparisons(self, lead):
        assert evaluate_one(cond("score", "greater_than", 70), lead)
        assert evaluate_one(cond("score", "less_than", 72.5), lead)
        assert evaluate_one(cond("custom_fields.seats", "greater_than", 10), lead)

    def test_number_against_string_is_false(self, lead):
        assert not evaluate_one(cond("score", "greater_than", "10"), lead)

    def test_datetime_against_iso_string(self, lead):
        assert evaluate_one(cond("created_at", "greater_than", "2024-02-28T00:00:00Z"), lead)
        assert evaluate_one(cond("created_at", "less_than", "2024-03-02"), lead)
        assert not evaluate_one(cond("created_at", "greater_than", "not a date"), lead)

    def test_nested_model_field(self):
        contact = Contact(owner_id="owner_1", name="Grace", address={"city": "Arlington"})
        assert evaluate_one(cond("address.city", "equals", "Arlington"), contact)
        assert not evaluate_one(cond("address.zipCode", "is_not_empty"), contact)


def test_unknown_operator_is_false():
    assert check("roughly_equals", "a", "a") is False
