"""
Tests: stage applicability evaluation and skip-reason text.

Pure functions; no database rows are created.
"""

import logging

import pytest

from matterflow.services.applicability import (
    build_skip_reason,
    evaluate_applicability_conditions,
)


# ═════════════════════════════════════════════════════════════════════════════
# evaluate_applicability_conditions
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize("conditions", [None, {}])
def test_no_conditions_always_applies(conditions):
    assert evaluate_applicability_conditions(conditions, {}) is True
    assert evaluate_applicability_conditions(conditions, {"anything": 1}) is True
    assert evaluate_applicability_conditions(conditions, None) is True


def test_all_conditions_met():
    conditions = {"has_mortgage": True, "tenure": "leasehold", "buyers": 2}
    context = {"has_mortgage": True, "tenure": "leasehold", "buyers": 2, "extra": "ignored"}
    assert evaluate_applicability_conditions(conditions, context) is True


def test_single_mismatch_fails():
    conditions = {"has_mortgage": True, "tenure": "leasehold"}
    assert evaluate_applicability_conditions(conditions, {"has_mortgage": True, "tenure": "freehold"}) is False


def test_missing_key_is_unmet_not_error():
    assert evaluate_applicability_conditions({"has_property": True}, {}) is False
    assert evaluate_applicability_conditions({"has_property": True}, None) is False


def test_null_context_value_is_unmet():
    assert evaluate_applicability_conditions({"has_property": True}, {"has_property": None}) is False


def test_skip_reason_renders_null_value_not_missing():
    reason = build_skip_reason({"has_property": True}, {"has_property": None})
    assert reason == "Applicability conditions not met: has_property = null (required: true)"


def test_boolean_never_equals_integer():
    assert evaluate_applicability_conditions({"flag": True}, {"flag": 1}) is False
    assert evaluate_applicability_conditions({"count": 1}, {"count": True}) is False
    assert evaluate_applicability_conditions({"count": 1}, {"count": 1.0}) is True


def test_unknown_key_outside_schema_is_unmet(caplog):
    with caplog.at_level(logging.WARNING, logger="matterflow.services.applicability"):
        result = evaluate_applicability_conditions(
            {"mystery": True}, {"mystery": True}, known_keys=frozenset({"has_mortgage"})
        )
    assert result is False
    assert "not a recognised condition" in caplog.text


def test_known_key_inside_schema_evaluates_normally():
    known = frozenset({"has_mortgage"})
    assert evaluate_applicability_conditions({"has_mortgage": True}, {"has_mortgage": True}, known) is True


# ═════════════════════════════════════════════════════════════════════════════
# build_skip_reason
# ═════════════════════════════════════════════════════════════════════════════


def test_skip_reason_for_missing_key():
    reason = build_skip_reason({"hasProperty": True}, {})
    assert reason == "Applicability conditions not met: hasProperty is not defined (required: true)"


def test_skip_reason_for_mismatch():
    reason = build_skip_reason({"tenure": "leasehold"}, {"tenure": "freehold"})
    assert reason == "Applicability conditions not met: tenure = freehold (required: leasehold)"


def test_skip_reason_lists_every_unmet_condition_in_declaration_order():
    conditions = {"b_key": False, "met": "yes", "a_key": 3}
    reason = build_skip_reason(conditions, {"b_key": True, "met": "yes"})
    assert reason == (
        "Applicability conditions not met: "
        "b_key = true (required: false), a_key is not defined (required: 3)"
    )


def test_skip_reason_for_unrecognised_key():
    reason = build_skip_reason({"mystery": "x"}, {"mystery": "x"}, known_keys=frozenset())
    assert reason == "Applicability conditions not met: mystery is not a recognised condition (required: x)"


def test_skip_reason_generic_when_nothing_unmet():
    assert build_skip_reason(None, {}) == "Stage applicability conditions not met"
    assert build_skip_reason({"a": 1}, {"a": 1}) == "Stage applicability conditions not met"


def test_skip_reason_renders_integral_float_without_decimal():
    reason = build_skip_reason({"buyers": 2.0}, {"buyers": 3})
    assert reason == "Applicability conditions not met: buyers = 3 (required: 2)"
