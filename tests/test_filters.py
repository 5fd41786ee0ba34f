"""Tests for trigger filters, workflow conditions and semantic call detectors.

Covers:
- evaluate_filters: every operator, nested paths, AND semantics, unknown
  operator passing
- evaluate_conditions: case-insensitive text matching, unknown operator failing
- detect_success / detect_booking / detect_failure
"""

from __future__ import annotations

import pytest

from src.callsync.pipeline.filters import (
    detect_booking,
    detect_failure,
    detect_success,
    evaluate_condition,
    evaluate_conditions,
    evaluate_filters,
)
from src.callsync.schemas import TriggerFilter

PAYLOAD = {
    "event": "updated.deal",
    "current": {"status": "won", "value": "1200", "title": "Roof Repair"},
    "tags": ["vip"],
}


def _f(field: str, operator: str, value=None) -> TriggerFilter:
    return TriggerFilter(field=field, operator=operator, value=value)


# ── Trigger Filters ──────────────────────────────────────────────────────────


class TestTriggerFilters:
    @pytest.mark.parametrize(
        "trigger, expected",
        [
            (_f("current.status", "equals", "won"), True),
            (_f("current.status", "equals", "lost"), False),
            (_f("current.status", "not_equals", "lost"), True),
            (_f("current.title", "contains", "Roof"), True),
            (_f("current.title", "contains", "roof"), False),
            (_f("current.title", "not_contains", "Gutter"), True),
            (_f("current.value", "greater_than", 1000), True),
            (_f("current.value", "less_than", 1000), False),
            (_f("current.title", "greater_than", 5), False),
            (_f("current.status", "exists"), True),
            (_f("current.missing", "exists"), False),
            (_f("current.missing", "not_exists"), True),
            (_f("tags.0", "equals", "vip"), True),
        ],
    )
    def test_operators(self, trigger, expected):
        assert evaluate_filters(PAYLOAD, [trigger]) is expected

    def test_empty_filter_list_matches(self):
        assert evaluate_filters(PAYLOAD, []) is True

    def test_all_filters_must_pass(self):
        filters = [_f("current.status", "equals", "won"), _f("event", "equals", "added.deal")]
        assert evaluate_filters(PAYLOAD, filters) is False

    def test_unknown_operator_passes(self):
        """Intake filters are permissive about operators they do not know."""
        assert evaluate_filters(PAYLOAD, [_f("current.status", "matches_regex", "w.*")]) is True


# ── Workflow Conditions ──────────────────────────────────────────────────────


class TestWorkflowConditions:
    def test_contains_is_case_insensitive(self):
        assert evaluate_condition("Roof Repair", "contains", "roof") is True
        assert evaluate_condition("Roof Repair", "not_contains", "ROOF") is False

    def test_unknown_operator_fails(self):
        """Workflow conditions are conservative about operators they do not know."""
        assert evaluate_condition("x", "matches_regex", "x") is False

    def test_conditions_resolve_paths(self):
        conditions = [_f("current.status", "equals", "won"), _f("current.value", "greater_than", "999")]
        assert evaluate_conditions(conditions, PAYLOAD) is True

    def test_semantic_operator_ignores_field(self):
        payload = {"call": {"call_analysis": {"call_successful": True}}}
        assert evaluate_conditions([_f("any_field", "indicates_success", True)], payload) is True


# ── Semantic Detectors ───────────────────────────────────────────────────────


class TestDetectors:
    def test_success_flag(self):
        assert detect_success({"call": {"call_analysis": {"call_successful": True}}})

    def test_success_keyword_in_custom_data(self):
        payload = {"call_analysis": {"custom_analysis_data": {"outcome": "Appointment BOOKED"}}}
        assert detect_success(payload)

    def test_success_without_analysis(self):
        assert not detect_success({"call": {}})

    def test_booking_from_key(self):
        payload = {"call": {"call_analysis": {"custom_analysis_data": {"appointment_date": "2026-03-02"}}}}
        assert detect_booking(payload)

    def test_booking_absent(self):
        payload = {"call": {"call_analysis": {"custom_analysis_data": {"mood": "neutral"}}}}
        assert not detect_booking(payload)

    def test_failure_without_analysis(self):
        assert detect_failure({"call": {"duration_ms": 90_000}})

    def test_failure_when_voicemail(self):
        assert detect_failure({"call": {"call_analysis": {"in_voicemail": True}}})

    def test_failure_when_short_call(self):
        payload = {"call": {"duration_ms": 12_000, "call_analysis": {"call_successful": True}}}
        assert detect_failure(payload)

    def test_not_failure_for_long_successful_call(self):
        payload = {"call": {"duration_ms": 45_000, "call_analysis": {"call_successful": True}}}
        assert not detect_failure(payload)
