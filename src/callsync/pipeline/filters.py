"""Trigger filters and workflow conditions.

Two evaluators share the same operator vocabulary but differ on what an
unknown operator means:

- evaluate_filters(): integration trigger filters gating intake. Permissive:
  an unknown operator logs a warning and passes.
- evaluate_conditions(): workflow conditions, which add case-insensitive
  text matching and the semantic call detectors. Conservative: an unknown
  operator logs a warning and fails.
"""

from __future__ import annotations

from typing import Any, Iterable

import structlog

from src.callsync.schemas import FilterOperator, TriggerFilter
from src.callsync.utils.paths import get_path

logger = structlog.get_logger(__name__)

SUCCESS_KEYWORDS = [
    "booked", "scheduled", "confirmed", "agreed", "yes", "success",
    "completed", "qualified", "interested", "positive",
]

BOOKING_KEYWORDS = [
    "booked", "scheduled", "appointment", "meeting", "consultation",
    "calendar", "date", "time",
]

MIN_SUCCESSFUL_DURATION_MS = 30_000


# ── Helpers ─────────────────────────────────────────────────────────────────


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(value: Any, expected: Any, greater: bool) -> bool:
    left, right = _as_number(value), _as_number(expected)
    if left is None or right is None:
        return False
    return left > right if greater else left < right


def _call_section(payload: dict[str, Any]) -> dict[str, Any]:
    call = payload.get("call")
    return call if isinstance(call, dict) else payload


def _call_analysis(payload: dict[str, Any]) -> dict[str, Any] | None:
    analysis = _call_section(payload).get("call_analysis")
    if analysis is None:
        analysis = payload.get("call_analysis")
    return analysis if isinstance(analysis, dict) else None


# ── Trigger Filters ─────────────────────────────────────────────────────────


def evaluate_filter(payload: dict[str, Any], trigger: TriggerFilter) -> bool:
    value = get_path(payload, trigger.field)
    operator = trigger.operator

    if operator == FilterOperator.EQUALS:
        return value == trigger.value
    if operator == FilterOperator.NOT_EQUALS:
        return value != trigger.value
    if operator == FilterOperator.CONTAINS:
        return _as_text(trigger.value) in _as_text(value)
    if operator == FilterOperator.NOT_CONTAINS:
        return _as_text(trigger.value) not in _as_text(value)
    if operator == FilterOperator.GREATER_THAN:
        return _compare(value, trigger.value, greater=True)
    if operator == FilterOperator.LESS_THAN:
        return _compare(value, trigger.value, greater=False)
    if operator == FilterOperator.EXISTS:
        return value is not None
    if operator == FilterOperator.NOT_EXISTS:
        return value is None

    logger.warning("trigger_filter.unknown_operator", operator=operator, field=trigger.field)
    return True


def evaluate_filters(payload: dict[str, Any], filters: Iterable[TriggerFilter]) -> bool:
    """AND of all trigger filters. An empty list always matches."""
    return all(evaluate_filter(payload, f) for f in filters)


# ── Semantic Detectors ──────────────────────────────────────────────────────


def detect_success(payload: dict[str, Any]) -> bool:
    """Call was flagged successful, or a custom-analysis value reads like success."""
    analysis = _call_analysis(payload)
    if not analysis:
        return False
    if analysis.get("call_successful") is True:
        return True

    custom = analysis.get("custom_analysis_data") or {}
    for value in custom.values():
        text = _as_text(value).lower()
        if any(keyword in text for keyword in SUCCESS_KEYWORDS):
            return True
    return False


def detect_booking(payload: dict[str, Any]) -> bool:
    """A custom-analysis key or value mentions a booking."""
    analysis = _call_analysis(payload)
    if not analysis:
        return False

    custom = analysis.get("custom_analysis_data") or {}
    for key, value in custom.items():
        key_text = str(key).lower()
        value_text = _as_text(value).lower()
        if any(k in key_text or k in value_text for k in BOOKING_KEYWORDS):
            return True
    return False


def detect_failure(payload: dict[str, Any]) -> bool:
    """No analysis, explicit failure, voicemail, or a call under 30 seconds."""
    analysis = _call_analysis(payload)
    if not analysis:
        return True
    if analysis.get("call_successful") is False:
        return True
    if analysis.get("in_voicemail") is True:
        return True

    duration = _as_number(_call_section(payload).get("duration_ms"))
    return bool(duration) and duration < MIN_SUCCESSFUL_DURATION_MS


# ── Workflow Conditions ─────────────────────────────────────────────────────


def evaluate_condition(
    value: Any,
    operator: str,
    expected: Any,
    payload: dict[str, Any] | None = None,
) -> bool:
    """Evaluate one workflow condition against an already-resolved field value.

    Text operators compare case-insensitively. The semantic operators ignore
    ``value`` and inspect the whole payload.
    """
    payload = payload or {}

    if operator == FilterOperator.EQUALS:
        return value == expected
    if operator == FilterOperator.NOT_EQUALS:
        return value != expected
    if operator == FilterOperator.CONTAINS:
        return _as_text(expected).lower() in _as_text(value).lower()
    if operator == FilterOperator.NOT_CONTAINS:
        return _as_text(expected).lower() not in _as_text(value).lower()
    if operator == FilterOperator.EXISTS:
        return value is not None
    if operator == FilterOperator.NOT_EXISTS:
        return value is None
    if operator == FilterOperator.GREATER_THAN:
        return _compare(value, expected, greater=True)
    if operator == FilterOperator.LESS_THAN:
        return _compare(value, expected, greater=False)
    if operator == FilterOperator.INDICATES_SUCCESS:
        return detect_success(payload)
    if operator == FilterOperator.INDICATES_BOOKING:
        return detect_booking(payload)
    if operator == FilterOperator.INDICATES_FAILURE:
        return detect_failure(payload)

    logger.warning("workflow_condition.unknown_operator", operator=operator)
    return False


def evaluate_conditions(conditions: Iterable[TriggerFilter], payload: dict[str, Any]) -> bool:
    """AND of all workflow conditions. An empty list always matches."""
    return all(
        evaluate_condition(get_path(payload, c.field), c.operator, c.value, payload)
        for c in conditions
    )
