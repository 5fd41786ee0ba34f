"""Field mapping engine -- turns a source payload into CRM write payloads.

Each FieldMapping extracts a dot-path from the source, applies an optional
transform and places the value into one of three CRM object buckets
(``person``, ``deal``, ``activity``). A handful of fixed target formats encode
a constant in the path itself instead of copying the source value:

- ``deal.stage_id.<id>``: move the deal to a specific stage
- ``<object>.<labelFieldKey>.<optionId>``: set a label/option custom field,
  only when the key is a label field in the CRM schema
- ``activity.type.<id>``: set the activity type
- ``<object>.owner_id.<userId>``: assign an owner

The engine is pure: it never mutates its inputs, and running it twice over the
same payload and mappings gives the same output.
"""

from __future__ import annotations

import copy
import re
from typing import Any, Iterable

import structlog
from pydantic import BaseModel

from src.callsync.core.errors import MappingError
from src.callsync.schemas import CRMSchema, FieldMapping, Transform
from src.callsync.utils.paths import get_path

logger = structlog.get_logger(__name__)

BUCKETS = ("person", "deal", "activity")

_STAGE_TARGET = re.compile(r"^deal\.stage_id\.(\d+)$")
_LABEL_TARGET = re.compile(r"^(deal|person)\.([^.]+)\.(\d+)$")
_ACTIVITY_TYPE_TARGET = re.compile(r"^activity\.type\.(\d+)$")
_OWNER_TARGET = re.compile(r"^(deal|person|activity)\.owner_id\.(\d+)$")

_NON_DIGIT = re.compile(r"\D")

# Source-name pattern -> suggested target. First match wins per source field;
# suggestions for the first tier are marked required.
SUGGESTION_RULES: list[tuple[re.Pattern[str], str, int]] = [
    (re.compile(r"^(from_number|to_number|phone)$", re.IGNORECASE), "person.phone", 1),
    (re.compile(r"^(name|full_name|customer_name)$", re.IGNORECASE), "person.name", 1),
    (re.compile(r"^(email|email_address)$", re.IGNORECASE), "person.email", 1),
    (re.compile(r"^(amount|value|price|cost)$", re.IGNORECASE), "deal.value", 2),
    (re.compile(r"^(deal_name|opportunity|title)$", re.IGNORECASE), "deal.title", 2),
    (re.compile(r"^(transcript|notes|description|summary)$", re.IGNORECASE), "activity.note", 3),
    (re.compile(r"^(call_summary|subject|topic)$", re.IGNORECASE), "activity.subject", 3),
]


class PlacementError(Exception):
    """Target path collides with an existing non-object value."""


class DiscoveredField(BaseModel):
    id: str
    name: str
    value: Any = None
    suggested_mapping: str


# ── Transforms ──────────────────────────────────────────────────────────────


def format_phone(value: str) -> str:
    digits = _NON_DIGIT.sub("", value)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return digits


def apply_transform(value: Any, transform: Transform | str | None) -> Any:
    """Apply a named value transform. Unknown transforms pass the value through."""
    if transform is None or transform == Transform.NONE:
        return value

    text = str(value).lower() if isinstance(value, bool) else str(value)

    if transform == Transform.UPPERCASE:
        return text.upper()
    if transform == Transform.LOWERCASE:
        return text.lower()
    if transform == Transform.CAPITALIZE:
        return text[:1].upper() + text[1:].lower()
    if transform == Transform.TRUNCATE_100:
        return text[:100] + "..." if len(text) > 100 else text
    if transform == Transform.PHONE_FORMAT:
        return format_phone(text)

    logger.warning("field_mapping.unknown_transform", transform=str(transform))
    return value


# ── Engine ──────────────────────────────────────────────────────────────────


class FieldMappingEngine:
    """Stateless source-payload -> CRM-payload transformer."""

    def transform(
        self,
        source: dict[str, Any],
        mappings: Iterable[FieldMapping],
        crm_schema: CRMSchema | None = None,
    ) -> dict[str, Any]:
        """Apply every mapping to ``source`` and return the placed payload.

        Args:
            source: Inbound payload (never mutated).
            mappings: Declarative mapping rules, applied in order.
            crm_schema: Schema used for label detection and validation.

        Returns:
            Dict with any of the ``person``, ``deal``, ``activity`` buckets.

        Raises:
            MappingError: A required mapping had no source value or could not
                be placed.
        """
        schema = crm_schema or CRMSchema()
        payload: dict[str, Any] = {}
        mappings = list(mappings)

        for mapping in mappings:
            value = get_path(source, mapping.source_field)
            if value is None:
                if mapping.required:
                    logger.warning(
                        "field_mapping.required_missing",
                        source_field=mapping.source_field,
                    )
                    raise MappingError(mapping.source_field)
                continue

            value = apply_transform(copy.deepcopy(value), mapping.transform)
            try:
                self._place(payload, mapping.target_field, value, schema)
            except PlacementError as exc:
                if mapping.required:
                    raise MappingError(mapping.source_field, str(exc)) from exc
                logger.warning(
                    "field_mapping.placement_skipped",
                    source_field=mapping.source_field,
                    target_field=mapping.target_field,
                    reason=str(exc),
                )

        self._validate(payload, schema)
        logger.debug("field_mapping.completed", mappings=len(mappings), buckets=sorted(payload))
        return payload

    # ── Placement ───────────────────────────────────────────────────────────

    def _place(self, payload: dict[str, Any], target: str, value: Any, schema: CRMSchema) -> None:
        if self._place_special(payload, target, schema):
            return

        bucket, _, rest = target.partition(".")
        if bucket in BUCKETS and rest:
            _set_nested(payload.setdefault(bucket, {}), rest.split("."), value)
            return

        logger.warning("field_mapping.unknown_target_format", target_field=target)

    def _place_special(self, payload: dict[str, Any], target: str, schema: CRMSchema) -> bool:
        match = _STAGE_TARGET.match(target)
        if match:
            payload.setdefault("deal", {})["stage_id"] = int(match.group(1))
            return True

        match = _ACTIVITY_TYPE_TARGET.match(target)
        if match:
            payload.setdefault("activity", {})["type"] = match.group(1)
            return True

        match = _OWNER_TARGET.match(target)
        if match:
            payload.setdefault(match.group(1), {})["owner_id"] = int(match.group(2))
            return True

        match = _LABEL_TARGET.match(target)
        if match and match.group(2) in schema.label_keys(match.group(1)):
            payload.setdefault(match.group(1), {})[match.group(2)] = int(match.group(3))
            return True

        return False

    # ── Validation ──────────────────────────────────────────────────────────

    def _validate(self, payload: dict[str, Any], schema: CRMSchema) -> None:
        person = payload.get("person")
        if person is not None and not any(person.get(k) for k in ("name", "first_name", "last_name")):
            logger.warning("field_mapping.person_missing_name")

        deal = payload.get("deal")
        if deal:
            _drop_unknown(deal, "stage_id", schema.stages)
            _drop_unknown(deal, "pipeline_id", schema.pipelines)

        activity = payload.get("activity")
        if activity:
            _drop_unknown(activity, "type", schema.activity_types)


def _set_nested(target: dict[str, Any], parts: list[str], value: Any) -> None:
    node = target
    for part in parts[:-1]:
        child = node.setdefault(part, {})
        if not isinstance(child, dict):
            raise PlacementError(f"'{part}' already holds a non-object value")
        node = child
    node[parts[-1]] = value


def _drop_unknown(obj: dict[str, Any], key: str, known: list[dict[str, Any]]) -> None:
    """Remove ``obj[key]`` when the schema lists ids and this one isn't among them.

    An empty schema list means the schema was never fetched, so nothing is
    removed.
    """
    value = obj.get(key)
    if value in (None, "") or not known:
        return
    if str(value) not in {str(item.get("id")) for item in known}:
        logger.warning("field_mapping.invalid_reference", field=key, value=value)
        del obj[key]


# ── Suggestions ─────────────────────────────────────────────────────────────


def _suggest_transform(target_field: str) -> str | None:
    if "phone" in target_field:
        return Transform.PHONE_FORMAT.value
    if "name" in target_field:
        return Transform.CAPITALIZE.value
    return None


def suggest_field_mappings(
    source_fields: Iterable[dict[str, Any] | str],
    crm_schema: CRMSchema | None = None,
) -> list[FieldMapping]:
    """Propose mappings for discovered source fields by name.

    ``source_fields`` items are either plain field ids or dicts with ``id``
    and optionally ``name``.
    """
    suggestions: list[FieldMapping] = []

    for field in source_fields:
        if isinstance(field, str):
            field_id = name = field
        else:
            field_id = str(field.get("id") or field.get("name") or "")
            name = str(field.get("name") or field_id)
        if not field_id:
            continue

        for pattern, target, priority in SUGGESTION_RULES:
            if pattern.match(name):
                suggestions.append(
                    FieldMapping(
                        source_field=field_id,
                        target_field=target,
                        required=priority == 1,
                        transform=_suggest_transform(target),
                    )
                )
                break

    return suggestions


def suggest_crm_mapping(field_name: str, field_value: Any) -> str:
    """Best-guess CRM target for a discovered field name."""
    name = field_name.lower()
    value = str(field_value).lower()

    if "name" in name or "customer" in name:
        return "person.name"
    if "phone" in name or "mobile" in name:
        return "person.phone"
    if "email" in name:
        return "person.email"
    if any(k in name for k in ("value", "price", "amount")):
        return "deal.value"
    if "deal" in name or "opportunity" in name:
        return "deal.title"
    if "summary" in name or "transcript" in name:
        return "activity.note"
    if "meeting" in name or "appointment" in name:
        return "activity.subject"
    if any(k in name for k in ("booked", "scheduled", "confirmed")):
        if any(k in value for k in ("yes", "true", "success")):
            return "workflow_trigger"
    return "custom_field"


def analyze_webhook_fields(webhook: dict[str, Any]) -> list[DiscoveredField]:
    """Discover mappable fields in a call webhook and suggest a target for each."""
    call = webhook.get("call") if isinstance(webhook.get("call"), dict) else webhook
    analysis = call.get("call_analysis") or {}
    discovered: list[DiscoveredField] = []

    sections = [
        ("call_analysis.custom_analysis_data", analysis.get("custom_analysis_data") or {}),
        ("metadata", call.get("metadata") or {}),
        ("retell_llm_dynamic_variables", call.get("retell_llm_dynamic_variables") or {}),
    ]
    for prefix, values in sections:
        for key, value in values.items():
            discovered.append(
                DiscoveredField(
                    id=f"{prefix}.{key}",
                    name=key,
                    value=value,
                    suggested_mapping=suggest_crm_mapping(key, value),
                )
            )

    if analysis.get("call_summary"):
        discovered.append(
            DiscoveredField(
                id="call_analysis.call_summary",
                name="call_summary",
                value=analysis["call_summary"],
                suggested_mapping="activity.note",
            )
        )
    return discovered
