"""Heuristic entity extraction for human-readable CRM deal titles.

Pulls a person name and a topic out of a free-form call summary with an
ordered list of patterns (first match wins), then falls back to keyword
scanning and to the call's dynamic variables. Extraction is lossy by
nature: nothing here raises, absence always yields a fallback string.

Title format: "[Name] - [Topic]", degrading to "[Phone] - [Topic]",
"[Name] - Consultation" and finally "[Phone] - Service Inquiry".
"""

from __future__ import annotations

import re
from typing import Any

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

_WORD = r"[A-Z][a-z]+"
_NAME = rf"({_WORD}(?:\s+{_WORD})*?)"

NAME_PATTERNS: list[re.Pattern[str]] = [
    re.compile(rf"The user,?\s+{_NAME}(?:\s+from|,)", re.IGNORECASE),
    re.compile(rf"{_NAME}\s+from", re.IGNORECASE),
    re.compile(rf"{_NAME}\s+called", re.IGNORECASE),
    re.compile(rf"{_NAME}\s+successfully", re.IGNORECASE),
    re.compile(rf"caller\s+({_WORD}(?:\s+{_WORD})*)", re.IGNORECASE),
    re.compile(rf"customer\s+({_WORD}(?:\s+{_WORD})*)", re.IGNORECASE),
]

_TOPIC_END = r"(?:\s+due\s+to\b|\.|$)"

TOPIC_PATTERNS: list[re.Pattern[str]] = [
    re.compile(rf"booked?\s+(?:(?:a|an|the)\s+)?([^.]+?){_TOPIC_END}", re.IGNORECASE),
    re.compile(rf"(?:about|regarding|for)\s+([^.]+?){_TOPIC_END}", re.IGNORECASE),
    re.compile(rf"inquired?\s+about\s+([^.]+?){_TOPIC_END}", re.IGNORECASE),
    re.compile(rf"called\s+about\s+([^.]+?){_TOPIC_END}", re.IGNORECASE),
    re.compile(r"consultation\s+for\s+([^.]+)", re.IGNORECASE),
    re.compile(r"interested\s+in\s+([^.]+)", re.IGNORECASE),
]

SERVICE_KEYWORDS = [
    "consultation", "appointment", "booking", "inquiry", "quote",
    "information", "pricing", "services", "meeting", "demo", "call",
]

NAME_VARIABLES = [
    "name", "customer_name", "full_name", "client_name", "user_name",
    "caller_name", "contact_name", "lead_name",
]

MAX_NAME_LENGTH = 30
MAX_NAME_WORDS = 3
MAX_TOPIC_LENGTH = 40

_NAME_TAIL = re.compile(r"\s+(from|at|with|of|and)\b.*$", re.IGNORECASE)
_VALID_NAME = re.compile(r"^[A-Za-z\s]+$")
_ARTICLE = re.compile(r"^(a|an|the)\s+", re.IGNORECASE)
_TOPIC_TAIL = re.compile(r"\s+(due to|because of)\b.*$", re.IGNORECASE)


class TitleComponents(BaseModel):
    name: str | None = None
    topic: str | None = None
    phone_number: str | None = None


def capitalize_first(text: str) -> str:
    if not text:
        return text
    return text[0].upper() + text[1:].lower()


def _is_plausible_name(name: str) -> bool:
    return (
        len(name) <= MAX_NAME_LENGTH
        and len(name.split()) <= MAX_NAME_WORDS
        and bool(_VALID_NAME.match(name))
    )


def extract_name(summary: str | None) -> str | None:
    """First plausible person name found in a call summary."""
    if not summary:
        return None

    for pattern in NAME_PATTERNS:
        match = pattern.search(summary)
        if not match or not match.group(1):
            continue
        name = _NAME_TAIL.sub("", match.group(1).strip())
        if _is_plausible_name(name):
            return name
    return None


def _clean_topic(raw: str) -> str:
    topic = _ARTICLE.sub("", raw.strip())
    topic = re.sub(r"\s+", " ", topic)
    topic = _TOPIC_TAIL.sub("", topic)
    topic = capitalize_first(topic)
    if len(topic) > MAX_TOPIC_LENGTH:
        topic = topic[:MAX_TOPIC_LENGTH].strip() + "..."
    return topic


def extract_topic(summary: str | None) -> str | None:
    """Main topic of the call, or a service keyword when no pattern fits."""
    if not summary:
        return None

    for pattern in TOPIC_PATTERNS:
        match = pattern.search(summary)
        if not match or not match.group(1):
            continue
        topic = _clean_topic(match.group(1))
        if 0 < len(topic) <= 50:
            return topic

    lowered = summary.lower()
    for keyword in SERVICE_KEYWORDS:
        if keyword in lowered:
            return capitalize_first(keyword)
    return None


def extract_name_from_variables(variables: dict[str, Any] | None) -> str | None:
    """Name from the call's dynamic variables, if the agent collected one."""
    if not variables:
        return None

    for field in NAME_VARIABLES:
        value = variables.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()

    first = variables.get("first_name") or variables.get("fname")
    last = variables.get("last_name") or variables.get("lname")
    if isinstance(first, str) and isinstance(last, str) and first.strip() and last.strip():
        return f"{first.strip()} {last.strip()}"
    if isinstance(first, str) and first.strip():
        return first.strip()
    return None


def extract_components(call_data: dict[str, Any]) -> TitleComponents:
    """Name, topic and phone number for a call payload."""
    analysis = call_data.get("call_analysis") or {}
    summary = analysis.get("call_summary") if isinstance(analysis, dict) else None

    components = TitleComponents(
        phone_number=call_data.get("from_number") or call_data.get("to_number") or None,
        name=extract_name(summary),
        topic=extract_topic(summary),
    )
    if not components.name:
        components.name = extract_name_from_variables(
            call_data.get("retell_llm_dynamic_variables")
        )

    logger.debug("deal_title.components", **components.model_dump())
    return components


def generate_deal_title(call_data: dict[str, Any]) -> str:
    """Compose a readable deal title from a call payload."""
    c = extract_components(call_data)

    if c.name and c.topic:
        return f"{c.name} - {c.topic}"
    if c.name:
        return f"{c.name} - Consultation"
    if c.topic and c.phone_number:
        return f"{c.phone_number} - {c.topic}"
    return f"{c.phone_number or 'Unknown Caller'} - Service Inquiry"
