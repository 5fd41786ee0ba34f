"""Phone number variations for cross-format contact lookup.

Callers and stored CRM records often represent the same UK number
differently (07366842442, +447366842442, 447366842442). Contact search
tries every variation before falling back to creating a new person.
"""

from __future__ import annotations

import re

from pydantic import BaseModel

_STRIP = re.compile(r"[^\d+]")


class PhoneVariation(BaseModel):
    """One searchable representation of a phone number."""

    format: str
    description: str


def _clean(phone: str) -> str:
    return _STRIP.sub("", phone)


def generate_variations(phone: str | None) -> list[PhoneVariation]:
    """Return the original number plus its equivalent UK representations.

    Order is stable: original first, then local/E.164/no-plus forms as they
    apply to the input shape. Duplicates are removed keeping the first.
    """
    if not phone:
        return []

    clean = _clean(phone)
    candidates: list[tuple[str, str]] = [(phone, "original")]

    if clean.startswith("+44"):
        national = clean[3:]
        if national.startswith("7"):
            candidates.append((f"0{national}", "uk_local"))
        candidates.append((f"44{national}", "international_no_plus"))
    elif clean.startswith("0"):
        national = clean[1:]
        if national.startswith("7"):
            candidates.append((f"+44{national}", "e164"))
            candidates.append((f"44{national}", "international_no_plus"))
    elif clean.startswith("44"):
        national = clean[2:]
        candidates.append((f"+{clean}", "e164"))
        if national.startswith("7"):
            candidates.append((f"0{national}", "uk_local"))

    seen: set[str] = set()
    variations: list[PhoneVariation] = []
    for fmt, description in candidates:
        if fmt in seen:
            continue
        seen.add(fmt)
        variations.append(PhoneVariation(format=fmt, description=description))
    return variations


def normalize(phone: str | None) -> str:
    """Canonical form used for comparison; E.164 for UK numbers."""
    if not phone:
        return ""

    clean = _clean(phone)
    if clean.startswith("0") and clean[1:].startswith("7"):
        return f"+44{clean[1:]}"
    if clean.startswith("44"):
        return f"+{clean}"
    return clean


def are_equivalent(first: str | None, second: str | None) -> bool:
    """True when both numbers share the same canonical form."""
    if not first or not second:
        return False
    return normalize(first) == normalize(second)
