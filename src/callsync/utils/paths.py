"""Dot-path lookup over nested JSON payloads."""

from __future__ import annotations

from typing import Any


def get_path(data: Any, path: str | None) -> Any:
    """Resolve ``a.b.c`` against nested dicts (and list indexes).

    Returns None as soon as an intermediate segment is missing or is not a
    container, so callers can treat "absent" uniformly.
    """
    if not path:
        return None

    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current
