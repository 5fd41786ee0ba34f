"""``{{dotted.path}}`` placeholder resolution for workflow action fields.

A token is a dot-path and nothing else. Tokens resolve first against the
``call`` section of the context, then against the whole context. A token
that resolves to nothing stays in the output verbatim.
"""

from __future__ import annotations

import re
from typing import Any

from src.callsync.utils.paths import get_path

TOKEN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def lookup(path: str, context: dict[str, Any]) -> Any:
    call = context.get("call")
    if isinstance(call, dict):
        value = get_path(call, path)
        if value is not None:
            return value
    return get_path(context, path)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render(template: Any, context: dict[str, Any]) -> Any:
    """Resolve placeholders in one field value.

    Non-strings pass through. A value that is exactly one token keeps the
    resolved value's type; anything else is string interpolation.
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    whole = TOKEN.fullmatch(template.strip())
    if whole:
        value = lookup(whole.group(1), context)
        return template if value is None else value

    def _replace(match: re.Match[str]) -> str:
        value = lookup(match.group(1), context)
        return match.group(0) if value is None else _stringify(value)

    return TOKEN.sub(_replace, template)


def render_fields(fields: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    return {key: render(value, context) for key, value in fields.items()}
