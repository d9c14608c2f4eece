# nodeflow/core/nodes/templates.py
"""``{{placeholder}}`` substitution for notification bodies and node configs."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from nodeflow.core.codec.serde import SerializationError, dumps_json
from nodeflow.core.nodes.context import MISSING, Scope, walk_path

PLACEHOLDER_RE = re.compile(r'\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}')


def render_template(
    template: str,
    variables: Mapping[str, Any] | None = None,
    scope: Scope | None = None,
) -> str:
    """Substitute placeholders from variables first, then the scope.

    Unknown placeholders are left in place.
    """

    def replace(match: re.Match[str]) -> str:
        path = match.group(1)
        value = walk_path(variables, path) if variables else MISSING
        if value is MISSING and scope is not None:
            value = scope.resolve(path)
        if value is MISSING:
            return match.group(0)
        return _to_text(value)

    return PLACEHOLDER_RE.sub(replace, template)


def render_value(
    value: Any,
    variables: Mapping[str, Any] | None = None,
    scope: Scope | None = None,
) -> Any:
    """Render every string inside a JSON-like value.

    A string that is exactly one placeholder keeps the resolved value's type.
    """
    match value:
        case str():
            whole = PLACEHOLDER_RE.fullmatch(value.strip())
            if whole is not None:
                path = whole.group(1)
                resolved = walk_path(variables, path) if variables else MISSING
                if resolved is MISSING and scope is not None:
                    resolved = scope.resolve(path)
                if resolved is not MISSING:
                    return resolved
            return render_template(value, variables, scope)
        case dict():
            return {k: render_value(v, variables, scope) for k, v in value.items()}
        case list():
            return [render_value(v, variables, scope) for v in value]
        case _:
            return value


def _to_text(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        try:
            return dumps_json(value)
        except SerializationError:
            return str(value)
    return str(value)
