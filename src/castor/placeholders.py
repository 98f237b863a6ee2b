"""``{{ key.path }}`` placeholder substitution for prompts."""

from __future__ import annotations

import json
import re
from typing import Any

_PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")
_PATH_SPLIT_RE = re.compile(r"\[([^\]]+)\]")

_MISSING = object()


def substitute(template: str, data: dict[str, Any] | None = None) -> str:
    """Replace ``{{ key.path }}`` placeholders with values from *data*.

    Paths use dot and bracket notation (``user.name``, ``items[0]``). Missing
    or falsy values leave the placeholder untouched; dicts and lists are
    JSON-encoded, everything else goes through ``str()``.
    """
    if not data:
        return template

    def replace(match: re.Match[str]) -> str:
        value = _lookup(data, match.group(1).strip())
        if value is _MISSING or not value:
            return match.group(0)
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)

    return _PLACEHOLDER_RE.sub(replace, template)


def _lookup(data: Any, path: str) -> Any:
    """Resolve a dotted/bracketed *path* in *data*; ``_MISSING`` when absent."""
    current = data
    for key in _split_path(path):
        if isinstance(current, dict):
            if key not in current:
                return _MISSING
            current = current[key]
        elif isinstance(current, (list, tuple)) and key.lstrip("-").isdigit():
            index = int(key)
            if not -len(current) <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _split_path(path: str) -> list[str]:
    keys: list[str] = []
    for segment in path.split("."):
        keys.extend(part for part in _PATH_SPLIT_RE.split(segment) if part)
    return keys
