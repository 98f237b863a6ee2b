"""Structured-output formats: conversion to JSON Schema and response parsing.

A ``format`` may be given three ways, all converted to one vendor-agnostic
JSON Schema dict:

- a JSON Schema dict (``{"type": "object", "properties": ...}``); the legacy
  ``{"type": "json_schema", "schema": ...}`` wrapper is unwrapped;
- a natural field map using Python types as values
  (``{"title": str, "tags": [str], "mood": ["happy", "sad"]}``);
- a Pydantic ``BaseModel`` subclass.
"""

from __future__ import annotations

from copy import deepcopy
import json
import logging
import re
from typing import Any

from pydantic import BaseModel

from castor.errors import ConfigurationError

logger = logging.getLogger(__name__)

_JSON_SCHEMA_TYPES = frozenset(
    {"object", "array", "string", "number", "integer", "boolean", "null", "json_schema"}
)

_PRIMITIVES: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    dict: "object",
    list: "array",
}

_FENCE_RE = re.compile(r"^```[A-Za-z]*\s*(.*?)\s*```$", re.DOTALL)

FormatInput = type[BaseModel] | dict[str, Any]


def is_json_schema(value: Any) -> bool:
    """Whether *value* already looks like a JSON Schema (not a natural map)."""
    if not isinstance(value, dict):
        return False
    if "$schema" in value:
        return True
    kind = value.get("type")
    return isinstance(kind, str) and kind in _JSON_SCHEMA_TYPES


def to_json_schema(format: FormatInput) -> dict[str, Any]:
    """Convert any supported format into a JSON Schema dict without ``$schema``."""
    if isinstance(format, type) and issubclass(format, BaseModel):
        schema = format.model_json_schema()
    elif is_json_schema(format):
        schema = deepcopy(format)
        if schema.get("type") == "json_schema":
            inner = schema.get("schema")
            if isinstance(inner, dict):
                schema = inner
            else:
                schema["type"] = "object"
    elif isinstance(format, dict):
        schema = natural_schema(format)
    else:
        raise ConfigurationError(
            f"Unsupported format: {type(format).__name__}",
            hint="Pass a JSON Schema dict, a field map like {'name': str}, or a BaseModel subclass.",
        )

    schema.pop("$schema", None)
    return schema


def natural_schema(value: Any) -> dict[str, Any]:
    """Convert a natural field-map value into JSON Schema.

    Types map to their JSON counterparts, ``[T]`` to an array of ``T``, a list
    of string literals to a string enum, and dicts to objects whose fields are
    all required. Empty ``[]``/``{}`` accept any array/object.
    """
    if isinstance(value, type):
        if issubclass(value, BaseModel):
            nested = value.model_json_schema()
            nested.pop("$schema", None)
            return nested
        # bool before int: exact type lookup, never isinstance.
        kind = _PRIMITIVES.get(value)
        if kind is None:
            raise ConfigurationError(
                f"Unsupported field type in format: {value.__name__}",
                hint="Use str, int, float, bool, dict, list, nested dicts, or [type].",
            )
        return {"type": kind}

    if isinstance(value, list):
        if not value:
            return {"type": "array"}
        if all(isinstance(v, str) for v in value):
            return {"type": "string", "enum": list(value)}
        if len(value) == 1:
            return {"type": "array", "items": natural_schema(value[0])}
        raise ConfigurationError(
            "List fields must be [type] or a list of string enum values",
            hint="Use [str] for a list of strings or ['a', 'b'] for an enum.",
        )

    if isinstance(value, dict):
        if not value:
            return {"type": "object"}
        return {
            "type": "object",
            "properties": {str(k): natural_schema(v) for k, v in value.items()},
            "required": [str(k) for k in value],
        }

    raise ConfigurationError(f"Unsupported field value in format: {value!r}")


# =============================================================================
# Parsing model output
# =============================================================================


def parse_json_text(text: str) -> Any:
    """Parse JSON that may be wrapped in a markdown code fence.

    Plain JSON, ```` ```json ... ``` ```` and ```` ``` ... ``` ```` (with any
    surrounding whitespace) all parse to the same value. Raises ``ValueError``
    when the text is not JSON.
    """
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        stripped = match.group(1)
    return json.loads(stripped)


def parse_structured_content(text: str, format: Any = None) -> Any:
    """Best-effort structured parse of assistant text; returns text on failure."""
    if not isinstance(text, str) or not text.strip():
        return text
    try:
        return parse_json_text(text)
    except ValueError:
        pass
    if isinstance(format, dict) and not is_json_schema(format):
        parsed = parse_json_from_markdown(text, format)
        if parsed is not None:
            return parsed
    logger.debug("Structured output requested but response was not JSON")
    return text


def parse_json_from_markdown(content: str, format: dict[str, Any]) -> dict[str, Any] | None:
    """Map markdown headings onto the keys of a natural field map.

    Headings match keys case-insensitively, ignoring dashes, quotes, spaces and
    underscores. The shallowest heading level is tried first, then the next
    level down. ``[str]`` fields collect ``-``/``*`` bullet items.
    """
    if not content or "#" not in content:
        return None

    min_level = _min_heading_level(content)
    if min_level == 0:
        return None

    keys = list(format.keys())
    sections = _sections_at_level(content, min_level)
    matches = _match_headings(list(sections), keys)

    if not matches:
        deeper = _sections_at_level(content, min_level + 1)
        deeper_matches = _match_headings(list(deeper), keys)
        if deeper_matches:
            sections, matches = deeper, deeper_matches

    if not matches:
        logger.warning(
            "No markdown headings matched format keys %s (headings: %s)",
            keys,
            list(sections),
        )
        return None

    result: dict[str, Any] = {}
    for heading, key in matches.items():
        body = sections.get(heading, "")
        if format[key] == [str]:
            result[key] = _bullets(body)
        else:
            result[key] = body
    return result


def _normalize_key(key: str) -> str:
    return re.sub(r"[-'\"_\s]", "", key.lower())


def _match_headings(headings: list[str], keys: list[str]) -> dict[str, str]:
    by_norm = {_normalize_key(k): k for k in keys}
    matches: dict[str, str] = {}
    for heading in headings:
        key = by_norm.get(_normalize_key(heading))
        if key is not None:
            matches[heading] = key
    return matches


def _min_heading_level(content: str) -> int:
    levels = [
        len(m.group(1))
        for m in (re.match(r"^(#+)\s", line) for line in content.split("\n"))
        if m
    ]
    return min(levels) if levels else 0


def _sections_at_level(content: str, level: int) -> dict[str, str]:
    prefix = "#" * level + " "
    sections: dict[str, str] = {}
    heading: str | None = None
    body: list[str] = []
    for line in content.split("\n"):
        if line.startswith(prefix) and not line.startswith(prefix + "#"):
            if heading is not None:
                sections[heading] = "\n".join(body).strip()
            heading = line[len(prefix) :].strip()
            body = []
        elif heading is not None:
            body.append(line)
    if heading is not None:
        sections[heading] = "\n".join(body).strip()
    return sections


def _bullets(content: str) -> list[str]:
    items: list[str] = []
    for line in content.split("\n"):
        stripped = line.strip()
        if stripped.startswith(("- ", "* ")):
            items.append(stripped[2:].strip())
    return items
