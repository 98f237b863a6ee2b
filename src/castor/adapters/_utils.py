"""Shared utilities for adapter implementations."""

from __future__ import annotations

from copy import deepcopy
import json
from typing import Any
import uuid

from castor.errors import ConfigurationError


def to_strict_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Copy *schema* with every object closed and all its properties required.

    OpenAI strict mode rejects object schemas that allow extra keys or leave
    any declared property optional.
    """
    if not isinstance(schema, dict):
        raise ConfigurationError("Invalid format: expected an object schema")
    strict = deepcopy(schema)
    _close_objects(strict)
    return strict


def _close_objects(node: Any) -> None:
    if isinstance(node, list):
        for item in node:
            _close_objects(item)
        return
    if not isinstance(node, dict):
        return
    for value in node.values():
        _close_objects(value)
    properties = node.get("properties")
    if node.get("type") == "object" or isinstance(properties, dict):
        props = properties if isinstance(properties, dict) else {}
        node["additionalProperties"] = False
        node["required"] = list(props)


def get_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read *name* from an SDK object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


def load_arguments(arguments: str) -> Any:
    """Decode tool-call arguments for vendors that want objects, not JSON text."""
    if not arguments:
        return {}
    try:
        return json.loads(arguments)
    except ValueError:
        return {"input": arguments}


def content_text(content: Any) -> str:
    """Render history content as text for vendors that only accept strings."""
    if isinstance(content, str):
        return content
    return json.dumps(content)


def append_instructions(text: str, instructions: str | None) -> str:
    if not instructions:
        return text
    return f"{text}\n\n{instructions}" if text else instructions
