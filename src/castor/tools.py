"""Tool registry: definitions for the model and dispatch by name."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
import inspect
import json
import logging
from typing import TYPE_CHECKING, Any

from castor.errors import ConfigurationError, ToolError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

logger = logging.getLogger(__name__)

STRUCTURED_OUTPUT_TOOL = "structured_output"
EXPLANATION_FIELD = "__Explanation"

_STRUCTURED_OUTPUT_DESCRIPTION = (
    "Output a structured JSON object, use this before your final response "
    "to give structured outputs to the user"
)
_EXPLANATION_SCHEMA: dict[str, Any] = {
    "type": "string",
    "description": (
        "Clearly state why the tool is being called and what larger question "
        "it helps answer. For example, 'I am checking the weather in Paris to "
        "answer what to pack.'"
    ),
}


@dataclass
class Tool:
    """A callable tool exposed to the model."""

    name: str
    description: str
    parameters: dict[str, Any]
    #: Sync or async implementation; receives the parsed arguments.
    call: Callable[..., Any]
    type: str = "function"

    def definition(self) -> dict[str, Any]:
        """Return the vendor-agnostic definition (no implementation)."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": deepcopy(self.parameters),
            "type": self.type,
        }


class Toolkit:
    """Name-keyed registry of tools.

    Holds no state beyond its name table, so one instance can be reused across
    many concurrent ``operate`` calls.

    Example:
        toolkit = Toolkit([Tool("roll", "Roll a die", {"type": "object"}, roll)])
        output = await toolkit.call("roll", "{}")
    """

    def __init__(
        self, tools: Iterable[Tool | dict[str, Any]] = (), *, explain: bool = False
    ) -> None:
        self.explain = explain
        self._tools: dict[str, Tool] = {}
        for raw in tools:
            tool = _coerce_tool(raw)
            if tool.name == STRUCTURED_OUTPUT_TOOL:
                raise ConfigurationError(
                    f"Tool name {STRUCTURED_OUTPUT_TOOL!r} is reserved",
                    hint="Use Options(format=...) for structured output instead.",
                )
            if tool.name in self._tools:
                raise ConfigurationError(
                    f"Duplicate tool name: {tool.name!r}",
                    hint="Tool names must be unique within a toolkit.",
                )
            self._tools[tool.name] = tool

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    @property
    def tools(self) -> list[dict[str, Any]]:
        """Definitions of every registered tool, with explanation fields when enabled."""
        definitions = []
        for tool in self._tools.values():
            definition = tool.definition()
            if self.explain:
                definition["parameters"] = _with_explanation(definition["parameters"])
            definitions.append(definition)
        return definitions

    def definitions(
        self, output_schema: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Tool definitions, plus the ``structured_output`` tool when a schema is given."""
        definitions = self.tools
        if output_schema is not None:
            definitions.append(structured_output_definition(output_schema))
        return definitions

    async def call(self, name: str, arguments: str | dict[str, Any] | None) -> str:
        """Invoke tool *name* and return its JSON-serialized result.

        Errors raised by the implementation propagate unchanged.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolError(
                f"Tool '{name}' not found",
                hint=f"Registered tools: {', '.join(sorted(self._tools)) or '(none)'}",
            )

        args = _parse_arguments(arguments)
        if isinstance(args, dict):
            args.pop(EXPLANATION_FIELD, None)

        logger.debug("Calling tool %s", name)
        result = tool.call(args)
        if inspect.isawaitable(result):
            result = await result
        return json.dumps(result, default=str)


def structured_output_definition(output_schema: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": STRUCTURED_OUTPUT_TOOL,
        "description": _STRUCTURED_OUTPUT_DESCRIPTION,
        "parameters": deepcopy(output_schema),
        "type": "function",
    }


def _coerce_tool(raw: Tool | dict[str, Any]) -> Tool:
    if isinstance(raw, Tool):
        return raw
    if isinstance(raw, dict) and callable(raw.get("call")) and raw.get("name"):
        return Tool(
            name=raw["name"],
            description=raw.get("description", ""),
            parameters=raw.get("parameters") or {"type": "object", "properties": {}},
            call=raw["call"],
            type=raw.get("type", "function"),
        )
    raise ConfigurationError(
        "Tools must be Tool instances or dicts with 'name' and a callable 'call'",
        hint="Tool(name='roll', description='...', parameters={...}, call=fn)",
    )


def _with_explanation(parameters: dict[str, Any]) -> dict[str, Any]:
    updated = dict(parameters)
    properties = dict(updated.get("properties") or {})
    properties[EXPLANATION_FIELD] = dict(_EXPLANATION_SCHEMA)
    updated["properties"] = properties
    updated.setdefault("type", "object")
    return updated


def _parse_arguments(arguments: str | dict[str, Any] | None) -> Any:
    if arguments is None:
        return {}
    if not isinstance(arguments, str):
        return dict(arguments)
    if not arguments.strip():
        return {}
    try:
        return json.loads(arguments)
    except ValueError:
        # Non-JSON text goes to the tool as-is.
        return arguments
