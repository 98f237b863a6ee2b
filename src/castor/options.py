"""Per-call options for ``operate()`` and ``stream()``."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from castor.errors import ConfigurationError
from castor.hooks import Hooks
from castor.tools import Tool, Toolkit

DEFAULT_TURNS = 12

_PLACEHOLDER_FIELDS = frozenset({"input", "instructions", "system"})


@dataclass(frozen=True)
class Options:
    """Optional features for a single call."""

    #: Prior conversation (history items or role/type dicts); input is appended.
    history: list[Any] | None = None
    #: System prompt, routed to the provider's system channel.
    system: str | None = None
    #: Extra instructions appended to the latest input.
    instructions: str | None = None
    #: ``Tool`` instances, tool dicts, or a prebuilt ``Toolkit``.
    tools: list[Tool | dict[str, Any]] | Toolkit | None = None
    #: JSON Schema dict, natural field map, or Pydantic model class.
    format: type[BaseModel] | dict[str, Any] | None = None
    temperature: float | None = None
    #: Maximum tool round trips before returning an incomplete result.
    turns: int = DEFAULT_TURNS
    #: Merged verbatim into the provider request.
    provider_options: dict[str, Any] = field(default_factory=dict)
    hooks: Hooks | dict[str, Any] | None = None
    #: Values for ``{{ key }}`` placeholders.
    data: dict[str, Any] | None = None
    #: Per-field opt-out, e.g. ``{"system": False}``.
    placeholders: dict[str, bool] = field(default_factory=dict)
    #: Adds an ``__Explanation`` argument to every tool.
    explain: bool = False
    #: Stream only: emit tool_call/tool_result chunks.
    include_tools: bool = False
    #: Aborts the in-flight provider call when set.
    signal: asyncio.Event | None = None

    def __post_init__(self) -> None:
        """Validate option shapes early for clear errors."""
        if isinstance(self.turns, bool) or not isinstance(self.turns, int) or self.turns < 1:
            raise ConfigurationError(
                "turns must be a positive integer",
                hint="turns bounds tool round trips; the default is 12.",
            )
        for name in ("system", "instructions"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise ConfigurationError(
                    f"{name} must be a string",
                    hint=f"Pass {name}='You are a concise assistant.'",
                )
        if self.history is not None and not isinstance(self.history, list):
            raise ConfigurationError(
                "history must be a list",
                hint="Pass the history returned by a previous call.",
            )
        if self.format is not None and not (
            isinstance(self.format, dict)
            or (isinstance(self.format, type) and issubclass(self.format, BaseModel))
        ):
            raise ConfigurationError(
                "format must be a dict or a Pydantic model class",
                hint="Pass a JSON Schema, a field map like {'name': str}, or a BaseModel subclass.",
            )
        unknown = set(self.placeholders) - _PLACEHOLDER_FIELDS
        if unknown:
            raise ConfigurationError(
                f"Unknown placeholder field(s): {', '.join(sorted(unknown))}",
                hint="Supported fields: input, instructions, system.",
            )
        if self.temperature is not None and not 0 <= self.temperature <= 2:
            raise ConfigurationError("temperature must be between 0 and 2")

    def substitutes(self, name: str) -> bool:
        """Whether placeholders apply to field *name*."""
        return bool(self.data) and self.placeholders.get(name, True)

    def toolkit(self) -> Toolkit:
        """The toolkit for this call (empty when no tools were given)."""
        if isinstance(self.tools, Toolkit):
            return self.tools
        return Toolkit(self.tools or (), explain=self.explain)
