"""Lifecycle hooks: optional observers fired at fixed loop checkpoints.

Hooks receive a single context dict and may be sync or async. They exist for
side effects (telemetry, logging, auditing); errors passed to them continue
to propagate after the hook returns.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
import inspect
from typing import TYPE_CHECKING, Any

from castor.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable

    Hook = Callable[[dict[str, Any]], Any]


@dataclass(frozen=True)
class Hooks:
    """Optional callbacks, each receiving a context dict.

    Context keys:
        before_each_model_request: ``history``, ``request``, ``turn``
        after_each_model_response: ``history``, ``request``, ``response``,
            ``content``, ``usage``, ``turn``
        before_each_tool: ``tool_name``, ``args``
        after_each_tool: ``tool_name``, ``args``, ``result``
        on_tool_error: ``tool_name``, ``args``, ``error``
        on_retryable_model_error: ``error``, ``classification``, ``attempt``
        on_unrecoverable_model_error: ``error``, ``classification``
    """

    before_each_model_request: Hook | None = None
    after_each_model_response: Hook | None = None
    before_each_tool: Hook | None = None
    after_each_tool: Hook | None = None
    on_tool_error: Hook | None = None
    on_retryable_model_error: Hook | None = None
    on_unrecoverable_model_error: Hook | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Hooks:
        names = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - names)
        if unknown:
            raise ConfigurationError(
                f"Unknown hook(s): {', '.join(unknown)}",
                hint=f"Supported hooks: {', '.join(sorted(names))}",
            )
        return cls(**raw)


class HookRunner:
    """Single dispatch point for hooks; an absent hook is a no-op."""

    def __init__(self, hooks: Hooks | dict[str, Any] | None = None) -> None:
        if isinstance(hooks, dict):
            hooks = Hooks.from_dict(hooks)
        self._hooks = hooks or Hooks()

    async def run(self, name: str, **context: Any) -> Any:
        hook = getattr(self._hooks, name)
        if hook is None:
            return None
        result = hook(context)
        if inspect.isawaitable(result):
            result = await result
        return result
