"""Vendor adapters: a closed set selected once per call."""

from __future__ import annotations

from castor.adapters.anthropic import AnthropicAdapter
from castor.adapters.base import BaseAdapter, OperateRequest
from castor.adapters.gemini import GeminiAdapter
from castor.adapters.openai import OpenAIAdapter
from castor.adapters.openrouter import OpenRouterAdapter
from castor.errors import ConfigurationError

ADAPTERS: dict[str, type[BaseAdapter]] = {
    AnthropicAdapter.name: AnthropicAdapter,
    GeminiAdapter.name: GeminiAdapter,
    OpenAIAdapter.name: OpenAIAdapter,
    OpenRouterAdapter.name: OpenRouterAdapter,
}


def get_adapter(provider: str) -> BaseAdapter:
    """Return the adapter for *provider*."""
    adapter_cls = ADAPTERS.get(provider)
    if adapter_cls is None:
        raise ConfigurationError(
            f"Unknown provider: {provider!r}",
            hint=f"Supported providers: {', '.join(sorted(ADAPTERS))}",
        )
    return adapter_cls()


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "BaseAdapter",
    "GeminiAdapter",
    "OpenAIAdapter",
    "OpenRouterAdapter",
    "OperateRequest",
    "get_adapter",
]
