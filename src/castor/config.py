"""Configuration: frozen Config with provider selection and credential resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
import re
from typing import TYPE_CHECKING, Literal

from dotenv import load_dotenv

from castor.adapters import ADAPTERS
from castor.errors import ConfigurationError
from castor.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Callable

    SecretResolver = Callable[[str], "str | None"]

load_dotenv()

ProviderName = Literal["anthropic", "gemini", "openai", "openrouter"]

DEFAULT_PROVIDER: ProviderName = "openai"

# Checked in order; the first provider whose words appear in the model wins.
_MODEL_MATCH_WORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("anthropic", ("anthropic", "claude", "haiku", "opus", "sonnet")),
    ("gemini", ("gemini", "gemma")),
    ("openai", ("openai", "gpt")),
    ("openrouter", ("openrouter",)),
)
_OPENAI_REASONING_MODEL_RE = re.compile(r"^o\d", re.IGNORECASE)


def env_secret(name: str) -> str | None:
    """Default credential resolver: read the environment (after ``.env``)."""
    return os.environ.get(name) or None


def determine_model_provider(text: str | None) -> tuple[str | None, str]:
    """Infer ``(provider, model)`` from a provider name or model name.

    A bare provider name selects that provider's default model. Unknown
    models return ``(None, text)``.
    """
    if not text:
        return DEFAULT_PROVIDER, ADAPTERS[DEFAULT_PROVIDER].default_model

    if text in ADAPTERS:
        return text, ADAPTERS[text].default_model

    for name, adapter_cls in ADAPTERS.items():
        if text == adapter_cls.default_model:
            return name, text

    # vendor/model slugs are OpenRouter routes, whatever the vendor.
    if "/" in text:
        return "openrouter", text

    lowered = text.lower()
    for name, words in _MODEL_MATCH_WORDS:
        if any(word in lowered for word in words):
            return name, text
    if _OPENAI_REASONING_MODEL_RE.match(text):
        return "openai", text
    return None, text


@dataclass(frozen=True)
class Config:
    """Immutable configuration for Castor calls.

    Provider may be omitted when the model name identifies it. The API key is
    resolved on first use through ``get_secret`` (default: environment
    variables) and cached on this instance.

    Example:
        config = Config(model="claude-sonnet-4-5")
        # Provider is "anthropic"; key comes from ANTHROPIC_API_KEY on first call.
    """

    provider: ProviderName | None = None
    model: str | None = None
    #: Skips the secret resolver when given.
    api_key: str | None = None
    #: ``get_secret(name) -> str | None``; called at most once per Config.
    get_secret: SecretResolver | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        """Infer missing provider/model and validate."""
        provider: str | None = self.provider
        model = self.model
        if provider is None:
            provider, model = determine_model_provider(model)
            if provider is None:
                raise ConfigurationError(
                    f"Cannot determine provider for model {model!r}",
                    hint=f"Pass provider=... (one of: {', '.join(sorted(ADAPTERS))}).",
                )
        if provider not in ADAPTERS:
            raise ConfigurationError(
                f"Unknown provider: {provider!r}",
                hint=f"Supported providers: {', '.join(sorted(ADAPTERS))}",
            )
        if not model:
            model = ADAPTERS[provider].default_model

        object.__setattr__(self, "provider", provider)
        object.__setattr__(self, "model", model)
        object.__setattr__(self, "_resolved_key", self.api_key)

    @property
    def secret_name(self) -> str:
        return ADAPTERS[str(self.provider)].secret_name

    def credential(self) -> str:
        """Return the API key, resolving it once through ``get_secret``."""
        key: str | None = getattr(self, "_resolved_key", None)
        if key is None:
            resolver = self.get_secret or env_secret
            key = resolver(self.secret_name) or None
            if key is None:
                raise ConfigurationError(
                    f"API key required for {self.provider}",
                    hint=f"Set {self.secret_name} environment variable or pass api_key=...",
                )
            object.__setattr__(self, "_resolved_key", key)
        return key

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        has_key = bool(self.api_key or getattr(self, "_resolved_key", None))
        return (
            f"Config(provider={self.provider!r}, model={self.model!r}, "
            f"api_key={'[REDACTED]' if has_key else None})"
        )

    __repr__ = __str__
