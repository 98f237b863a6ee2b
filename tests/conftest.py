"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration, automatic API test
skipping and scripted SDK test doubles. All fixtures here are autouse unless
noted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from typing import Any

import pytest

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class ScriptedCall:
    """Async stand-in for one SDK endpoint (e.g. ``client.responses.create``).

    Each call records its kwargs and pops the next script item: exceptions are
    raised, lists become async event streams, anything else is returned.
    """

    script: list[Any] = field(default_factory=list)
    calls: list[dict[str, Any]] = field(default_factory=list)

    async def __call__(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if not self.script:
            raise AssertionError("ScriptedCall script exhausted")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, list):
            return _events(item)
        return item

    @property
    def last(self) -> dict[str, Any]:
        return self.calls[-1]


async def _events(items: list[Any]) -> Any:
    for item in items:
        if isinstance(item, BaseException):
            raise item
        yield item


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================

_PROVIDER_ENV_PREFIXES = ("ANTHROPIC_", "GEMINI_", "OPENAI_", "OPENROUTER_")


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Keep a developer's ``.env`` from leaking credentials into tests.

    Opt out with ``@pytest.mark.allow_dotenv``.
    """
    if request.node.get_closest_marker("allow_dotenv") is None:
        monkeypatch.setattr("dotenv.load_dotenv", lambda *_a, **_k: False)


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Drop provider credential variables so key resolution is deterministic.

    Skipped for ``api`` tests and ``@pytest.mark.allow_env_pollution``.
    """
    if "api" in request.node.keywords or request.node.get_closest_marker(
        "allow_env_pollution"
    ):
        return
    for key in [k for k in os.environ if k.startswith(_PROVIDER_ENV_PREFIXES)]:
        monkeypatch.delenv(key)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Raise transport loggers to WARNING so castor debug output stays readable."""
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "set ENABLE_API_TESTS=1 to run real provider calls"


def pytest_collection_modifyitems(items):
    """Skip ``api`` tests unless ENABLE_API_TESTS is set."""
    if os.getenv("ENABLE_API_TESTS"):
        return
    skip = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip)


# =============================================================================
# API Test Configuration
# =============================================================================

# Cheapest models that still support tool calling.
_OPENAI_TEST_MODEL = "gpt-4.1-nano"
_ANTHROPIC_TEST_MODEL = "claude-haiku-4-5"
_GEMINI_TEST_MODEL = "gemini-2.5-flash-lite"


def _require_key(name: str) -> str:
    key = os.getenv(name)
    if not key:
        pytest.skip(f"{name} not set")
    return key


@pytest.fixture
def openai_api_key():
    """Return OPENAI_API_KEY or skip the test if unavailable."""
    return _require_key("OPENAI_API_KEY")


@pytest.fixture
def anthropic_api_key():
    """Return ANTHROPIC_API_KEY or skip the test if unavailable."""
    return _require_key("ANTHROPIC_API_KEY")


@pytest.fixture
def gemini_api_key():
    """Return GEMINI_API_KEY or skip the test if unavailable."""
    return _require_key("GEMINI_API_KEY")


@pytest.fixture
def api_models() -> dict[str, str]:
    """Models used for API tests, keyed by provider."""
    return {
        "openai": _OPENAI_TEST_MODEL,
        "anthropic": _ANTHROPIC_TEST_MODEL,
        "gemini": _GEMINI_TEST_MODEL,
    }
