"""Real API integration tests.

These tests make real provider calls and are intentionally compact:
- ENABLE_API_TESTS=1 is required to run any API tests
- OPENAI_API_KEY / ANTHROPIC_API_KEY / GEMINI_API_KEY are required per provider

Each test spends at most a few cheap calls.
"""

from __future__ import annotations

from typing import Any, cast

import pytest

import castor
from castor import Config, Options, ResponseStatus, TextChunk, Tool

pytestmark = pytest.mark.api

_PROVIDERS: list[tuple[str, str]] = [
    ("openai", "openai_api_key"),
    ("anthropic", "anthropic_api_key"),
    ("gemini", "gemini_api_key"),
]


def _config(request: pytest.FixtureRequest, provider: str, key_fixture: str) -> Config:
    api_key = request.getfixturevalue(key_fixture)
    model = request.getfixturevalue("api_models")[provider]
    return Config(provider=cast("Any", provider), model=model, api_key=api_key)


def _weather_tool(seen: list[Any]) -> Tool:
    def lookup(args: dict[str, Any]) -> dict[str, Any]:
        seen.append(args)
        return {"city": args.get("city"), "forecast": "sunny", "high_c": 24}

    return Tool(
        "get_weather",
        "Look up today's weather for a city.",
        {
            "type": "object",
            "properties": {"city": {"type": "string"}},
            "required": ["city"],
        },
        lookup,
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(("provider", "key_fixture"), _PROVIDERS)
async def test_operate_runs_tool_round_trip(
    request: pytest.FixtureRequest, provider: str, key_fixture: str
) -> None:
    seen: list[Any] = []
    config = _config(request, provider, key_fixture)

    result = await castor.operate(
        "What's the weather in Lisbon? Use the tool, then answer in one sentence.",
        config=config,
        options=Options(tools=[_weather_tool(seen)], turns=3),
    )

    assert result.status is ResponseStatus.COMPLETED
    assert seen and "lisbon" in str(seen[0]).lower()
    assert "sunny" in str(result.content).lower()
    assert castor.total_usage(result.usage)["total"] > 0


@pytest.mark.asyncio
@pytest.mark.parametrize(("provider", "key_fixture"), _PROVIDERS)
async def test_operate_structured_output(
    request: pytest.FixtureRequest, provider: str, key_fixture: str
) -> None:
    config = _config(request, provider, key_fixture)

    result = await castor.operate(
        "What is 2 + 2? Reply with the number only.",
        config=config,
        options=Options(format={"answer": int}),
    )

    assert result.status is ResponseStatus.COMPLETED
    assert result.content == {"answer": 4}


@pytest.mark.asyncio
@pytest.mark.parametrize(("provider", "key_fixture"), _PROVIDERS)
async def test_stream_yields_text_then_done(
    request: pytest.FixtureRequest, provider: str, key_fixture: str
) -> None:
    config = _config(request, provider, key_fixture)

    chunks = await castor.stream("Count from 1 to 5.", config=config).collect()

    assert any(isinstance(c, TextChunk) for c in chunks)
    assert chunks[-1].type == "done"
