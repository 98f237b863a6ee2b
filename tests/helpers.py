"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: fake SDK clients wired to
``ScriptedCall`` endpoints, plus builders for the vendor response shapes the
adapters read. Responses are plain dicts; adapters accept dicts and SDK
objects alike.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from types import SimpleNamespace
from typing import Any

from castor import Tool
from tests.conftest import ScriptedCall

# =============================================================================
# Fake clients
# =============================================================================


@dataclass
class FakeOpenAIClient:
    """Shape of ``AsyncOpenAI`` used by the OpenAI and OpenRouter adapters."""

    create: ScriptedCall = field(default_factory=ScriptedCall)
    closed: int = 0

    def __post_init__(self) -> None:
        self.responses = SimpleNamespace(create=self.create)
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self.create))

    async def close(self) -> None:
        self.closed += 1


@dataclass
class FakeAnthropicClient:
    create: ScriptedCall = field(default_factory=ScriptedCall)
    closed: int = 0

    def __post_init__(self) -> None:
        self.messages = SimpleNamespace(create=self.create)

    async def close(self) -> None:
        self.closed += 1


@dataclass
class FakeGeminiClient:
    """Shape of ``genai.Client``: async calls live under ``client.aio``."""

    generate: ScriptedCall = field(default_factory=ScriptedCall)
    stream: ScriptedCall = field(default_factory=ScriptedCall)

    def __post_init__(self) -> None:
        self.aio = SimpleNamespace(
            models=SimpleNamespace(
                generate_content=self.generate,
                generate_content_stream=self.stream,
            )
        )


class VendorStream:
    """SDK-style event stream (``AsyncStream``) that counts ``close()`` calls."""

    def __init__(self, events: list[Any]) -> None:
        self._events = list(events)
        self.closed = 0

    def __aiter__(self) -> VendorStream:
        return self

    async def __anext__(self) -> Any:
        if not self._events:
            raise StopAsyncIteration
        event = self._events.pop(0)
        if isinstance(event, BaseException):
            raise event
        return event

    async def close(self) -> None:
        self.closed += 1


def openai_client(*script: Any) -> FakeOpenAIClient:
    return FakeOpenAIClient(ScriptedCall(list(script)))


def anthropic_client(*script: Any) -> FakeAnthropicClient:
    return FakeAnthropicClient(ScriptedCall(list(script)))


# =============================================================================
# OpenAI Responses API
# =============================================================================


def openai_text(text: str, *, input_tokens: int = 3, output_tokens: int = 2) -> dict[str, Any]:
    return {
        "status": "completed",
        "output": [
            {"type": "message", "content": [{"type": "output_text", "text": text}]}
        ],
        "usage": {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
        },
    }


def openai_tool_call(
    name: str, arguments: dict[str, Any] | None = None, *, call_id: str = "call_1"
) -> dict[str, Any]:
    return {
        "status": "completed",
        "output": [
            {
                "type": "function_call",
                "call_id": call_id,
                "name": name,
                "arguments": json.dumps(arguments or {}),
            }
        ],
        "usage": {"input_tokens": 5, "output_tokens": 1, "total_tokens": 6},
    }


def openai_stream_text(*deltas: str) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = [
        {"type": "response.output_text.delta", "delta": delta} for delta in deltas
    ]
    events.append(
        {
            "type": "response.completed",
            "response": {"usage": {"input_tokens": 4, "output_tokens": 2, "total_tokens": 6}},
        }
    )
    return events


def openai_stream_tool_call(
    name: str, arguments: dict[str, Any] | None = None, *, call_id: str = "call_1"
) -> list[dict[str, Any]]:
    return [
        {
            "type": "response.output_item.done",
            "item": {
                "type": "function_call",
                "call_id": call_id,
                "name": name,
                "arguments": json.dumps(arguments or {}),
            },
        },
        {
            "type": "response.completed",
            "response": {"usage": {"input_tokens": 5, "output_tokens": 1, "total_tokens": 6}},
        },
    ]


# =============================================================================
# Anthropic Messages API
# =============================================================================


def anthropic_text(text: str) -> dict[str, Any]:
    return {
        "content": [{"type": "text", "text": text}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 10, "output_tokens": 4},
    }


def anthropic_tool_use(
    name: str, arguments: dict[str, Any] | None = None, *, call_id: str = "toolu_1"
) -> dict[str, Any]:
    return {
        "content": [
            {"type": "tool_use", "id": call_id, "name": name, "input": arguments or {}}
        ],
        "stop_reason": "tool_use",
        "usage": {"input_tokens": 10, "output_tokens": 4},
    }


# =============================================================================
# Gemini
# =============================================================================


def gemini_response(*parts: dict[str, Any]) -> dict[str, Any]:
    return {
        "candidates": [
            {"content": {"role": "model", "parts": list(parts)}, "finish_reason": "STOP"}
        ],
        "usage_metadata": {
            "prompt_token_count": 7,
            "candidates_token_count": 3,
            "thoughts_token_count": 1,
            "total_token_count": 11,
        },
    }


# =============================================================================
# OpenRouter chat completions
# =============================================================================


def chat_completion(
    text: str | None = None, tool_calls: list[dict[str, Any]] | None = None
) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": text}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "choices": [
            {
                "message": message,
                "finish_reason": "tool_calls" if tool_calls else "stop",
            }
        ],
        "usage": {"prompt_tokens": 8, "completion_tokens": 2, "total_tokens": 10},
    }


# =============================================================================
# Tools
# =============================================================================


def recording_tool(name: str = "list_items", result: Any = None) -> tuple[Tool, list[Any]]:
    """A tool that records the arguments of each call."""
    seen: list[Any] = []

    def call(args: Any) -> Any:
        seen.append(args)
        return ["apple", "pear"] if result is None else result

    tool = Tool(
        name=name,
        description=f"{name} test tool",
        parameters={"type": "object", "properties": {}},
        call=call,
    )
    return tool, seen
