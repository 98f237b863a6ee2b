"""Stream loop behavior through the public ``castor.stream`` entry point."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from castor import (
    AssistantMessage,
    Config,
    DoneChunk,
    ErrorChunk,
    FunctionCall,
    FunctionCallOutput,
    InternalError,
    Options,
    RetryPolicy,
    TextChunk,
    Tool,
    ToolCallChunk,
    ToolResultChunk,
    UserMessage,
    stream,
)
from castor.adapters import OpenAIAdapter
from castor.tools import STRUCTURED_OUTPUT_TOOL
from tests.helpers import (
    VendorStream,
    anthropic_client,
    openai_client,
    openai_stream_text,
    openai_stream_tool_call,
    recording_tool,
)

pytestmark = pytest.mark.contract


def _sdk_error(name: str) -> Exception:
    return type(name, (Exception,), {})(f"{name} raised")


def _anthropic_structured_events(value: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        {"type": "message_start", "message": {"usage": {"input_tokens": 6, "output_tokens": 1}}},
        {
            "type": "content_block_start",
            "index": 0,
            "content_block": {"type": "tool_use", "id": "toolu_s", "name": STRUCTURED_OUTPUT_TOOL},
        },
        {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "input_json_delta", "partial_json": json.dumps(value)},
        },
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "usage": {"output_tokens": 5}},
    ]


# =============================================================================
# Scenarios
# =============================================================================


@pytest.mark.asyncio
async def test_text_then_done_in_order() -> None:
    client = openai_client(openai_stream_text("Hello"))

    result = stream("Hi", client=client)
    chunks = await result.collect()

    assert [type(c) for c in chunks] == [TextChunk, DoneChunk]
    assert chunks[0] == TextChunk("Hello")
    assert result.history == [UserMessage("Hi"), AssistantMessage("Hello")]
    assert chunks[-1].usage == tuple(result.usage)
    assert client.create.last["stream"] is True


@pytest.mark.asyncio
async def test_tools_run_between_turns_and_chunks_are_opt_in() -> None:
    tool, seen = recording_tool()
    client = openai_client(
        openai_stream_tool_call("list_items"), openai_stream_text("apple, pear")
    )

    result = stream("List", options=Options(tools=[tool], include_tools=True), client=client)
    chunks = await result.collect()

    assert chunks[:3] == [
        ToolCallChunk(id="call_1", name="list_items", arguments="{}"),
        ToolResultChunk(id="call_1", name="list_items", result='["apple", "pear"]'),
        TextChunk("apple, pear"),
    ]
    assert isinstance(chunks[-1], DoneChunk)
    assert len(chunks[-1].usage) == 2
    assert seen == [{}]
    assert result.history == [
        UserMessage("List"),
        FunctionCall(name="list_items", arguments="{}", call_id="call_1"),
        FunctionCallOutput(call_id="call_1", name="list_items", output='["apple", "pear"]'),
        AssistantMessage("apple, pear"),
    ]


@pytest.mark.asyncio
async def test_tool_chunks_hidden_by_default() -> None:
    tool, seen = recording_tool()
    client = openai_client(
        openai_stream_tool_call("list_items"), openai_stream_text("done")
    )

    chunks = await stream("List", options=Options(tools=[tool]), client=client).collect()

    assert [type(c) for c in chunks] == [TextChunk, DoneChunk]
    assert seen == [{}]


@pytest.mark.asyncio
async def test_tool_call_executes_before_stream_resumes() -> None:
    order: list[str] = []

    def tool_call(_args: Any) -> str:
        order.append("tool")
        return "ok"

    tool = Tool("step", "Step", {"type": "object"}, tool_call)
    client = openai_client(openai_stream_tool_call("step"), openai_stream_text("after"))

    async for chunk in stream("Go", options=Options(tools=[tool]), client=client):
        order.append(chunk.type)

    assert order == ["tool", "text", "done"]


# =============================================================================
# Structured output
# =============================================================================


@pytest.mark.asyncio
async def test_structured_output_call_is_yielded_as_json_text() -> None:
    client = anthropic_client(_anthropic_structured_events({"answer": "four"}))

    result = stream(
        "2+2?",
        config=Config(provider="anthropic"),
        options=Options(format={"answer": str}),
        client=client,
    )
    chunks = await result.collect()

    assert [type(c) for c in chunks] == [TextChunk, DoneChunk]
    assert json.loads(chunks[0].content) == {"answer": "four"}
    assert result.history[-1] == AssistantMessage({"answer": "four"})


@pytest.mark.asyncio
async def test_native_json_stream_is_parsed_into_history() -> None:
    client = openai_client(openai_stream_text('{"answer": ', '"four"}'))

    result = stream("2+2?", options=Options(format={"answer": str}), client=client)
    await result.collect()

    assert result.history[-1] == AssistantMessage({"answer": "four"})


# =============================================================================
# Failures
# =============================================================================


@pytest.mark.asyncio
async def test_failure_after_chunks_becomes_error_chunk() -> None:
    events: list[Any] = [
        {"type": "response.output_text.delta", "delta": "Hel"},
        RuntimeError("connection lost"),
    ]
    client = openai_client(events)

    chunks = await stream("Hi", client=client).collect()

    assert chunks == [TextChunk("Hel"), ErrorChunk(502, "Stream Error", "connection lost")]


@pytest.mark.asyncio
async def test_failure_before_first_chunk_follows_retry_policy() -> None:
    client = openai_client(_sdk_error("APIConnectionError"), openai_stream_text("ok"))
    config = Config(retry=RetryPolicy(initial_delay_s=0.0))

    chunks = await stream("Hi", config=config, client=client).collect()

    assert chunks[0] == TextChunk("ok")
    assert len(client.create.calls) == 2


@pytest.mark.asyncio
async def test_unrecoverable_open_failure_raises() -> None:
    client = openai_client(_sdk_error("AuthenticationError"))

    with pytest.raises(Exception, match="AuthenticationError"):
        await stream("Hi", client=client).collect()


@pytest.mark.asyncio
async def test_turn_limit_yields_error_then_done() -> None:
    tool, seen = recording_tool()
    client = openai_client(
        openai_stream_tool_call("list_items", call_id="c1"),
        openai_stream_tool_call("list_items", call_id="c2"),
    )

    chunks = await stream(
        "Loop", options=Options(tools=[tool], turns=2), client=client
    ).collect()

    assert len(seen) == 2
    error, done = chunks
    assert isinstance(error, ErrorChunk)
    assert (error.status, error.title) == (429, "Too Many Requests")
    assert "2" in error.detail
    assert isinstance(done, DoneChunk)


@pytest.mark.asyncio
async def test_tool_errors_propagate_from_iteration() -> None:
    errors: list[dict[str, Any]] = []

    def explode(_args: Any) -> Any:
        raise LookupError("no such item")

    tool = Tool("explode", "Fails", {"type": "object"}, explode)
    client = openai_client(openai_stream_tool_call("explode"))
    options = Options(tools=[tool], hooks={"on_tool_error": errors.append})

    with pytest.raises(LookupError):
        await stream("Go", options=options, client=client).collect()
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_aborted_stream_yields_client_closed_error() -> None:
    signal = asyncio.Event()
    signal.set()
    client = openai_client(openai_stream_text("never"))

    chunks = await stream("Hi", options=Options(signal=signal), client=client).collect()

    assert len(chunks) == 1
    assert isinstance(chunks[0], ErrorChunk)
    assert chunks[0].status == 499


# =============================================================================
# Client ownership
# =============================================================================


@pytest.mark.asyncio
async def test_created_client_closed_when_stream_finishes(monkeypatch) -> None:
    client = openai_client(openai_stream_text("ok"))
    monkeypatch.setattr(OpenAIAdapter, "create_client", lambda self, api_key: client)

    result = stream("Hi", config=Config(api_key="sk-test"))
    assert client.closed == 0
    await result.collect()

    assert client.closed == 1


@pytest.mark.asyncio
async def test_created_client_closed_when_consumer_stops_early(monkeypatch) -> None:
    client = openai_client(openai_stream_text("a", "b", "c"))
    monkeypatch.setattr(OpenAIAdapter, "create_client", lambda self, api_key: client)

    result = stream("Hi", config=Config(api_key="sk-test"))
    async for _chunk in result:
        break
    await result.aclose()

    assert client.closed == 1


@pytest.mark.asyncio
async def test_client_created_only_when_iteration_starts(monkeypatch) -> None:
    client = openai_client(openai_stream_text("ok"))
    created: list[str] = []

    def create_client(self: Any, api_key: str) -> Any:
        created.append(api_key)
        return client

    monkeypatch.setattr(OpenAIAdapter, "create_client", create_client)

    result = stream("Hi", config=Config(api_key="sk-test"))
    assert created == []
    await result.collect()

    assert created == ["sk-test"]
    assert client.closed == 1


def test_rejected_history_creates_no_client(monkeypatch) -> None:
    created: list[str] = []
    monkeypatch.setattr(
        OpenAIAdapter, "create_client", lambda self, api_key: created.append(api_key)
    )
    orphan = FunctionCallOutput(call_id="c9", name="list_items", output="[]")

    with pytest.raises(InternalError):
        stream("Hi", config=Config(api_key="sk-test"), options=Options(history=[orphan]))

    assert created == []


# =============================================================================
# Vendor stream cleanup
# =============================================================================


@pytest.mark.asyncio
async def test_vendor_stream_closed_when_consumer_stops_early() -> None:
    vendor = VendorStream(openai_stream_text("a", "b", "c"))
    result = stream("Hi", client=openai_client(vendor))

    async for _chunk in result:
        break
    await result.aclose()

    assert vendor.closed == 1


@pytest.mark.asyncio
async def test_vendor_stream_closed_after_mid_stream_failure() -> None:
    vendor = VendorStream(
        [{"type": "response.output_text.delta", "delta": "Hel"}, RuntimeError("reset")]
    )

    chunks = await stream("Hi", client=openai_client(vendor)).collect()

    assert chunks[-1] == ErrorChunk(502, "Stream Error", "reset")
    assert vendor.closed == 1


@pytest.mark.asyncio
async def test_vendor_stream_closed_when_tool_fails() -> None:
    def explode(_args: Any) -> Any:
        raise LookupError("no such item")

    tool = Tool("explode", "Fails", {"type": "object"}, explode)
    vendor = VendorStream(openai_stream_tool_call("explode"))

    with pytest.raises(LookupError):
        await stream("Go", options=Options(tools=[tool]), client=openai_client(vendor)).collect()

    assert vendor.closed == 1
