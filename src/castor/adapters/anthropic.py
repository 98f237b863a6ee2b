"""Anthropic Messages API adapter."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

from castor.adapters._errors import (
    exception_names,
    extract_status_code,
    is_transient_network_error,
    rate_limit_classification,
)
from castor.adapters._utils import (
    append_instructions,
    content_text,
    get_field,
    load_arguments,
    new_call_id,
)
from castor.adapters.base import BaseAdapter
from castor.errors import ConfigurationError
from castor.history import (
    AssistantMessage,
    DoneChunk,
    FunctionCall,
    FunctionCallOutput,
    ParsedResponse,
    TextChunk,
    ToolCall,
    ToolCallChunk,
    UsageItem,
    UserMessage,
)
from castor.retry import ErrorClassification
from castor.schema import parse_structured_content

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from castor.adapters.base import OperateRequest
    from castor.history import StreamChunk
    from castor.tools import Toolkit

_ANTHROPIC_MAX_TOKENS = 4096

_RATE_LIMIT_ERRORS = frozenset({"RateLimitError"})
_RETRYABLE_ERRORS = frozenset(
    {
        "APIConnectionError",
        "APIConnectionTimeoutError",
        "APITimeoutError",
        "InternalServerError",
        "OverloadedError",
    }
)
_UNRECOVERABLE_ERRORS = frozenset(
    {
        "AuthenticationError",
        "BadRequestError",
        "NotFoundError",
        "PermissionDeniedError",
        "UnprocessableEntityError",
    }
)


class AnthropicAdapter(BaseAdapter):
    """Anthropic Messages API (``client.messages.create``)."""

    name = "anthropic"
    default_model = "claude-sonnet-4-5"
    secret_name = "ANTHROPIC_API_KEY"

    def create_client(self, api_key: str) -> Any:
        try:
            from anthropic import AsyncAnthropic
        except ImportError as e:
            raise ConfigurationError(
                "anthropic package not installed",
                hint="uv pip install anthropic",
            ) from e
        return AsyncAnthropic(api_key=api_key)

    # -------------------------------------------------------------------------
    # Request
    # -------------------------------------------------------------------------

    def build_request(self, request: OperateRequest) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        for item in request.history:
            if isinstance(item, UserMessage):
                _append_message(
                    messages, {"role": "user", "content": content_text(item.content)}
                )
            elif isinstance(item, AssistantMessage):
                text = content_text(item.content)
                # Anthropic rejects empty text blocks.
                if text:
                    _append_message(messages, {"role": "assistant", "content": text})
            elif isinstance(item, FunctionCall):
                _append_message(
                    messages,
                    {
                        "role": "assistant",
                        "content": [
                            {
                                "type": "tool_use",
                                "id": item.call_id,
                                "name": item.name,
                                "input": load_arguments(item.arguments),
                            }
                        ],
                    },
                )
            elif isinstance(item, FunctionCallOutput):
                _append_message(
                    messages,
                    self.format_tool_result(
                        ToolCall(id=item.call_id, name=item.name, arguments=""),
                        item.output,
                    ),
                )

        if request.instructions:
            _append_to_last_message(messages, request.instructions)

        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": _ANTHROPIC_MAX_TOKENS,
        }
        if request.system:
            kwargs["system"] = request.system
        if request.tools:
            kwargs["tools"] = request.tools
            if request.format is not None:
                # Forces a tool call each turn; the model ends by calling structured_output.
                kwargs["tool_choice"] = {"type": "any"}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        kwargs.update(request.provider_options)
        return kwargs

    def format_tools(
        self, toolkit: Toolkit, output_schema: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        return [
            {
                "name": tool["name"],
                "description": tool["description"],
                "input_schema": {**tool["parameters"], "type": "object"},
            }
            for tool in toolkit.definitions(output_schema)
        ]

    def format_tool_result(self, call: ToolCall, result: str) -> dict[str, Any]:
        return {
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": call.id, "content": result}
            ],
        }

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _send(self, client: Any, request: dict[str, Any]) -> Any:
        return await client.messages.create(**request)

    async def execute_stream_request(
        self,
        client: Any,
        request: dict[str, Any],
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        stream = await self._with_signal(
            client.messages.create(**request, stream=True), signal
        )
        if stream is None:
            return

        model = request.get("model", "")
        input_tokens = 0
        output_tokens = 0
        # content block index -> [id, name, partial json]
        pending: dict[int, list[str]] = {}

        events = self._iterate_with_signal(stream, signal)
        try:
            async for event in events:
                kind = get_field(event, "type")
                if kind == "message_start":
                    usage = get_field(get_field(event, "message"), "usage")
                    input_tokens = int(get_field(usage, "input_tokens") or 0)
                    output_tokens = int(get_field(usage, "output_tokens") or 0)
                elif kind == "content_block_start":
                    block = get_field(event, "content_block")
                    if get_field(block, "type") == "tool_use":
                        pending[int(get_field(event, "index", 0))] = [
                            get_field(block, "id") or new_call_id(),
                            get_field(block, "name", ""),
                            "",
                        ]
                    elif get_field(block, "type") == "text" and get_field(block, "text"):
                        yield TextChunk(get_field(block, "text"))
                elif kind == "content_block_delta":
                    delta = get_field(event, "delta")
                    delta_type = get_field(delta, "type")
                    if delta_type == "text_delta":
                        text = get_field(delta, "text", "")
                        if text:
                            yield TextChunk(text)
                    elif delta_type == "input_json_delta":
                        index = int(get_field(event, "index", 0))
                        if index in pending:
                            pending[index][2] += get_field(delta, "partial_json", "")
                elif kind == "content_block_stop":
                    call = pending.pop(int(get_field(event, "index", 0)), None)
                    if call is not None:
                        call_id, name, arguments = call
                        yield ToolCallChunk(id=call_id, name=name, arguments=arguments or "{}")
                elif kind == "message_delta":
                    usage = get_field(event, "usage")
                    output_tokens = int(get_field(usage, "output_tokens") or output_tokens)
        finally:
            await events.aclose()

        if self._aborted(signal):
            return
        yield DoneChunk(
            (
                UsageItem(
                    input=input_tokens,
                    output=output_tokens,
                    reasoning=0,
                    total=input_tokens + output_tokens,
                    provider=self.name,
                    model=model,
                ),
            )
        )

    # -------------------------------------------------------------------------
    # Response
    # -------------------------------------------------------------------------

    def parse_response(self, response: Any, format: Any = None) -> ParsedResponse:
        text_parts = [
            get_field(block, "text", "")
            for block in get_field(response, "content") or []
            if get_field(block, "type") == "text"
        ]
        text = "\n\n".join(part for part in text_parts if part)
        content: Any = text
        if format is not None:
            content = parse_structured_content(text, format)
        return ParsedResponse(
            content=content,
            has_tool_calls=bool(self.extract_tool_calls(response)),
            stop_reason=get_field(response, "stop_reason"),
        )

    def extract_tool_calls(self, response: Any) -> list[ToolCall]:
        return [
            ToolCall(
                id=get_field(block, "id") or new_call_id(),
                name=get_field(block, "name", ""),
                arguments=json.dumps(get_field(block, "input") or {}),
            )
            for block in get_field(response, "content") or []
            if get_field(block, "type") == "tool_use"
        ]

    def extract_usage(self, response: Any, model: str) -> UsageItem:
        usage = get_field(response, "usage")
        if usage is None:
            return UsageItem.zero(self.name, model)
        input_tokens = int(get_field(usage, "input_tokens") or 0)
        output_tokens = int(get_field(usage, "output_tokens") or 0)
        return UsageItem(
            input=input_tokens,
            output=output_tokens,
            reasoning=0,
            total=input_tokens + output_tokens,
            provider=self.name,
            model=model,
        )

    def extract_reasoning(self, response: Any) -> list[str]:
        """Text of extended-thinking blocks; redacted blocks carry none."""
        return [
            get_field(block, "thinking")
            for block in get_field(response, "content") or []
            if get_field(block, "type") == "thinking" and get_field(block, "thinking")
        ]

    def is_complete(self, response: Any) -> bool:
        if get_field(response, "stop_reason") == "tool_use":
            return False
        return not self.extract_tool_calls(response)

    def classify_error(self, error: BaseException) -> ErrorClassification:
        names = exception_names(error)
        if names & _RATE_LIMIT_ERRORS:
            return rate_limit_classification(error)
        if names & _RETRYABLE_ERRORS:
            return ErrorClassification.retryable()
        if names & _UNRECOVERABLE_ERRORS:
            return ErrorClassification.unrecoverable()

        status = extract_status_code(error)
        if status == 429:
            return rate_limit_classification(error)
        if status is not None and status >= 500:
            return ErrorClassification.retryable()
        if status is not None and 400 <= status < 500:
            return ErrorClassification.unrecoverable()
        if is_transient_network_error(error):
            return ErrorClassification.retryable()
        return ErrorClassification.unknown()


def _append_message(messages: list[dict[str, Any]], msg: dict[str, Any]) -> None:
    """Append *msg*, merging into the previous message when roles match.

    Anthropic requires strict user/assistant alternation, so consecutive
    same-role messages (e.g. a tool_result followed by a user prompt) become
    one message with concatenated content blocks.
    """
    if messages and messages[-1]["role"] == msg["role"]:
        prev = messages[-1]
        prev_content = prev["content"]
        new_content = msg["content"]
        if isinstance(prev_content, str):
            prev_content = [{"type": "text", "text": prev_content}]
        if isinstance(new_content, str):
            new_content = [{"type": "text", "text": new_content}]
        prev["content"] = prev_content + new_content
    else:
        messages.append(msg)


def _append_to_last_message(messages: list[dict[str, Any]], instructions: str) -> None:
    if not messages:
        messages.append({"role": "user", "content": instructions})
        return
    last = messages[-1]
    if isinstance(last["content"], str):
        last["content"] = append_instructions(last["content"], instructions)
    else:
        last["content"] = [*last["content"], {"type": "text", "text": instructions}]
