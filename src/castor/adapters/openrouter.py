"""OpenRouter adapter: OpenAI-compatible chat completions.

Uses the ``openai`` SDK pointed at the OpenRouter base URL.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from castor.adapters._errors import (
    error_message,
    extract_status_code,
    is_transient_network_error,
    rate_limit_classification,
)
from castor.adapters._utils import (
    append_instructions,
    content_text,
    get_field,
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

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

_RETRYABLE_STATUS_CODES = frozenset({408, 500, 502, 503, 524, 529})
_RATE_LIMIT_KEYWORDS = ("rate limit", "too many requests")


class OpenRouterAdapter(BaseAdapter):
    """OpenRouter ``client.chat.completions.create``."""

    name = "openrouter"
    default_model = "openai/gpt-4.1-mini"
    secret_name = "OPENROUTER_API_KEY"

    def create_client(self, api_key: str) -> Any:
        try:
            from openai import AsyncOpenAI
        except ImportError as e:
            raise ConfigurationError(
                "openai package not installed",
                hint="uv pip install openai",
            ) from e
        return AsyncOpenAI(api_key=api_key, base_url=OPENROUTER_BASE_URL)

    # -------------------------------------------------------------------------
    # Request
    # -------------------------------------------------------------------------

    def build_request(self, request: OperateRequest) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})

        for item in request.history:
            if isinstance(item, UserMessage):
                messages.append({"role": "user", "content": content_text(item.content)})
            elif isinstance(item, AssistantMessage):
                messages.append(
                    {"role": "assistant", "content": content_text(item.content)}
                )
            elif isinstance(item, FunctionCall):
                messages.append(
                    {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {
                                "id": item.call_id,
                                "type": "function",
                                "function": {
                                    "name": item.name,
                                    "arguments": item.arguments,
                                },
                            }
                        ],
                    }
                )
            elif isinstance(item, FunctionCallOutput):
                messages.append(
                    self.format_tool_result(
                        ToolCall(id=item.call_id, name=item.name, arguments=""),
                        item.output,
                    )
                )

        if request.instructions:
            # Tool messages carry the tool's output verbatim.
            last = messages[-1] if messages else None
            if last is not None and last["role"] == "user" and isinstance(
                last.get("content"), str
            ):
                last["content"] = append_instructions(last["content"], request.instructions)
            else:
                messages.append({"role": "user", "content": request.instructions})

        kwargs: dict[str, Any] = {"model": request.model, "messages": messages}
        if request.tools:
            kwargs["tools"] = request.tools
            if request.format is not None:
                kwargs["tool_choice"] = "required"
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        kwargs.update(request.provider_options)
        return kwargs

    def format_tools(
        self, toolkit: Toolkit, output_schema: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool["description"],
                    "parameters": tool["parameters"],
                },
            }
            for tool in toolkit.definitions(output_schema)
        ]

    def format_tool_result(self, call: ToolCall, result: str) -> dict[str, Any]:
        return {"role": "tool", "tool_call_id": call.id, "content": result}

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _send(self, client: Any, request: dict[str, Any]) -> Any:
        return await client.chat.completions.create(**request)

    async def execute_stream_request(
        self,
        client: Any,
        request: dict[str, Any],
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        stream = await self._with_signal(
            client.chat.completions.create(
                **request, stream=True, stream_options={"include_usage": True}
            ),
            signal,
        )
        if stream is None:
            return

        model = request.get("model", "")
        usage = UsageItem.zero(self.name, model)
        # tool call index -> [id, name, arguments]
        pending: dict[int, list[str]] = {}

        events = self._iterate_with_signal(stream, signal)
        try:
            async for chunk in events:
                if get_field(chunk, "usage") is not None:
                    usage = self.extract_usage(chunk, model)
                for choice in get_field(chunk, "choices") or []:
                    delta = get_field(choice, "delta")
                    text = get_field(delta, "content")
                    if text:
                        yield TextChunk(text)
                    for fragment in get_field(delta, "tool_calls") or []:
                        index = int(get_field(fragment, "index", 0) or 0)
                        entry = pending.setdefault(index, ["", "", ""])
                        function = get_field(fragment, "function")
                        entry[0] = get_field(fragment, "id") or entry[0]
                        entry[1] += get_field(function, "name") or ""
                        entry[2] += get_field(function, "arguments") or ""
                    if get_field(choice, "finish_reason"):
                        for chunk_out in _flush(pending):
                            yield chunk_out
        finally:
            await events.aclose()

        if self._aborted(signal):
            return
        for chunk_out in _flush(pending):
            yield chunk_out
        yield DoneChunk((usage,))

    # -------------------------------------------------------------------------
    # Response
    # -------------------------------------------------------------------------

    def parse_response(self, response: Any, format: Any = None) -> ParsedResponse:
        choice = _first_choice(response)
        message = get_field(choice, "message")
        text = get_field(message, "content") or ""
        content: Any = text
        if format is not None:
            content = parse_structured_content(text, format)
        return ParsedResponse(
            content=content,
            has_tool_calls=bool(self.extract_tool_calls(response)),
            stop_reason=get_field(choice, "finish_reason"),
        )

    def extract_tool_calls(self, response: Any) -> list[ToolCall]:
        message = get_field(_first_choice(response), "message")
        calls: list[ToolCall] = []
        for call in get_field(message, "tool_calls") or []:
            function = get_field(call, "function")
            calls.append(
                ToolCall(
                    id=get_field(call, "id") or new_call_id(),
                    name=get_field(function, "name", ""),
                    arguments=get_field(function, "arguments") or "{}",
                )
            )
        return calls

    def extract_usage(self, response: Any, model: str) -> UsageItem:
        usage = get_field(response, "usage")
        if usage is None:
            return UsageItem.zero(self.name, model)
        input_tokens = int(get_field(usage, "prompt_tokens") or 0)
        output_tokens = int(get_field(usage, "completion_tokens") or 0)
        details = get_field(usage, "completion_tokens_details")
        return UsageItem(
            input=input_tokens,
            output=output_tokens,
            reasoning=int(get_field(details, "reasoning_tokens") or 0),
            total=int(get_field(usage, "total_tokens") or input_tokens + output_tokens),
            provider=self.name,
            model=model,
        )

    def extract_reasoning(self, response: Any) -> list[str]:
        reasoning = get_field(get_field(_first_choice(response), "message"), "reasoning")
        return [reasoning] if isinstance(reasoning, str) and reasoning else []

    def is_complete(self, response: Any) -> bool:
        if get_field(_first_choice(response), "finish_reason") == "tool_calls":
            return False
        return not self.extract_tool_calls(response)

    def classify_error(self, error: BaseException) -> ErrorClassification:
        status = extract_status_code(error)
        if status == 429:
            return rate_limit_classification(error)
        if status in _RETRYABLE_STATUS_CODES:
            return ErrorClassification.retryable()
        if status is not None and 400 <= status < 500:
            return ErrorClassification.unrecoverable()

        message = error_message(error)
        if any(keyword in message for keyword in _RATE_LIMIT_KEYWORDS):
            return rate_limit_classification(error)
        if is_transient_network_error(error):
            return ErrorClassification.retryable()
        return ErrorClassification.unknown()


def _first_choice(response: Any) -> Any:
    choices = get_field(response, "choices") or []
    return choices[0] if choices else None


def _flush(pending: dict[int, list[str]]) -> list[ToolCallChunk]:
    chunks = [
        ToolCallChunk(id=call_id or new_call_id(), name=name, arguments=arguments or "{}")
        for call_id, name, arguments in (pending[i] for i in sorted(pending))
    ]
    pending.clear()
    return chunks
