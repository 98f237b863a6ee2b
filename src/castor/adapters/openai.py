"""OpenAI Responses API adapter."""

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
    content_text,
    get_field,
    new_call_id,
    to_strict_schema,
)
from castor.adapters.base import BaseAdapter
from castor.errors import APIError, ConfigurationError
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

_RATE_LIMIT_ERRORS = frozenset({"RateLimitError"})
_RETRYABLE_ERRORS = frozenset(
    {"APIConnectionError", "APITimeoutError", "InternalServerError"}
)
_UNRECOVERABLE_ERRORS = frozenset(
    {
        "AuthenticationError",
        "BadRequestError",
        "ConflictError",
        "NotFoundError",
        "PermissionDeniedError",
        "UnprocessableEntityError",
    }
)


class OpenAIAdapter(BaseAdapter):
    """OpenAI Responses API (``client.responses.create``)."""

    name = "openai"
    default_model = "gpt-4.1"
    secret_name = "OPENAI_API_KEY"

    def create_client(self, api_key: str) -> Any:
        try:
            from openai import AsyncOpenAI
        except ImportError as e:
            raise ConfigurationError(
                "openai package not installed",
                hint="uv pip install openai",
            ) from e
        return AsyncOpenAI(api_key=api_key)

    # -------------------------------------------------------------------------
    # Request
    # -------------------------------------------------------------------------

    def build_request(self, request: OperateRequest) -> dict[str, Any]:
        input_items: list[dict[str, Any]] = []
        if request.system:
            input_items.append({"role": "system", "content": request.system})

        for item in request.history:
            if isinstance(item, UserMessage):
                input_items.append({"role": "user", "content": content_text(item.content)})
            elif isinstance(item, AssistantMessage):
                input_items.append(
                    {"role": "assistant", "content": content_text(item.content)}
                )
            elif isinstance(item, FunctionCall):
                input_items.append(
                    {
                        "type": "function_call",
                        "call_id": item.call_id,
                        "name": item.name,
                        "arguments": item.arguments,
                    }
                )
            elif isinstance(item, FunctionCallOutput):
                input_items.append(
                    self.format_tool_result(
                        ToolCall(id=item.call_id, name=item.name, arguments=""),
                        item.output,
                    )
                )

        kwargs: dict[str, Any] = {"model": request.model, "input": input_items}
        if request.instructions:
            kwargs["instructions"] = request.instructions
        if request.tools:
            kwargs["tools"] = request.tools
        if request.format is not None:
            kwargs["text"] = {"format": request.format}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        kwargs.update(request.provider_options)
        return kwargs

    def format_tools(
        self, toolkit: Toolkit, output_schema: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        # Structured output is native here; output_schema never becomes a tool.
        _ = output_schema
        return [
            {
                "type": "function",
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            }
            for tool in toolkit.tools
        ]

    def format_output_schema(self, schema: dict[str, Any]) -> dict[str, Any]:
        return {
            "type": "json_schema",
            "name": "response",
            "schema": to_strict_schema(schema),
            "strict": True,
        }

    def format_tool_result(self, call: ToolCall, result: str) -> dict[str, Any]:
        return {"type": "function_call_output", "call_id": call.id, "output": result}

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _send(self, client: Any, request: dict[str, Any]) -> Any:
        return await client.responses.create(**request)

    async def execute_stream_request(
        self,
        client: Any,
        request: dict[str, Any],
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        stream = await self._with_signal(
            client.responses.create(**request, stream=True), signal
        )
        if stream is None:
            return

        model = request.get("model", "")
        usage = UsageItem.zero(self.name, model)
        events = self._iterate_with_signal(stream, signal)
        try:
            async for event in events:
                kind = get_field(event, "type")
                if kind == "response.output_text.delta":
                    delta = get_field(event, "delta", "")
                    if delta:
                        yield TextChunk(delta)
                elif kind == "response.output_item.done":
                    item = get_field(event, "item")
                    if get_field(item, "type") == "function_call":
                        yield ToolCallChunk(
                            id=get_field(item, "call_id") or new_call_id(),
                            name=get_field(item, "name", ""),
                            arguments=get_field(item, "arguments") or "{}",
                        )
                elif kind == "response.completed":
                    usage = self.extract_usage(get_field(event, "response"), model)
                elif kind in ("response.failed", "error"):
                    error = get_field(get_field(event, "response"), "error") or event
                    raise APIError(
                        f"OpenAI stream failed: {get_field(error, 'message', error)}",
                        provider=self.name,
                        phase="stream",
                    )
        finally:
            await events.aclose()
        if self._aborted(signal):
            return
        yield DoneChunk((usage,))

    # -------------------------------------------------------------------------
    # Response
    # -------------------------------------------------------------------------

    def parse_response(self, response: Any, format: Any = None) -> ParsedResponse:
        text = _output_text(response)
        content: Any = text
        if format is not None:
            content = parse_structured_content(text, format)
        return ParsedResponse(
            content=content,
            has_tool_calls=bool(self.extract_tool_calls(response)),
            stop_reason=get_field(response, "status"),
        )

    def extract_tool_calls(self, response: Any) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for item in get_field(response, "output") or []:
            if get_field(item, "type") != "function_call":
                continue
            calls.append(
                ToolCall(
                    id=get_field(item, "call_id") or get_field(item, "id") or new_call_id(),
                    name=get_field(item, "name", ""),
                    arguments=_arguments_text(get_field(item, "arguments")),
                )
            )
        return calls

    def extract_usage(self, response: Any, model: str) -> UsageItem:
        usage = get_field(response, "usage")
        if usage is None:
            return UsageItem.zero(self.name, model)
        input_tokens = int(get_field(usage, "input_tokens") or 0)
        output_tokens = int(get_field(usage, "output_tokens") or 0)
        details = get_field(usage, "output_tokens_details")
        return UsageItem(
            input=input_tokens,
            output=output_tokens,
            reasoning=int(get_field(details, "reasoning_tokens") or 0),
            total=int(get_field(usage, "total_tokens") or input_tokens + output_tokens),
            provider=self.name,
            model=model,
        )

    def extract_reasoning(self, response: Any) -> list[str]:
        """Summary and content text of ``reasoning`` output items."""
        texts: list[str] = []
        for item in get_field(response, "output") or []:
            if get_field(item, "type") != "reasoning":
                continue
            content = get_field(item, "content")
            if isinstance(content, str):
                content = [{"text": content}]
            for part in [*(get_field(item, "summary") or []), *(content or [])]:
                if get_field(part, "text"):
                    texts.append(get_field(part, "text"))
        return texts

    def is_complete(self, response: Any) -> bool:
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


def _output_text(response: Any) -> str:
    text = get_field(response, "output_text")
    if isinstance(text, str) and text:
        return text
    parts: list[str] = []
    for item in get_field(response, "output") or []:
        if get_field(item, "type") != "message":
            continue
        for part in get_field(item, "content") or []:
            if get_field(part, "type") == "output_text":
                parts.append(get_field(part, "text", ""))
    return "".join(parts)


def _arguments_text(arguments: Any) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments)
