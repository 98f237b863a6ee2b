"""Google Gemini adapter (``google-genai``)."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

from castor.adapters._errors import (
    error_message,
    extract_status_code,
    is_transient_network_error,
    rate_limit_classification,
)
from castor.adapters._utils import (
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

_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
_UNRECOVERABLE_STATUS_CODES = frozenset({400, 401, 403, 404, 409, 422})
_RATE_LIMIT_KEYWORDS = ("rate limit", "quota exceeded", "resource_exhausted", "resource exhausted")
_RETRYABLE_KEYWORDS = ("timeout", "connection", "econnrefused")

STRUCTURED_OUTPUT_INSTRUCTION = (
    "IMPORTANT: Before providing your final response, you MUST use the "
    "structured_output tool to output your answer in the required JSON format."
)


class GeminiAdapter(BaseAdapter):
    """Gemini ``client.aio.models.generate_content``."""

    name = "gemini"
    default_model = "gemini-2.5-flash"
    secret_name = "GEMINI_API_KEY"

    def create_client(self, api_key: str) -> Any:
        try:
            from google import genai
        except ImportError as e:
            raise ConfigurationError(
                "google-genai package not installed",
                hint="uv pip install google-genai",
            ) from e
        return genai.Client(api_key=api_key)

    async def close_client(self, client: Any) -> None:
        aio = getattr(client, "aio", None)
        aclose = getattr(aio, "aclose", None)
        if callable(aclose):
            await aclose()

    # -------------------------------------------------------------------------
    # Request
    # -------------------------------------------------------------------------

    def build_request(self, request: OperateRequest) -> dict[str, Any]:
        contents: list[dict[str, Any]] = []
        for item in request.history:
            if isinstance(item, UserMessage):
                _append_content(
                    contents, {"role": "user", "parts": [{"text": content_text(item.content)}]}
                )
            elif isinstance(item, AssistantMessage):
                _append_content(
                    contents, {"role": "model", "parts": [{"text": content_text(item.content)}]}
                )
            elif isinstance(item, FunctionCall):
                _append_content(
                    contents,
                    {
                        "role": "model",
                        "parts": [
                            {
                                "function_call": {
                                    "name": item.name,
                                    "args": load_arguments(item.arguments),
                                }
                            }
                        ],
                    },
                )
            elif isinstance(item, FunctionCallOutput):
                _append_content(
                    contents,
                    self.format_tool_result(
                        ToolCall(id=item.call_id, name=item.name, arguments=""),
                        item.output,
                    ),
                )

        if request.instructions:
            if contents and contents[-1]["role"] == "user":
                contents[-1]["parts"].append({"text": request.instructions})
            else:
                contents.append({"role": "user", "parts": [{"text": request.instructions}]})

        config: dict[str, Any] = {}
        system = request.system
        if request.tools:
            config["tools"] = [{"function_declarations": request.tools}]
            if request.format is not None:
                system = (
                    f"{system}\n\n{STRUCTURED_OUTPUT_INSTRUCTION}"
                    if system
                    else STRUCTURED_OUTPUT_INSTRUCTION
                )
        elif request.format is not None:
            # Native JSON mode cannot be combined with function calling.
            config["response_mime_type"] = "application/json"
            config["response_json_schema"] = request.format
        if system:
            config["system_instruction"] = system
        if request.temperature is not None:
            config["temperature"] = request.temperature
        config.update(request.provider_options)

        kwargs: dict[str, Any] = {"model": request.model, "contents": contents}
        if config:
            kwargs["config"] = config
        return kwargs

    def format_tools(
        self, toolkit: Toolkit, output_schema: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        # Without user tools the native JSON mode handles structured output.
        schema = output_schema if len(toolkit) else None
        return [
            {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": {**tool["parameters"], "type": "object"},
            }
            for tool in toolkit.definitions(schema)
        ]

    def format_tool_result(self, call: ToolCall, result: str) -> dict[str, Any]:
        try:
            parsed: Any = json.loads(result)
        except ValueError:
            parsed = result
        response = parsed if isinstance(parsed, dict) else {"result": parsed}
        return {
            "role": "user",
            "parts": [{"function_response": {"name": call.name, "response": response}}],
        }

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _send(self, client: Any, request: dict[str, Any]) -> Any:
        return await client.aio.models.generate_content(**request)

    async def execute_stream_request(
        self,
        client: Any,
        request: dict[str, Any],
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        stream = await self._with_signal(
            client.aio.models.generate_content_stream(**request), signal
        )
        if stream is None:
            return

        model = request.get("model", "")
        usage = UsageItem.zero(self.name, model)
        events = self._iterate_with_signal(stream, signal)
        try:
            async for chunk in events:
                for part in _parts(chunk):
                    function_call = get_field(part, "function_call")
                    if function_call is not None:
                        yield ToolCallChunk(
                            id=get_field(function_call, "id") or new_call_id(),
                            name=get_field(function_call, "name", ""),
                            arguments=json.dumps(get_field(function_call, "args") or {}),
                        )
                    elif get_field(part, "text") and not get_field(part, "thought"):
                        yield TextChunk(get_field(part, "text"))
                if get_field(chunk, "usage_metadata") is not None:
                    usage = self.extract_usage(chunk, model)
        finally:
            await events.aclose()
        if self._aborted(signal):
            return
        yield DoneChunk((usage,))

    # -------------------------------------------------------------------------
    # Response
    # -------------------------------------------------------------------------

    def parse_response(self, response: Any, format: Any = None) -> ParsedResponse:
        text = "".join(
            get_field(part, "text")
            for part in _parts(response)
            if get_field(part, "text") and not get_field(part, "thought")
        )
        content: Any = text
        if format is not None:
            content = parse_structured_content(text, format)
        candidates = get_field(response, "candidates") or []
        finish_reason = get_field(candidates[0], "finish_reason") if candidates else None
        return ParsedResponse(
            content=content,
            has_tool_calls=bool(self.extract_tool_calls(response)),
            stop_reason=str(finish_reason) if finish_reason is not None else None,
        )

    def extract_tool_calls(self, response: Any) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for part in _parts(response):
            function_call = get_field(part, "function_call")
            if function_call is None:
                continue
            calls.append(
                ToolCall(
                    id=get_field(function_call, "id") or new_call_id(),
                    name=get_field(function_call, "name", ""),
                    # Gemini args are Optional[dict]; always emit valid JSON.
                    arguments=json.dumps(get_field(function_call, "args") or {}),
                )
            )
        return calls

    def extract_usage(self, response: Any, model: str) -> UsageItem:
        um = get_field(response, "usage_metadata")
        if um is None:
            return UsageItem.zero(self.name, model)
        input_tokens = int(get_field(um, "prompt_token_count") or 0)
        output_tokens = int(get_field(um, "candidates_token_count") or 0)
        reasoning = int(get_field(um, "thoughts_token_count") or 0)
        return UsageItem(
            input=input_tokens,
            output=output_tokens,
            reasoning=reasoning,
            total=int(
                get_field(um, "total_token_count")
                or input_tokens + output_tokens + reasoning
            ),
            provider=self.name,
            model=model,
        )

    def extract_reasoning(self, response: Any) -> list[str]:
        """Thought summaries (parts flagged ``thought``)."""
        return [
            get_field(part, "text")
            for part in _parts(response)
            if get_field(part, "thought") and get_field(part, "text")
        ]

    def is_complete(self, response: Any) -> bool:
        return not self.extract_tool_calls(response)

    def classify_error(self, error: BaseException) -> ErrorClassification:
        status = extract_status_code(error)
        if status == 429:
            return rate_limit_classification(error)
        if status in _RETRYABLE_STATUS_CODES:
            return ErrorClassification.retryable()
        if status in _UNRECOVERABLE_STATUS_CODES:
            return ErrorClassification.unrecoverable()

        message = error_message(error)
        if any(keyword in message for keyword in _RATE_LIMIT_KEYWORDS):
            return rate_limit_classification(error)
        if is_transient_network_error(error) or any(
            keyword in message for keyword in _RETRYABLE_KEYWORDS
        ):
            return ErrorClassification.retryable()
        return ErrorClassification.unknown()


def _parts(response: Any) -> list[Any]:
    candidates = get_field(response, "candidates") or []
    if not candidates:
        return []
    content = get_field(candidates[0], "content")
    return list(get_field(content, "parts") or [])


def _append_content(contents: list[dict[str, Any]], content: dict[str, Any]) -> None:
    """Append *content*, folding parts into the previous entry when roles match.

    Gemini expects every function response of a turn in the user content that
    follows the model's function calls.
    """
    if contents and contents[-1]["role"] == content["role"]:
        contents[-1]["parts"].extend(content["parts"])
    else:
        contents.append(content)
