"""Operate loop: bounded request → respond → execute-tools cycle.

States: AwaitingModel → (ExecutingTools → AwaitingModel)* → Completed |
Incomplete. All per-call state lives in locals; adapters and toolkits are
reusable across calls.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any

from castor.adapters.base import OperateRequest
from castor.history import (
    AssistantMessage,
    FunctionCall,
    FunctionCallOutput,
    OperateResponse,
    ResponseError,
    ResponseStatus,
    UserMessage,
    to_history_item,
    validate_history,
)
from castor.hooks import HookRunner
from castor.placeholders import substitute
from castor.retry import RetryPolicy, call_with_retry
from castor.schema import to_json_schema

if TYPE_CHECKING:
    from castor.adapters.base import BaseAdapter
    from castor.history import HistoryItem, ToolCall, UsageItem
    from castor.options import Options
    from castor.tools import Toolkit

logger = logging.getLogger(__name__)

TURN_LIMIT_STATUS = 429
TURN_LIMIT_TITLE = "Too Many Requests"
ABORTED_STATUS = 499
ABORTED_TITLE = "Client Closed Request"


def turn_limit_error(turns: int) -> ResponseError:
    return ResponseError(
        status=TURN_LIMIT_STATUS,
        title=TURN_LIMIT_TITLE,
        detail=f"Model requested function call but exceeded {turns} turns",
    )


def aborted_error() -> ResponseError:
    return ResponseError(
        status=ABORTED_STATUS,
        title=ABORTED_TITLE,
        detail="Request was cancelled before the model responded",
    )


@dataclass
class PreparedCall:
    """Inputs resolved once at the start of a call."""

    model: str
    history: list[HistoryItem]
    system: str | None
    instructions: str | None
    toolkit: Toolkit
    #: Vendor tool definitions (None when there are none).
    tools: list[dict[str, Any]] | None
    #: Vendor-formatted output schema (None without ``format``).
    output_schema: dict[str, Any] | None
    options: Options

    def request(self) -> OperateRequest:
        return OperateRequest(
            model=self.model,
            history=list(self.history),
            system=self.system,
            instructions=self.instructions,
            tools=self.tools,
            format=self.output_schema,
            format_source=self.options.format,
            temperature=self.options.temperature,
            provider_options=dict(self.options.provider_options),
        )


def prepare_call(
    input: Any, *, adapter: BaseAdapter, model: str, options: Options
) -> PreparedCall:
    """Merge history with input, apply placeholders, build tools and schema."""
    history = [to_history_item(item) for item in options.history or []]

    new_items = input if isinstance(input, list) else [] if input is None else [input]
    for raw in new_items:
        item = to_history_item(raw)
        if (
            isinstance(item, UserMessage)
            and isinstance(item.content, str)
            and options.substitutes("input")
        ):
            item = UserMessage(substitute(item.content, options.data))
        history.append(item)
    validate_history(history)

    system = options.system
    if system and options.substitutes("system"):
        system = substitute(system, options.data)
    instructions = options.instructions
    if instructions and options.substitutes("instructions"):
        instructions = substitute(instructions, options.data)

    toolkit = options.toolkit()
    schema = to_json_schema(options.format) if options.format is not None else None
    tools: list[dict[str, Any]] | None = None
    if len(toolkit) or schema is not None:
        tools = adapter.format_tools(toolkit, schema) or None

    return PreparedCall(
        model=model,
        history=history,
        system=system,
        instructions=instructions,
        toolkit=toolkit,
        tools=tools,
        output_schema=adapter.format_output_schema(schema) if schema is not None else None,
        options=options,
    )


async def run_tool(call: ToolCall, *, toolkit: Toolkit, hooks: HookRunner) -> str:
    """Execute one tool call with its hooks; tool errors propagate."""
    await hooks.run("before_each_tool", tool_name=call.name, args=call.arguments)
    try:
        result = await toolkit.call(call.name, call.arguments)
    except Exception as exc:
        await hooks.run(
            "on_tool_error", tool_name=call.name, args=call.arguments, error=exc
        )
        raise
    await hooks.run(
        "after_each_tool", tool_name=call.name, args=call.arguments, result=result
    )
    return result


def record_tool_call(history: list[HistoryItem], call: ToolCall, result: str) -> None:
    history.append(FunctionCall(name=call.name, arguments=call.arguments, call_id=call.id))
    history.append(FunctionCallOutput(call_id=call.id, name=call.name, output=result))


async def close_owned_client(adapter: BaseAdapter, client: Any) -> None:
    """Close a client this library created; failures are only logged."""
    try:
        await adapter.close_client(client)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        # Cleanup should never mask the primary failure.
        logger.warning("%s client cleanup failed: %s", adapter.name, exc)


class OperateLoop:
    """Drives one ``operate`` call to a terminal result."""

    def __init__(
        self, adapter: BaseAdapter, client: Any, *, retry: RetryPolicy | None = None
    ) -> None:
        self.adapter = adapter
        self.client = client
        self.retry = retry or RetryPolicy()

    async def execute(self, input: Any, *, model: str, options: Options) -> OperateResponse:
        adapter = self.adapter
        call = prepare_call(input, adapter=adapter, model=model, options=options)
        hooks = HookRunner(options.hooks)
        history = call.history
        usage: list[UsageItem] = []
        responses: list[Any] = []
        reasoning: list[str] = []
        turn = 0

        while True:
            request = adapter.build_request(call.request())
            await hooks.run(
                "before_each_model_request",
                history=list(history),
                request=request,
                turn=turn + 1,
            )
            logger.debug("%s request (turn %d, model %s)", adapter.name, turn + 1, model)

            def send(request: dict[str, Any] = request) -> Any:
                return adapter.execute_request(self.client, request, options.signal)

            response = await call_with_retry(
                send,
                classify=adapter.classify_error,
                policy=self.retry,
                hooks=hooks,
                provider=adapter.name,
            )
            if response is None:
                logger.debug("%s call aborted by signal", adapter.name)
                return OperateResponse(
                    content="",
                    history=history,
                    status=ResponseStatus.INCOMPLETE,
                    usage=usage,
                    error=aborted_error(),
                    reasoning=reasoning,
                    responses=responses,
                )

            responses.append(response)
            usage.append(adapter.extract_usage(response, model))
            reasoning.extend(adapter.extract_reasoning(response))
            parsed = adapter.parse_response(response, options.format)
            await hooks.run(
                "after_each_model_response",
                history=list(history),
                request=request,
                response=response,
                content=parsed.content,
                usage=list(usage),
                turn=turn + 1,
            )

            if options.format is not None and adapter.has_structured_output(response):
                content = adapter.extract_structured_output(response)
                history.append(AssistantMessage(content))
                return self._completed(content, history, usage, reasoning, responses)

            tool_calls = adapter.extract_tool_calls(response)
            if not tool_calls or not len(call.toolkit):
                if tool_calls:
                    logger.debug("Ignoring %d tool call(s): no tools registered", len(tool_calls))
                history.append(AssistantMessage(parsed.content))
                return self._completed(parsed.content, history, usage, reasoning, responses)

            for tool_call in tool_calls:
                result = await run_tool(tool_call, toolkit=call.toolkit, hooks=hooks)
                record_tool_call(history, tool_call, result)

            turn += 1
            if turn >= options.turns:
                logger.debug("Turn limit reached after %d tool round trip(s)", turn)
                return OperateResponse(
                    content=parsed.content,
                    history=history,
                    status=ResponseStatus.INCOMPLETE,
                    usage=usage,
                    error=turn_limit_error(options.turns),
                    reasoning=reasoning,
                    responses=responses,
                )

    @staticmethod
    def _completed(
        content: Any,
        history: list[HistoryItem],
        usage: list[UsageItem],
        reasoning: list[str],
        responses: list[Any],
    ) -> OperateResponse:
        return OperateResponse(
            content=content,
            history=history,
            status=ResponseStatus.COMPLETED,
            usage=usage,
            reasoning=reasoning,
            responses=responses,
        )
