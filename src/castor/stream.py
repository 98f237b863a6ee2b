"""Stream loop: the operate cycle delivered as incremental chunks.

Text is forwarded as the vendor produces it; each completed tool call is run
before the vendor stream is read further. The caller iterates an
``OperateStream`` and can inspect ``history`` and ``usage`` afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from castor.errors import InternalError
from castor.history import (
    AssistantMessage,
    DoneChunk,
    ErrorChunk,
    TextChunk,
    ToolCall,
    ToolCallChunk,
    ToolResultChunk,
)
from castor.hooks import HookRunner
from castor.operate import (
    aborted_error,
    close_owned_client,
    prepare_call,
    record_tool_call,
    run_tool,
    turn_limit_error,
)
from castor.retry import RetryPolicy, call_with_retry
from castor.schema import parse_json_text, parse_structured_content
from castor.tools import STRUCTURED_OUTPUT_TOOL

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Callable

    from castor.adapters.base import BaseAdapter
    from castor.history import HistoryItem, StreamChunk, UsageItem
    from castor.operate import PreparedCall
    from castor.options import Options

logger = logging.getLogger(__name__)

STREAM_ERROR_STATUS = 502
STREAM_ERROR_TITLE = "Stream Error"

_NO_VALUE = object()


class OperateStream:
    """Single-use async iterator over ``StreamChunk`` values.

    Example:
        async for chunk in castor.stream("Hi", config=config):
            if chunk.type == "text":
                print(chunk.content, end="")
    """

    def __init__(
        self,
        chunks: AsyncIterator[StreamChunk],
        history: list[HistoryItem],
        usage: list[UsageItem],
    ) -> None:
        self._chunks = chunks
        self._history = history
        self._usage = usage

    def __aiter__(self) -> OperateStream:
        return self

    async def __anext__(self) -> StreamChunk:
        return await self._chunks.__anext__()

    async def aclose(self) -> None:
        aclose = getattr(self._chunks, "aclose", None)
        if callable(aclose):
            await aclose()

    async def collect(self) -> list[StreamChunk]:
        """Drain the stream and return every chunk."""
        return [chunk async for chunk in self]

    @property
    def history(self) -> list[HistoryItem]:
        """Conversation so far; complete once the stream is exhausted."""
        return list(self._history)

    @property
    def usage(self) -> list[UsageItem]:
        return list(self._usage)


class StreamLoop:
    """Drives one ``stream`` call.

    With no *client*, ``create_client`` is called when iteration starts and
    the resulting client is closed when the stream ends.
    """

    def __init__(
        self,
        adapter: BaseAdapter,
        client: Any = None,
        *,
        retry: RetryPolicy | None = None,
        create_client: Callable[[], Any] | None = None,
    ) -> None:
        if client is None and create_client is None:
            raise InternalError("StreamLoop needs a client or a client factory")
        self.adapter = adapter
        self.client = client
        self.retry = retry or RetryPolicy()
        self.create_client = create_client

    def start(self, input: Any, *, model: str, options: Options) -> OperateStream:
        """Prepare the call eagerly and return a lazy chunk iterator."""
        call = prepare_call(input, adapter=self.adapter, model=model, options=options)
        usage: list[UsageItem] = []
        return OperateStream(self._run(call, usage), call.history, usage)

    async def _run(
        self, call: PreparedCall, usage: list[UsageItem]
    ) -> AsyncIterator[StreamChunk]:
        owned = None
        if self.client is None and self.create_client is not None:
            logger.debug("Creating %s client for %s", self.adapter.name, call.model)
            owned = self.client = self.create_client()
        turns = self._turns(call, usage)
        try:
            async for chunk in turns:
                yield chunk
        finally:
            await turns.aclose()
            if owned is not None:
                await close_owned_client(self.adapter, owned)

    async def _turns(
        self, call: PreparedCall, usage: list[UsageItem]
    ) -> AsyncGenerator[StreamChunk, None]:
        adapter = self.adapter
        options = call.options
        history = call.history
        hooks = HookRunner(options.hooks)
        turn = 0

        while True:
            request = adapter.build_request(call.request())
            await hooks.run(
                "before_each_model_request",
                history=list(history),
                request=request,
                turn=turn + 1,
            )
            logger.debug("%s stream request (turn %d)", adapter.name, turn + 1)

            # Failures before the first chunk go through the retry policy.
            async def open_turn(
                request: dict[str, Any] = request,
            ) -> tuple[AsyncIterator[StreamChunk], StreamChunk | None]:
                chunks = adapter.execute_stream_request(
                    self.client, request, options.signal
                ).__aiter__()
                return chunks, await anext(chunks, None)

            chunks, chunk = await call_with_retry(
                open_turn,
                classify=adapter.classify_error,
                policy=self.retry,
                hooks=hooks,
                provider=adapter.name,
            )

            text_parts: list[str] = []
            structured: Any = _NO_VALUE
            tools_run = 0
            done = False
            try:
                while chunk is not None:
                    if isinstance(chunk, DoneChunk):
                        usage.extend(chunk.usage)
                        done = True
                        break
                    if isinstance(chunk, ErrorChunk):
                        yield chunk
                        return
                    if isinstance(chunk, TextChunk):
                        text_parts.append(chunk.content)
                        yield chunk
                    elif isinstance(chunk, ToolCallChunk):
                        if chunk.name == STRUCTURED_OUTPUT_TOOL and options.format is not None:
                            structured = _structured_value(chunk.arguments)
                            yield TextChunk(chunk.arguments)
                        elif len(call.toolkit):
                            if options.include_tools:
                                yield chunk
                            tool_call = ToolCall(chunk.id, chunk.name, chunk.arguments)
                            result = await run_tool(
                                tool_call, toolkit=call.toolkit, hooks=hooks
                            )
                            record_tool_call(history, tool_call, result)
                            tools_run += 1
                            if options.include_tools:
                                yield ToolResultChunk(chunk.id, chunk.name, result)
                        else:
                            logger.debug("Ignoring tool call %r: no tools registered", chunk.name)

                    try:
                        chunk = await anext(chunks, None)
                    except asyncio.CancelledError:
                        raise
                    except Exception as exc:
                        logger.debug("%s stream failed mid-turn: %r", adapter.name, exc)
                        yield ErrorChunk(STREAM_ERROR_STATUS, STREAM_ERROR_TITLE, str(exc))
                        return
            finally:
                aclose = getattr(chunks, "aclose", None)
                if callable(aclose):
                    await aclose()

            if not done:
                error = aborted_error()
                yield ErrorChunk(error.status, error.title, error.detail)
                return

            text = "".join(text_parts)
            await hooks.run(
                "after_each_model_response",
                history=list(history),
                request=request,
                response=None,
                content=text,
                usage=list(usage),
                turn=turn + 1,
            )

            if structured is not _NO_VALUE:
                history.append(AssistantMessage(structured))
                yield DoneChunk(tuple(usage))
                return

            if not tools_run:
                content: Any = text
                if options.format is not None:
                    content = parse_structured_content(text, options.format)
                history.append(AssistantMessage(content))
                yield DoneChunk(tuple(usage))
                return

            turn += 1
            if turn >= options.turns:
                logger.debug("Stream turn limit reached after %d tool round trip(s)", turn)
                error = turn_limit_error(options.turns)
                yield ErrorChunk(error.status, error.title, error.detail)
                yield DoneChunk(tuple(usage))
                return


def _structured_value(arguments: str) -> Any:
    try:
        return parse_json_text(arguments)
    except ValueError:
        return arguments


