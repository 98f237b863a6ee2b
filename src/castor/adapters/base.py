"""Adapter contract: one implementation per vendor.

Adapters translate a provider-agnostic ``OperateRequest`` into vendor call
kwargs, execute it against a caller-owned client, and translate the vendor
response back. They hold no per-call state; loops never branch on vendor
identity.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass, field
import inspect
import logging
from typing import TYPE_CHECKING, Any, ClassVar

from castor.schema import parse_json_text
from castor.tools import STRUCTURED_OUTPUT_TOOL

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

    from castor.history import (
        HistoryItem,
        ParsedResponse,
        StreamChunk,
        ToolCall,
        UsageItem,
    )
    from castor.retry import ErrorClassification
    from castor.tools import Toolkit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperateRequest:
    """A provider-agnostic request for one model round trip."""

    model: str
    history: list[HistoryItem]
    system: str | None = None
    instructions: str | None = None
    #: Vendor-formatted tool definitions from ``Adapter.format_tools``.
    tools: list[dict[str, Any]] | None = None
    #: Vendor-formatted output schema from ``Adapter.format_output_schema``.
    format: dict[str, Any] | None = None
    #: The caller's original format, used for markdown fallback parsing.
    format_source: Any = None
    temperature: float | None = None
    provider_options: dict[str, Any] = field(default_factory=dict)


class BaseAdapter(ABC):
    """Base class for vendor adapters."""

    name: ClassVar[str]
    default_model: ClassVar[str]
    #: Credential name passed to the secret resolver.
    secret_name: ClassVar[str]

    # -------------------------------------------------------------------------
    # Client lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_client(self, api_key: str) -> Any:
        """Construct the vendor's async client."""

    async def close_client(self, client: Any) -> None:
        """Close a client this library created."""
        close = getattr(client, "close", None)
        if callable(close):
            result = close()
            if inspect.isawaitable(result):
                await result

    # -------------------------------------------------------------------------
    # Request
    # -------------------------------------------------------------------------

    @abstractmethod
    def build_request(self, request: OperateRequest) -> dict[str, Any]:
        """Map a generic request to vendor call kwargs."""

    @abstractmethod
    def format_tools(
        self, toolkit: Toolkit, output_schema: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Vendor tool definitions for *toolkit* (plus structured output when needed)."""

    def format_output_schema(self, schema: dict[str, Any]) -> dict[str, Any]:
        """Vendor shape for a JSON Schema output format."""
        return schema

    @abstractmethod
    def format_tool_result(self, call: ToolCall, result: str) -> dict[str, Any]:
        """Vendor message carrying one tool result."""

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute_request(
        self,
        client: Any,
        request: dict[str, Any],
        signal: asyncio.Event | None = None,
    ) -> Any | None:
        """Send *request*; returns ``None`` when aborted through *signal*."""
        return await self._with_signal(self._send(client, request), signal)

    @abstractmethod
    async def _send(self, client: Any, request: dict[str, Any]) -> Any:
        """Issue the vendor call."""

    @abstractmethod
    def execute_stream_request(
        self,
        client: Any,
        request: dict[str, Any],
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream the vendor call as chunks, ending with a ``DoneChunk``."""

    async def _with_signal(
        self, call: Awaitable[Any], signal: asyncio.Event | None
    ) -> Any | None:
        if signal is None:
            return await call

        call_task = asyncio.ensure_future(call)
        abort_task = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait(
                {call_task, abort_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            call_task.cancel()
            raise
        finally:
            abort_task.cancel()

        if not call_task.done():
            call_task.cancel()
            await asyncio.gather(call_task, return_exceptions=True)
            logger.debug("%s request aborted by signal", self.name)
            return None

        error = call_task.exception()
        if error is not None and signal.is_set():
            logger.debug("%s request failed after abort: %r", self.name, error)
            return None
        return call_task.result()

    @staticmethod
    def _aborted(signal: asyncio.Event | None) -> bool:
        """Aborted streams end without a ``DoneChunk``."""
        return signal is not None and signal.is_set()

    async def _iterate_with_signal(
        self, stream: Any, signal: asyncio.Event | None
    ) -> AsyncIterator[Any]:
        """Yield vendor stream events until exhausted or aborted.

        The vendor stream is closed however iteration ends, so callers must
        ``aclose()`` this generator when they stop early.
        """
        try:
            async for event in stream:
                if signal is not None and signal.is_set():
                    logger.debug("%s stream aborted by signal", self.name)
                    return
                yield event
        except asyncio.CancelledError:
            raise
        except Exception:
            if signal is not None and signal.is_set():
                logger.debug("%s stream failed after abort", self.name)
                return
            raise
        finally:
            await self._close_stream(stream)

    async def _close_stream(self, stream: Any) -> None:
        """Release the vendor HTTP response (``close()`` or ``aclose()``)."""
        close = getattr(stream, "aclose", None) or getattr(stream, "close", None)
        if not callable(close):
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s stream close failed: %s", self.name, exc)

    # -------------------------------------------------------------------------
    # Response
    # -------------------------------------------------------------------------

    @abstractmethod
    def parse_response(self, response: Any, format: Any = None) -> ParsedResponse:
        """Extract assistant content; *format* enables JSON parsing."""

    @abstractmethod
    def extract_tool_calls(self, response: Any) -> list[ToolCall]:
        """Every function invocation in *response*, in vendor order."""

    @abstractmethod
    def extract_usage(self, response: Any, model: str) -> UsageItem:
        """Token usage; all zeros when the vendor reported none."""

    def extract_reasoning(self, response: Any) -> list[str]:
        """Reasoning or thinking text the vendor exposed; none by default."""
        return []

    @abstractmethod
    def is_complete(self, response: Any) -> bool:
        """Whether the vendor signaled no tool calls are pending."""

    @abstractmethod
    def classify_error(self, error: BaseException) -> ErrorClassification:
        """Map a vendor failure to an error category."""

    def has_structured_output(self, response: Any) -> bool:
        return any(
            call.name == STRUCTURED_OUTPUT_TOOL
            for call in self.extract_tool_calls(response)
        )

    def extract_structured_output(self, response: Any) -> Any:
        for call in self.extract_tool_calls(response):
            if call.name == STRUCTURED_OUTPUT_TOOL:
                try:
                    return parse_json_text(call.arguments)
                except ValueError:
                    return call.arguments
        return None
