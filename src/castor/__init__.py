"""Castor: provider-agnostic LLM calls with tools and structured output.

Public API:
    - operate(): Run the request/tool loop to a final response
    - stream(): The same loop as an async iterator of chunks
    - Config: Provider, model, credentials and retry policy
    - Options: Per-call features (tools, format, history, hooks)
"""

from __future__ import annotations

from functools import partial
import logging
from typing import TYPE_CHECKING, Any

from castor.adapters import get_adapter
from castor.config import Config
from castor.errors import (
    APIError,
    CastorError,
    ConfigurationError,
    InternalError,
    RateLimitError,
    ToolError,
)
from castor.history import (
    AssistantMessage,
    DoneChunk,
    ErrorChunk,
    FunctionCall,
    FunctionCallOutput,
    OperateResponse,
    ResponseError,
    ResponseStatus,
    TextChunk,
    ToolCallChunk,
    ToolResultChunk,
    UsageItem,
    UserMessage,
    history_to_dicts,
    total_usage,
)
from castor.hooks import Hooks
from castor.operate import OperateLoop, close_owned_client
from castor.options import Options
from castor.retry import ErrorCategory, RetryPolicy
from castor.stream import OperateStream, StreamLoop
from castor.tools import Tool, Toolkit

if TYPE_CHECKING:
    from castor.adapters.base import BaseAdapter

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("castor-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("castor").addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)


async def operate(
    input: Any = None,
    *,
    config: Config | None = None,
    options: Options | None = None,
    client: Any = None,
) -> OperateResponse:
    """Send *input* and run tool calls until the model gives a final answer.

    Args:
        input: A string, history item, role dict, or a list of those.
        config: Provider, model and credentials (defaults to OpenAI).
        options: Optional features: tools, format, history, hooks, turns.
        client: A vendor SDK client to use as-is; it is never closed.

    Returns:
        OperateResponse with content, history, status and usage.

    Example:
        config = Config(model="claude-sonnet-4-5")
        result = await operate("What is 2 + 2?", config=config)
        print(result.content)
    """
    config = config or Config()
    options = options or Options()
    adapter, client, owns_client = _resolve_client(config, client)

    loop = OperateLoop(adapter, client, retry=config.retry)
    try:
        return await loop.execute(input, model=str(config.model), options=options)
    finally:
        if owns_client:
            await close_owned_client(adapter, client)


def stream(
    input: Any = None,
    *,
    config: Config | None = None,
    options: Options | None = None,
    client: Any = None,
) -> OperateStream:
    """Like ``operate`` but yields chunks as they arrive.

    Example:
        async for chunk in stream("Tell me a story", config=config):
            if chunk.type == "text":
                print(chunk.content, end="")
    """
    config = config or Config()
    options = options or Options()
    adapter = get_adapter(str(config.provider))

    create_client = None
    if client is None:
        # Key errors surface here; the client itself is created on first iteration.
        create_client = partial(adapter.create_client, config.credential())

    loop = StreamLoop(adapter, client, retry=config.retry, create_client=create_client)
    return loop.start(input, model=str(config.model), options=options)


def _resolve_client(config: Config, client: Any) -> tuple[BaseAdapter, Any, bool]:
    """Pick the adapter and either the caller's client or a new one."""
    adapter = get_adapter(str(config.provider))
    if client is not None:
        return adapter, client, False
    logger.debug("Creating %s client for %s", adapter.name, config.model)
    return adapter, adapter.create_client(config.credential()), True


__all__ = [
    "APIError",
    "AssistantMessage",
    "CastorError",
    "Config",
    "ConfigurationError",
    "DoneChunk",
    "ErrorCategory",
    "ErrorChunk",
    "FunctionCall",
    "FunctionCallOutput",
    "Hooks",
    "InternalError",
    "OperateResponse",
    "OperateStream",
    "Options",
    "RateLimitError",
    "ResponseError",
    "ResponseStatus",
    "RetryPolicy",
    "TextChunk",
    "Tool",
    "ToolCallChunk",
    "ToolError",
    "ToolResultChunk",
    "Toolkit",
    "UsageItem",
    "UserMessage",
    "history_to_dicts",
    "operate",
    "stream",
    "total_usage",
]
