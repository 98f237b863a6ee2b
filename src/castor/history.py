"""Conversation history items and the value types threaded through responses.

History is an ordered, append-only (within a call) list of four item kinds.
The loops own it during a call and hand it back to the caller afterwards; the
caller carries it into the next call to preserve multi-turn memory.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
import json
from typing import Any, ClassVar, Union

from castor.errors import ConfigurationError, InternalError


@dataclass(frozen=True)
class UserMessage:
    """A user turn."""

    role: ClassVar[str] = "user"

    content: str


@dataclass(frozen=True)
class AssistantMessage:
    """An assistant turn; content is text or a parsed structured value."""

    role: ClassVar[str] = "assistant"

    content: Any


@dataclass(frozen=True)
class FunctionCall:
    """A tool invocation requested by the model."""

    type: ClassVar[str] = "function_call"

    name: str
    arguments: str
    call_id: str


@dataclass(frozen=True)
class FunctionCallOutput:
    """The serialized result of a tool invocation."""

    type: ClassVar[str] = "function_call_output"

    call_id: str
    name: str
    output: str


HistoryItem = Union[UserMessage, AssistantMessage, FunctionCall, FunctionCallOutput]


def to_history_item(obj: Any) -> HistoryItem:
    """Coerce a string, dict or history item into a history item."""
    if isinstance(obj, (UserMessage, AssistantMessage, FunctionCall, FunctionCallOutput)):
        return obj
    if isinstance(obj, str):
        return UserMessage(obj)
    if not isinstance(obj, dict):
        raise ConfigurationError(
            f"Unsupported history item: {type(obj).__name__}",
            hint="Pass strings, history items, or dicts like {'role': 'user', 'content': '...'}.",
        )

    kind = obj.get("type")
    if kind == FunctionCall.type:
        return FunctionCall(
            name=str(obj.get("name", "")),
            arguments=_as_json_text(obj.get("arguments", "{}")),
            call_id=str(obj.get("call_id") or obj.get("callId") or ""),
        )
    if kind == FunctionCallOutput.type:
        return FunctionCallOutput(
            call_id=str(obj.get("call_id") or obj.get("callId") or ""),
            name=str(obj.get("name", "")),
            output=_as_json_text(obj.get("output", "")),
        )

    role = obj.get("role")
    if role == UserMessage.role:
        return UserMessage(obj.get("content", ""))
    if role == AssistantMessage.role:
        return AssistantMessage(obj.get("content", ""))
    raise ConfigurationError(
        f"Unsupported history item: {obj!r}",
        hint="Dict items need role 'user'/'assistant' or type 'function_call'/'function_call_output'.",
    )


def to_dict(item: HistoryItem) -> dict[str, Any]:
    """Return the plain-dict form of a history item."""
    if isinstance(item, (UserMessage, AssistantMessage)):
        return {"role": item.role, "content": item.content}
    if isinstance(item, FunctionCall):
        return {
            "type": item.type,
            "name": item.name,
            "arguments": item.arguments,
            "call_id": item.call_id,
        }
    return {
        "type": item.type,
        "call_id": item.call_id,
        "name": item.name,
        "output": item.output,
    }


def history_to_dicts(history: list[HistoryItem]) -> list[dict[str, Any]]:
    return [to_dict(item) for item in history]


def validate_history(history: list[HistoryItem]) -> None:
    """Check that every function call output follows its matching call."""
    seen: set[str] = set()
    for idx, item in enumerate(history):
        if isinstance(item, FunctionCall):
            seen.add(item.call_id)
        elif isinstance(item, FunctionCallOutput) and item.call_id not in seen:
            raise InternalError(
                f"history[{idx}] is an output for call {item.call_id!r} with no "
                "preceding function call"
            )


def _as_json_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


# =============================================================================
# Response value types
# =============================================================================


class ResponseStatus(str, enum.Enum):
    """Terminal status of an operate call."""

    COMPLETED = "completed"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class UsageItem:
    """Token counts for one vendor round trip."""

    input: int
    output: int
    reasoning: int
    total: int
    provider: str
    model: str

    @classmethod
    def zero(cls, provider: str, model: str) -> UsageItem:
        return cls(input=0, output=0, reasoning=0, total=0, provider=provider, model=model)

    def to_dict(self) -> dict[str, Any]:
        return {
            "input": self.input,
            "output": self.output,
            "reasoning": self.reasoning,
            "total": self.total,
            "provider": self.provider,
            "model": self.model,
        }


def total_usage(usage: list[UsageItem]) -> dict[str, int]:
    """Sum token counts across round trips."""
    return {
        "input": sum(u.input for u in usage),
        "output": sum(u.output for u in usage),
        "reasoning": sum(u.reasoning for u in usage),
        "total": sum(u.total for u in usage),
    }


@dataclass(frozen=True)
class ResponseError:
    """Problem-details style payload attached to incomplete results."""

    status: int
    title: str
    detail: str

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "title": self.title, "detail": self.detail}


@dataclass
class OperateResponse:
    """Result of a single ``operate()`` call."""

    content: Any
    history: list[HistoryItem]
    status: ResponseStatus
    usage: list[UsageItem] = field(default_factory=list)
    #: Present iff ``status`` is ``INCOMPLETE``.
    error: ResponseError | None = None
    #: Reasoning summaries and thinking text, in round-trip order.
    reasoning: list[str] = field(default_factory=list)
    #: Raw vendor responses, one per round trip.
    responses: list[Any] = field(default_factory=list)


@dataclass(frozen=True)
class ToolCall:
    """A vendor-neutral tool call extracted from a response."""

    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class ParsedResponse:
    """Assistant output extracted from a vendor response."""

    content: Any
    has_tool_calls: bool
    stop_reason: str | None = None


# =============================================================================
# Stream chunks
# =============================================================================


@dataclass(frozen=True)
class TextChunk:
    type: ClassVar[str] = "text"

    content: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "content": self.content}


@dataclass(frozen=True)
class ToolCallChunk:
    type: ClassVar[str] = "tool_call"

    id: str
    name: str
    arguments: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
        }


@dataclass(frozen=True)
class ToolResultChunk:
    type: ClassVar[str] = "tool_result"

    id: str
    name: str
    result: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id, "name": self.name, "result": self.result}


@dataclass(frozen=True)
class ErrorChunk:
    type: ClassVar[str] = "error"

    status: int
    title: str
    detail: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "title": self.title,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class DoneChunk:
    type: ClassVar[str] = "done"

    usage: tuple[UsageItem, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "usage": [u.to_dict() for u in self.usage]}


StreamChunk = Union[TextChunk, ToolCallChunk, ToolResultChunk, ErrorChunk, DoneChunk]
