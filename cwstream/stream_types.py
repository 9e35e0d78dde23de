"""Data types shared by the event stream parser and its handlers."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any


class ValueType(IntEnum):
    """Header value types of the binary event stream format."""

    BOOL_TRUE = 0
    BOOL_FALSE = 1
    BYTE = 2
    SHORT = 3
    INTEGER = 4
    LONG = 5
    BYTE_ARRAY = 6
    STRING = 7
    TIMESTAMP = 8
    UUID = 9


@dataclass(frozen=True)
class HeaderValue:
    type: ValueType
    value: Any


class MessageType:
    """Values of the ``:message-type`` header."""

    EVENT = "event"
    ERROR = "error"
    EXCEPTION = "exception"


class EventType:
    """Values of the ``:event-type`` header."""

    COMPLETION = "completion"
    COMPLETION_CHUNK = "completion_chunk"

    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_RESULT = "tool_call_result"
    TOOL_CALL_ERROR = "tool_call_error"
    TOOL_EXECUTION_START = "tool_execution_start"
    TOOL_EXECUTION_END = "tool_execution_end"

    SESSION_START = "session_start"
    SESSION_END = "session_end"

    ASSISTANT_RESPONSE_EVENT = "assistantResponseEvent"
    TOOL_USE_EVENT = "toolUseEvent"

    METERING_EVENT = "meteringEvent"
    CONTEXT_USAGE_EVENT = "contextUsageEvent"

    THINKING_EVENT = "thinkingEvent"


def _header_string(headers: Mapping[str, HeaderValue], name: str, default: str) -> str:
    header = headers.get(name)
    if header is not None and isinstance(header.value, str):
        return header.value
    return default


@dataclass
class EventStreamMessage:
    """One decoded frame: its headers and raw payload."""

    headers: dict[str, HeaderValue] = field(default_factory=dict)
    payload: bytes = b""

    @property
    def message_type(self) -> str:
        return _header_string(self.headers, ":message-type", MessageType.EVENT)

    @property
    def event_type(self) -> str:
        return _header_string(self.headers, ":event-type", "")

    @property
    def content_type(self) -> str:
        return _header_string(self.headers, ":content-type", "application/json")


class ToolStatus(IntEnum):
    PENDING = 0
    RUNNING = 1
    COMPLETED = 2
    ERROR = 3

    def __str__(self) -> str:
        return self.name.lower()


def _now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class ToolExecution:
    id: str
    name: str
    start_time: datetime = field(default_factory=_now)
    end_time: datetime | None = None
    status: ToolStatus = ToolStatus.PENDING
    arguments: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: str = ""
    block_index: int = 0


@dataclass
class ToolCallFunction:
    name: str = ""
    arguments: str = ""


@dataclass
class ToolCall:
    id: str = ""
    type: str = ""
    function: ToolCallFunction = field(default_factory=ToolCallFunction)


@dataclass
class ToolCallResult:
    tool_call_id: str
    result: Any = None
    execution_time: int = 0


@dataclass
class ToolCallError:
    tool_call_id: str
    error: str = ""


@dataclass
class SessionInfo:
    session_id: str
    start_time: datetime
    end_time: datetime | None = None


@dataclass
class SSEEvent:
    """A server-sent event name and its JSON-ready data."""

    event: str
    data: Any


class ParseError(ValueError):
    """Raised when event stream data cannot be decoded."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"parse error: {self.message}, cause: {self.cause}"
        return f"parse error: {self.message}"


def _typed(data: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise ValueError(f"field {key!r} must be of type {kind.__name__}")
    return value


@dataclass
class AssistantResponseEvent:
    """An assistant response carrying text content."""

    content: str = ""
    conversation_id: str = ""
    message_id: str = ""
    message_status: str = ""
    content_type: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AssistantResponseEvent":
        if not isinstance(data, Mapping):
            raise ValueError("assistant response event must be a JSON object")
        return cls(
            content=_typed(data, "content", str, ""),
            conversation_id=_typed(data, "conversationId", str, ""),
            message_id=_typed(data, "messageId", str, ""),
            message_status=_typed(data, "messageStatus", str, ""),
            content_type=_typed(data, "contentType", str, ""),
        )


def _load_object(payload: bytes | str) -> dict[str, Any]:
    data = json.loads(payload)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("payload must be a JSON object")
    return data


@dataclass
class ToolUseEvent:
    """A tool use fragment; ``input`` is either an object or a JSON text piece."""

    name: str = ""
    tool_use_id: str = ""
    input: Any = None
    stop: bool = False

    @classmethod
    def from_payload(cls, payload: bytes | str) -> "ToolUseEvent":
        data = _load_object(payload)
        return cls(
            name=_typed(data, "name", str, ""),
            tool_use_id=_typed(data, "toolUseId", str, ""),
            input=data.get("input"),
            stop=_typed(data, "stop", bool, False),
        )


def parse_full_assistant_response_event(payload: bytes | str) -> AssistantResponseEvent:
    """Decode a payload as a full assistant response event.

    Raises ``ValueError`` for invalid JSON and for payloads that are tool call
    fragments rather than response content.
    """
    data = _load_object(payload)
    nested = data.get("assistantResponseEvent")
    if isinstance(nested, dict):
        data = nested

    is_tool_fragment = "toolUseId" in data and "name" in data
    has_main_fields = any(
        key in data and data[key] != ""
        for key in ("content", "conversationId", "messageId")
    )
    if is_tool_fragment and not has_main_fields:
        raise ValueError(
            "not a full assistantResponseEvent but a tool call fragment"
        )
    return AssistantResponseEvent.from_dict(data)