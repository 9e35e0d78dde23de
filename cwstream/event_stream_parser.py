"""Complete parsing of event stream responses into server-sent events."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from . import jsonlog as log
from .processor import CompliantMessageProcessor
from .robust_parser import DEFAULT_MAX_ERRORS, RobustEventStreamParser, TooManyErrors
from .stream_types import (
    EventStreamMessage,
    EventType,
    MessageType,
    ParseError,
    SessionInfo,
    SSEEvent,
    ToolExecution,
)
from .thinking_state import ThinkingStreamContext
from .tool_lifecycle import ToolLifecycleManager

_BLOCK_EVENTS = ("content_block_start", "content_block_stop", "content_block_delta")


@dataclass
class ParseSummary:
    """Counts and flags describing one parsed response."""

    total_messages: int = 0
    total_events: int = 0
    message_types: dict[str, int] = field(default_factory=dict)
    event_types: dict[str, int] = field(default_factory=dict)
    has_tool_calls: bool = False
    has_completions: bool = False
    has_errors: bool = False
    has_session_events: bool = False
    tool_summary: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParseResult:
    """Everything produced by parsing a whole response."""

    messages: list[EventStreamMessage]
    events: list[SSEEvent]
    tool_executions: dict[str, ToolExecution]
    active_tools: dict[str, ToolExecution]
    session_info: SessionInfo
    summary: ParseSummary
    errors: list[Exception] = field(default_factory=list)

    def completion_text(self) -> str:
        """The concatenated text of every text delta."""
        parts = []
        for event in self.events:
            if event.event != "content_block_delta" or not isinstance(event.data, dict):
                continue
            delta = event.data.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("text"), str):
                parts.append(delta["text"])
        return "".join(parts)

    def tool_calls(self) -> list[ToolExecution]:
        """Finished tool calls followed by those still active."""
        return [*self.tool_executions.values(), *self.active_tools.values()]


def _count(counter: dict[str, int], key: str) -> None:
    counter[key] = counter.get(key, 0) + 1


class CompliantEventStreamParser:
    """Decodes frames and processes the messages they carry."""

    def __init__(self, max_errors: int = DEFAULT_MAX_ERRORS) -> None:
        self._frames = RobustEventStreamParser(max_errors=max_errors)
        self._processor = CompliantMessageProcessor()

    @property
    def max_errors(self) -> int:
        return self._frames.max_errors

    @max_errors.setter
    def max_errors(self, value: int) -> None:
        self._frames.max_errors = value

    @property
    def thinking_context(self) -> ThinkingStreamContext | None:
        return self._processor.thinking_context

    @thinking_context.setter
    def thinking_context(self, ctx: ThinkingStreamContext | None) -> None:
        self._processor.thinking_context = ctx

    @property
    def tool_manager(self) -> ToolLifecycleManager:
        return self._processor.tool_manager

    def reset(self) -> None:
        self._frames.reset()
        self._processor.reset()

    def flush_thinking_buffer(self) -> list[SSEEvent]:
        """Emit what the thinking context still holds; call at end of stream."""
        ctx = self._processor.thinking_context
        if ctx is None or not ctx.thinking_enabled:
            return []
        result = ctx.flush()
        events: list[SSEEvent] = []
        if result.thinking_content:
            events.append(
                SSEEvent(
                    "content_block_delta",
                    {
                        "type": "content_block_delta",
                        "index": ctx.thinking_block_index,
                        "delta": {
                            "type": "thinking_delta",
                            "thinking": result.thinking_content,
                        },
                    },
                )
            )
        if result.text_content:
            index = ctx.text_block_index if ctx.thinking_extracted else 0
            events.append(
                SSEEvent(
                    "content_block_delta",
                    {
                        "type": "content_block_delta",
                        "index": index,
                        "delta": {"type": "text_delta", "text": result.text_content},
                    },
                )
            )
        return events

    def _decode(self, data: bytes) -> list[EventStreamMessage]:
        try:
            return self._frames.feed(data)
        except TooManyErrors as exc:
            log.warn("event stream partly failed to parse", error=str(exc))
            return exc.messages

    def parse_response(self, data: bytes) -> ParseResult:
        """Parse a complete response; processing errors are collected, not raised."""
        messages = self._decode(data)
        events: list[SSEEvent] = []
        errors: list[Exception] = []
        for index, message in enumerate(messages):
            try:
                events.extend(self._processor.process_message(message))
            except ValueError as exc:
                errors.append(ParseError(f"failed to process message {index}", exc))
                log.warn(
                    "message processing failed",
                    message_index=index,
                    message_type=message.message_type,
                    event_type=message.event_type,
                    error=str(exc),
                )

        tools = self._processor.tool_manager
        session_info = self._processor.session_manager.info
        if callable(session_info):
            session_info = session_info()
        result = ParseResult(
            messages=messages,
            events=events,
            tool_executions=tools.completed_tools,
            active_tools=tools.active_tools,
            session_info=session_info,
            summary=self._summarize(messages, events),
            errors=errors,
        )
        if errors:
            log.debug(
                "parsing finished with errors",
                success_messages=len(messages),
                total_events=len(events),
                error_count=len(errors),
            )
        return result

    def parse_stream(self, data: bytes) -> list[SSEEvent]:
        """Parse the next piece of a stream and return the events it completes."""
        events: list[SSEEvent] = []
        for message in self._decode(data):
            try:
                events.extend(self._processor.process_message(message))
            except ValueError as exc:
                log.warn("stream message processing failed", error=str(exc))
        return events

    def _summarize(
        self, messages: list[EventStreamMessage], events: list[SSEEvent]
    ) -> ParseSummary:
        summary = ParseSummary(total_messages=len(messages), total_events=len(events))
        for message in messages:
            message_type = message.message_type
            _count(summary.message_types, message_type)
            if message_type in (MessageType.ERROR, MessageType.EXCEPTION):
                summary.has_errors = True

            event_type = message.event_type
            if not event_type:
                continue
            _count(summary.event_types, event_type)
            if event_type in (EventType.TOOL_CALL_REQUEST, EventType.TOOL_CALL_ERROR):
                summary.has_tool_calls = True
            elif event_type in (
                EventType.COMPLETION,
                EventType.COMPLETION_CHUNK,
                EventType.ASSISTANT_RESPONSE_EVENT,
            ):
                summary.has_completions = True
            elif event_type in (EventType.SESSION_START, EventType.SESSION_END):
                summary.has_session_events = True

        for event in events:
            _count(summary.event_types, event.event)
            if event.event in _BLOCK_EVENTS and isinstance(event.data, dict):
                block = event.data.get("content_block")
                if isinstance(block, dict) and block.get("type") == "tool_use":
                    summary.has_tool_calls = True

        summary.tool_summary = self._processor.tool_manager.summary()
        return summary