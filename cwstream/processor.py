"""Dispatch of decoded event stream messages to their event handlers."""

from __future__ import annotations

import json
from typing import Any

from . import jsonlog as log
from .aggregator import StreamingJSONAggregator
from .handlers import (
    AssistantResponseEventHandler,
    CompletionChunkEventHandler,
    CompletionEventHandler,
    NoOpEventHandler,
    SessionEndHandler,
    SessionStartHandler,
    ThinkingEventHandler,
    ToolCallErrorHandler,
    ToolCallRequestHandler,
    ToolUseEventHandler,
)
from .session import SessionManager
from .stream_types import EventStreamMessage, EventType, MessageType, SSEEvent
from .thinking_state import ThinkingStreamContext
from .tool_lifecycle import ToolLifecycleManager


def _preview(payload: bytes, limit: int = 100) -> str:
    text = bytes(payload[:limit]).decode("utf-8", "replace")
    return text + "..." if len(payload) > limit else text


def _decode_error_payload(payload: bytes) -> dict[str, Any] | None:
    """Decode an error or exception payload, falling back to the raw text."""
    if not payload:
        return None
    try:
        data = json.loads(payload)
    except ValueError as exc:
        log.warn("failed to parse error payload", error=str(exc))
        return {"message": bytes(payload).decode("utf-8", "replace")}
    if data is None:
        return None
    if not isinstance(data, dict):
        log.warn("error payload is not a JSON object")
        return {"message": bytes(payload).decode("utf-8", "replace")}
    return data


def _type_and_message(data: dict[str, Any] | None) -> tuple[str, str]:
    if data is None:
        return "", ""
    kind = data.get("__type")
    text = data.get("message")
    return (
        kind if isinstance(kind, str) else "",
        text if isinstance(text, str) else "",
    )


class CompliantMessageProcessor:
    """Turns event stream messages into server-sent events.

    Handlers raise ``ValueError`` when a payload cannot be decoded; that
    propagates out of :meth:`process_message`.
    """

    def __init__(self) -> None:
        self.session_manager = SessionManager()
        self.tool_manager = ToolLifecycleManager()
        self.completion_buffer: list[str] = []
        self.thinking_context: ThinkingStreamContext | None = None
        self.aggregator = StreamingJSONAggregator(
            self.tool_manager.update_arguments_from_json
        )
        no_op = NoOpEventHandler()
        self._handlers: dict[Any, Any] = {
            EventType.COMPLETION: CompletionEventHandler(),
            EventType.COMPLETION_CHUNK: CompletionChunkEventHandler(self),
            EventType.TOOL_CALL_REQUEST: ToolCallRequestHandler(self.tool_manager),
            EventType.TOOL_CALL_ERROR: ToolCallErrorHandler(self.tool_manager),
            EventType.SESSION_START: SessionStartHandler(self.session_manager),
            EventType.SESSION_END: SessionEndHandler(self.session_manager),
            EventType.ASSISTANT_RESPONSE_EVENT: AssistantResponseEventHandler(self),
            EventType.TOOL_USE_EVENT: ToolUseEventHandler(
                self.tool_manager, self.aggregator
            ),
            EventType.METERING_EVENT: no_op,
            EventType.CONTEXT_USAGE_EVENT: no_op,
            EventType.THINKING_EVENT: ThinkingEventHandler(),
        }

    def reset(self) -> None:
        """Start over with a fresh session, no tools and no buffered text."""
        self.session_manager.reset()
        self.tool_manager.reset()
        self.completion_buffer.clear()
        if self.thinking_context is not None:
            self.thinking_context.reset()

    def completion_text(self) -> str:
        """All content collected from completion chunks so far."""
        return "".join(self.completion_buffer)

    def process_message(self, message: EventStreamMessage) -> list[SSEEvent]:
        message_type = message.message_type
        event_type = message.event_type
        log.debug(
            "processing message",
            message_type=message_type,
            event_type=event_type,
            payload_len=len(message.payload),
            payload_preview=_preview(message.payload),
        )
        if message_type == MessageType.EVENT:
            return self._process_event(message, event_type)
        if message_type == MessageType.ERROR:
            return self._process_error(message)
        if message_type == MessageType.EXCEPTION:
            return self._process_exception(message)
        log.warn("unknown message type", message_type=message_type)
        return []

    def _process_event(
        self, message: EventStreamMessage, event_type: str
    ) -> list[SSEEvent]:
        handler = self._handlers.get(event_type)
        if handler is not None:
            return handler.handle(message)
        log.info(
            "unknown event type",
            event_type=event_type,
            available_handlers=[str(key) for key in self._handlers],
        )
        return []

    @staticmethod
    def _process_error(message: EventStreamMessage) -> list[SSEEvent]:
        data = _decode_error_payload(message.payload)
        code, text = _type_and_message(data)
        return [
            SSEEvent(
                "error",
                {
                    "type": "error",
                    "error_code": code,
                    "error_message": text,
                    "raw_data": data,
                },
            )
        ]

    @staticmethod
    def _process_exception(message: EventStreamMessage) -> list[SSEEvent]:
        data = _decode_error_payload(message.payload)
        kind, text = _type_and_message(data)
        return [
            SSEEvent(
                "exception",
                {
                    "type": "exception",
                    "exception_type": kind,
                    "exception_message": text,
                    "raw_data": data,
                },
            )
        ]