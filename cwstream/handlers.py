"""Handlers turning decoded event stream messages into server-sent events."""

from __future__ import annotations

import json
from typing import Any, Protocol

from . import jsonlog as log
from .aggregator import StreamingJSONAggregator
from .session import SessionManager
from .stream_types import (
    AssistantResponseEvent,
    EventStreamMessage,
    EventType,
    SSEEvent,
    ToolCall,
    ToolCallError,
    ToolCallFunction,
    ToolCallResult,
    ToolUseEvent,
    parse_full_assistant_response_event,
)
from .thinking_state import ThinkingStreamContext
from .tool_lifecycle import ToolLifecycleManager


class _Processor(Protocol):
    """What the handlers need from the message processor."""

    tool_manager: ToolLifecycleManager
    thinking_context: ThinkingStreamContext | None
    completion_buffer: list[str]


def _text(payload: bytes | str) -> str:
    if isinstance(payload, str):
        return payload
    return bytes(payload).decode("utf-8", "replace")


def _decode_object(payload: bytes | str) -> dict[str, Any]:
    """Decode a JSON object; ``null`` gives an empty dict, other types raise."""
    data = json.loads(payload)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("payload must be a JSON object")
    return data


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _str_field(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) else ""


def _block_start(index: int, block: dict[str, Any]) -> SSEEvent:
    return SSEEvent(
        "content_block_start",
        {"type": "content_block_start", "index": index, "content_block": block},
    )


def _block_delta(index: int, delta: dict[str, Any]) -> SSEEvent:
    return SSEEvent(
        "content_block_delta",
        {"type": "content_block_delta", "index": index, "delta": delta},
    )


def _block_stop(index: int) -> SSEEvent:
    return SSEEvent("content_block_stop", {"type": "content_block_stop", "index": index})


def _text_delta(index: int, text: str) -> SSEEvent:
    return _block_delta(index, {"type": "text_delta", "text": text})


def _thinking_delta(index: int, thinking: str) -> SSEEvent:
    return _block_delta(index, {"type": "thinking_delta", "thinking": thinking})


def _thinking_block(content: str) -> list[SSEEvent]:
    return [
        _block_start(0, {"type": "thinking", "thinking": ""}),
        _thinking_delta(0, content),
        _block_stop(0),
    ]


def convert_input_to_string(value: Any) -> str:
    """Render a tool input as JSON text; strings pass through unchanged."""
    if value is None:
        return "{}"
    if isinstance(value, str):
        return value
    try:
        return _dump(value)
    except (TypeError, ValueError) as exc:
        log.warn("failed to convert input to JSON string", error=str(exc))
        return "{}"


def is_tool_call_event(payload: bytes | str) -> bool:
    text = _text(payload)
    return (
        '"toolUseId":' in text
        or '"tool_use_id":' in text
        or ('"name":' in text and '"input":' in text)
    )


def is_thinking_event(payload: bytes | str) -> bool:
    text = _text(payload)
    return '"type":"thinking"' in text or '"type": "thinking"' in text


def is_streaming_response(event: AssistantResponseEvent | None) -> bool:
    return event is not None and (
        event.message_status == "IN_PROGRESS" or event.content != ""
    )


class CompletionEventHandler:
    """Handles ``completion`` events."""

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        data = _decode_object(message.payload)
        tool_calls: list[ToolCall] = []
        raw_calls = data.get("tool_calls")
        if isinstance(raw_calls, list):
            for raw in raw_calls:
                if not isinstance(raw, dict):
                    continue
                call = ToolCall(id=_str_field(raw, "id"), type=_str_field(raw, "type"))
                function = raw.get("function")
                if isinstance(function, dict):
                    call.function = ToolCallFunction(
                        name=_str_field(function, "name"),
                        arguments=_str_field(function, "arguments"),
                    )
                tool_calls.append(call)
        return [
            SSEEvent(
                "completion",
                {
                    "type": "completion",
                    "content": _str_field(data, "content"),
                    "finish_reason": _str_field(data, "finish_reason"),
                    "tool_calls": tool_calls,
                    "raw_data": data,
                },
            )
        ]


class CompletionChunkEventHandler:
    """Handles streamed ``completion_chunk`` events."""

    def __init__(self, processor: _Processor) -> None:
        self.processor = processor

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        data = _decode_object(message.payload)
        content = _str_field(data, "content")
        delta = _str_field(data, "delta")
        finish_reason = _str_field(data, "finish_reason")

        self.processor.completion_buffer.append(content)
        events = [_text_delta(0, delta or content)]
        if finish_reason:
            events.append(
                SSEEvent(
                    "content_block_stop",
                    {
                        "type": "content_block_stop",
                        "index": 0,
                        "finish_reason": finish_reason,
                    },
                )
            )
        return events


class ToolCallRequestHandler:
    """Handles standard ``tool_call_request`` events."""

    def __init__(self, tool_manager: ToolLifecycleManager) -> None:
        self.tool_manager = tool_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        data = _decode_object(message.payload)
        tool_call_id = _str_field(data, "toolCallId")
        tool_name = _str_field(data, "toolName")
        raw_input = data.get("input")
        tool_input = raw_input if isinstance(raw_input, dict) else {}

        arguments = "{}"
        if tool_input:
            try:
                arguments = _dump(tool_input)
            except (TypeError, ValueError):
                arguments = "{}"

        call = ToolCall(
            id=tool_call_id,
            type="function",
            function=ToolCallFunction(name=tool_name, arguments=arguments),
        )
        log.debug(
            "standard tool call request",
            tool_id=tool_call_id,
            tool_name=tool_name,
            input=tool_input,
        )
        return self.tool_manager.handle_tool_call_request([call])


class ToolCallErrorHandler:
    """Handles ``tool_call_error`` events."""

    def __init__(self, tool_manager: ToolLifecycleManager) -> None:
        self.tool_manager = tool_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        data = _decode_object(message.payload)
        for key in ("tool_call_id", "error"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"field {key!r} must be a string")
        error = ToolCallError(
            tool_call_id=_str_field(data, "tool_call_id"),
            error=_str_field(data, "error"),
        )
        return self.tool_manager.handle_tool_call_error(error)


class SessionStartHandler:
    """Handles ``session_start`` events."""

    def __init__(self, session_manager: SessionManager) -> None:
        self.session_manager = session_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        data = _decode_object(message.payload)
        session_id = data.get("sessionId")
        if not isinstance(session_id, str):
            session_id = _str_field(data, "session_id")
        if session_id:
            self.session_manager.session_id = session_id
            self.session_manager.start()
        return [SSEEvent(EventType.SESSION_START, data)]


class SessionEndHandler:
    """Handles ``session_end`` events."""

    def __init__(self, session_manager: SessionManager) -> None:
        self.session_manager = session_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        data = _decode_object(message.payload)
        end_events = self.session_manager.end()
        return [SSEEvent(EventType.SESSION_END, data), *end_events]


class AssistantResponseEventHandler:
    """Handles ``assistantResponseEvent`` messages in all their shapes."""

    def __init__(self, processor: _Processor) -> None:
        self.processor = processor

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        if is_tool_call_event(message.payload):
            log.debug("tool call event detected")
            return self._handle_tool_call_event(message)
        if is_thinking_event(message.payload):
            log.debug("thinking event detected")
            return self._handle_legacy_format(message.payload)
        try:
            event = parse_full_assistant_response_event(message.payload)
        except ValueError:
            log.debug("full format parsing failed, falling back to legacy format")
            return self._handle_legacy_format(message.payload)
        if is_streaming_response(event):
            return self._handle_streaming_event(event)
        return self._handle_full_event(event)

    def _handle_tool_call_event(self, message: EventStreamMessage) -> list[SSEEvent]:
        try:
            evt = ToolUseEvent.from_payload(message.payload)
        except ValueError as exc:
            log.warn("failed to parse tool call event", error=str(exc))
            return []
        call = ToolCall(
            id=evt.tool_use_id,
            type="function",
            function=ToolCallFunction(
                name=evt.name, arguments=convert_input_to_string(evt.input)
            ),
        )
        return self.processor.tool_manager.handle_tool_call_request([call])

    def _handle_streaming_event(self, event: AssistantResponseEvent) -> list[SSEEvent]:
        if not event.content:
            return []
        ctx = self.processor.thinking_context
        if ctx is not None and ctx.thinking_enabled:
            return self._process_with_thinking(event.content, ctx)
        return [_text_delta(0, event.content)]

    @staticmethod
    def _process_with_thinking(
        content: str, ctx: ThinkingStreamContext
    ) -> list[SSEEvent]:
        result = ctx.process_chunk(content)
        events: list[SSEEvent] = []
        if result.thinking_started:
            events.append(
                _block_start(
                    ctx.thinking_block_index, {"type": "thinking", "thinking": ""}
                )
            )
        if result.thinking_content:
            events.append(_thinking_delta(ctx.thinking_block_index, result.thinking_content))
        if result.thinking_ended:
            events.append(_block_stop(ctx.thinking_block_index))
            if result.text_content:
                events.append(
                    _block_start(ctx.text_block_index, {"type": "text", "text": ""})
                )
        if result.text_content:
            index = ctx.text_block_index if ctx.thinking_extracted else 0
            events.append(_text_delta(index, result.text_content))
        return events

    @staticmethod
    def _handle_full_event(event: AssistantResponseEvent) -> list[SSEEvent]:
        if not event.content:
            return []
        return [
            _block_start(0, {"type": "text", "text": event.content}),
            _text_delta(0, event.content),
            _block_stop(0),
        ]

    @staticmethod
    def _handle_legacy_format(payload: bytes | str) -> list[SSEEvent]:
        text = _text(payload).strip()
        if text and not text.startswith("{"):
            return [_text_delta(0, text)]
        try:
            data = _decode_object(payload)
        except ValueError as exc:
            log.warn("cannot parse legacy format data", error=str(exc))
            return []
        if data.get("type") == "thinking":
            content = _str_field(data, "content")
            if not content:
                return []
            log.debug("thinking content block", content_length=len(content))
            return _thinking_block(content)
        content = _str_field(data, "content")
        return [_text_delta(0, content)] if content else []


class ToolUseEventHandler:
    """Handles ``toolUseEvent`` messages, whole or split into fragments."""

    def __init__(
        self, tool_manager: ToolLifecycleManager, aggregator: StreamingJSONAggregator
    ) -> None:
        self.tool_manager = tool_manager
        self.aggregator = aggregator

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        try:
            evt = ToolUseEvent.from_payload(message.payload)
        except ValueError as exc:
            log.warn(
                "failed to parse tool call event",
                error=str(exc),
                payload=_text(message.payload),
            )
            return []

        if not evt.name or not evt.tool_use_id:
            log.warn(
                "tool call event missing required fields",
                name=evt.name,
                toolUseId=evt.tool_use_id,
            )
            if not evt.name and not evt.tool_use_id:
                return []

        input_str = convert_input_to_string(evt.input)

        if evt.tool_use_id not in self.tool_manager.active_tools:
            log.debug(
                "first tool call fragment, registering tool",
                toolUseId=evt.tool_use_id,
                name=evt.name,
            )
            call = ToolCall(
                id=evt.tool_use_id,
                type="function",
                function=ToolCallFunction(name=evt.name, arguments=input_str),
            )
            return self.tool_manager.handle_tool_call_request([call])

        if evt.stop:
            complete, full_input = self.aggregator.process_tool_data(
                evt.tool_use_id, evt.name, "", True
            )
            if complete:
                if full_input and full_input != "{}":
                    try:
                        arguments = _decode_object(full_input)
                    except ValueError as exc:
                        log.warn(
                            "aggregated tool arguments are not valid JSON",
                            toolUseId=evt.tool_use_id,
                            fullInput=full_input,
                            error=str(exc),
                        )
                    else:
                        self.tool_manager.update_arguments(evt.tool_use_id, arguments)
                return self.tool_manager.handle_tool_call_result(
                    ToolCallResult(
                        tool_call_id=evt.tool_use_id,
                        result="Tool execution completed via toolUseEvent",
                    )
                )

        if input_str in ("", "{}"):
            return []

        complete, _ = self.aggregator.process_tool_data(
            evt.tool_use_id, evt.name, input_str, evt.stop
        )
        if complete:
            return []
        if not evt.tool_use_id:
            log.warn("tool fragment without toolUseId", inputFragment=input_str)
            return []
        index = self.tool_manager.block_index(evt.tool_use_id)
        if index < 0:
            log.warn(
                "tool not registered for incremental event",
                toolUseId=evt.tool_use_id,
                name=evt.name,
                inputFragment=input_str,
            )
            return []
        return [_block_delta(index, {"type": "input_json_delta", "partial_json": input_str})]


class NoOpEventHandler:
    """Silently ignores an event."""

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        return []


class ThinkingEventHandler:
    """Handles ``thinkingEvent`` messages as a thinking content block."""

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        try:
            data = _decode_object(message.payload)
        except ValueError as exc:
            log.warn("failed to parse thinking event", error=str(exc))
            return []
        content = _str_field(data, "content")
        if not content:
            return []
        log.debug("thinkingEvent", content_length=len(content))
        return _thinking_block(content)