import json
from types import SimpleNamespace

import pytest

from cwstream.aggregator import StreamingJSONAggregator
from cwstream.handlers import (
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
    convert_input_to_string,
    is_streaming_response,
    is_thinking_event,
    is_tool_call_event,
)
from cwstream.session import SessionManager
from cwstream.stream_types import AssistantResponseEvent, EventStreamMessage
from cwstream.thinking_state import ThinkingStreamContext
from cwstream.tool_lifecycle import ToolLifecycleManager


def _message(data) -> EventStreamMessage:
    if isinstance(data, (bytes, str)):
        raw = data.encode() if isinstance(data, str) else data
    else:
        raw = json.dumps(data, ensure_ascii=False).encode()
    return EventStreamMessage(payload=raw)


def _tool_event(name, tool_use_id, tool_input, stop):
    return _message(
        {"name": name, "toolUseId": tool_use_id, "input": tool_input, "stop": stop}
    )


@pytest.fixture
def tool_setup():
    manager = ToolLifecycleManager()
    aggregator = StreamingJSONAggregator(manager.update_arguments_from_json)
    return manager, aggregator, ToolUseEventHandler(manager, aggregator)


def _processor(thinking=None):
    return SimpleNamespace(
        tool_manager=ToolLifecycleManager(),
        thinking_context=thinking,
        completion_buffer=[],
    )


def test_one_shot_complete_data(tool_setup):
    manager, _, handler = tool_setup
    tool_input = {
        "query": "测试查询",
        "maxResults": 10,
        "filters": {"category": "技术", "language": "zh-CN"},
    }
    events = handler.handle(_tool_event("search_database", "test-tool-001", tool_input, True))
    assert len(events) > 0
    active = manager.active_tools
    assert "test-tool-001" in active
    tool = active["test-tool-001"]
    assert tool.name == "search_database"
    assert tool.arguments["query"] == "测试查询"
    assert tool.arguments["maxResults"] == 10
    assert tool.arguments["filters"] == {"category": "技术", "language": "zh-CN"}


def test_streaming_fragments(tool_setup):
    manager, _, handler = tool_setup
    events1 = handler.handle(_tool_event("write_file", "test-tool-002", {}, False))
    assert len(events1) > 0
    events2 = handler.handle(
        _tool_event("write_file", "test-tool-002", '{"path":"/tmp/test.txt","con', False)
    )
    assert events2[0].data["delta"] == {
        "type": "input_json_delta",
        "partial_json": '{"path":"/tmp/test.txt","con',
    }
    assert events2[0].data["index"] == 1
    handler.handle(_tool_event("write_file", "test-tool-002", 'tent":"测试内容"}', True))
    completed = manager.completed_tools
    assert completed["test-tool-002"].name == "write_file"


def test_empty_parameters(tool_setup):
    manager, _, handler = tool_setup
    events = handler.handle(_tool_event("get_current_time", "test-tool-003", {}, True))
    assert len(events) > 0
    tool = manager.active_tools["test-tool-003"]
    assert tool.name == "get_current_time"
    assert tool.arguments == {}


def test_memory_leak_prevention(tool_setup):
    manager, aggregator, handler = tool_setup
    handler.handle(_tool_event("test_tool", "test-tool-leak", {}, False))
    handler.handle(_tool_event("test_tool", "test-tool-leak", '{"initial":"data"', False))
    assert "test-tool-leak" in aggregator
    handler.handle(_tool_event("test_tool", "test-tool-leak", "}", True))
    assert "test-tool-leak" not in aggregator
    assert "test-tool-leak" in manager.completed_tools


def test_tool_use_event_without_name_and_id(tool_setup):
    manager, _, handler = tool_setup
    assert handler.handle(_message({"input": "x", "stop": True})) == []
    assert manager.active_tools == {}


def test_tool_use_event_invalid_json(tool_setup):
    _, _, handler = tool_setup
    assert handler.handle(_message(b"not json")) == []


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, "{}"),
        ('{"key":"value"}', '{"key":"value"}'),
        ({"query": "测试", "limit": 10}, '{"limit":10,"query":"测试"}'),
        ({}, "{}"),
    ],
)
def test_convert_input_to_string(value, expected):
    assert convert_input_to_string(value) == expected


@pytest.mark.parametrize(
    "payload, expected",
    [
        ('{"toolUseId":"a"}', True),
        ('{"tool_use_id":"a"}', True),
        ('{"name":"x","input":{}}', True),
        ('{"name":"x"}', False),
        ('{"content":"hi"}', False),
    ],
)
def test_is_tool_call_event(payload, expected):
    assert is_tool_call_event(payload.encode()) is expected


def test_is_thinking_event():
    assert is_thinking_event(b'{"type":"thinking"}') is True
    assert is_thinking_event(b'{"type": "thinking"}') is True
    assert is_thinking_event(b'{"type":"text"}') is False


def test_is_streaming_response():
    assert is_streaming_response(None) is False
    assert is_streaming_response(AssistantResponseEvent(content="x")) is True
    assert is_streaming_response(AssistantResponseEvent(message_status="IN_PROGRESS")) is True
    assert is_streaming_response(AssistantResponseEvent()) is False


def test_completion_event_handler():
    payload = {
        "content": "done",
        "finish_reason": "stop",
        "tool_calls": [
            {"id": "c1", "type": "function", "function": {"name": "f", "arguments": "{}"}}
        ],
    }
    (event,) = CompletionEventHandler().handle(_message(payload))
    assert event.event == "completion"
    assert event.data["content"] == "done"
    assert event.data["finish_reason"] == "stop"
    call = event.data["tool_calls"][0]
    assert (call.id, call.function.name, call.function.arguments) == ("c1", "f", "{}")


def test_completion_event_handler_invalid_json():
    with pytest.raises(ValueError):
        CompletionEventHandler().handle(_message(b"{bad"))


def test_completion_chunk_handler():
    processor = _processor()
    handler = CompletionChunkEventHandler(processor)
    events = handler.handle(_message({"content": "abc", "finish_reason": "end"}))
    assert processor.completion_buffer == ["abc"]
    assert events[0].data["delta"] == {"type": "text_delta", "text": "abc"}
    assert events[1].data == {
        "type": "content_block_stop",
        "index": 0,
        "finish_reason": "end",
    }
    events = handler.handle(_message({"content": "x", "delta": "y"}))
    assert len(events) == 1
    assert events[0].data["delta"]["text"] == "y"


def test_tool_call_request_and_error_handlers():
    manager = ToolLifecycleManager()
    events = ToolCallRequestHandler(manager).handle(
        _message({"toolCallId": "t1", "toolName": "calc", "input": {"b": 2, "a": 1}})
    )
    starts = [e for e in events if e.event == "content_block_start"]
    assert starts[0].data["content_block"]["name"] == "calc"
    deltas = [e for e in events if e.data.get("index") == 1 and e.event == "content_block_delta"]
    assert deltas[0].data["delta"]["partial_json"] == '{"a":1,"b":2}'

    events = ToolCallErrorHandler(manager).handle(
        _message({"tool_call_id": "t1", "error": "boom"})
    )
    assert events[0].data["error"]["message"] == "boom"
    assert events[1].data == {"type": "content_block_stop", "index": 1}
    assert "t1" in manager.completed_tools


def test_session_handlers():
    sessions = SessionManager()
    events = SessionStartHandler(sessions).handle(_message({"sessionId": "s-1"}))
    assert events[0].event == "session_start"
    assert sessions.session_id == "s-1"
    assert sessions.is_active is True
    events = SessionEndHandler(sessions).handle(_message({"x": 1}))
    assert [e.event for e in events] == ["session_end", "session_end"]
    assert events[0].data == {"x": 1}
    assert events[1].data["session_id"] == "s-1"
    assert sessions.is_active is False


def test_assistant_plain_text_payload():
    handler = AssistantResponseEventHandler(_processor())
    (event,) = handler.handle(_message(b"  hello  "))
    assert event.data["delta"] == {"type": "text_delta", "text": "hello"}


def test_assistant_streaming_content():
    handler = AssistantResponseEventHandler(_processor())
    (event,) = handler.handle(_message({"content": "hi there"}))
    assert event.data == {
        "type": "content_block_delta",
        "index": 0,
        "delta": {"type": "text_delta", "text": "hi there"},
    }


def test_assistant_full_event_without_content():
    handler = AssistantResponseEventHandler(_processor())
    assert handler.handle(_message({"conversationId": "c1"})) == []


def test_assistant_legacy_thinking_content():
    handler = AssistantResponseEventHandler(_processor())
    events = handler.handle(_message({"type": "thinking", "content": "hmm"}))
    assert [e.event for e in events] == [
        "content_block_start",
        "content_block_delta",
        "content_block_stop",
    ]
    assert events[1].data["delta"] == {"type": "thinking_delta", "thinking": "hmm"}


def test_assistant_tool_fragment_registers_tool():
    processor = _processor()
    handler = AssistantResponseEventHandler(processor)
    events = handler.handle(_message({"name": "x", "toolUseId": "t9", "input": {"a": 1}}))
    assert processor.tool_manager.active_tools["t9"].arguments == {"a": 1}
    assert any(
        e.event == "content_block_start" and e.data["content_block"]["type"] == "tool_use"
        for e in events
    )


def test_assistant_with_thinking_context():
    ctx = ThinkingStreamContext(True)
    handler = AssistantResponseEventHandler(_processor(ctx))
    first = handler.handle(_message({"content": "<thinking>abc</thinking>\n\nhi"}))
    assert len(first) == 1
    assert first[0].data["content_block"] == {"type": "thinking", "thinking": ""}
    second = handler.handle(_message({"content": "!"}))
    assert [e.event for e in second] == [
        "content_block_delta",
        "content_block_stop",
        "content_block_start",
        "content_block_delta",
    ]
    assert second[0].data["delta"] == {"type": "thinking_delta", "thinking": "abc"}
    assert second[2].data["index"] == 1
    assert second[3].data["index"] == 1
    assert second[3].data["delta"]["text"] == "hi!"


def test_thinking_event_handler():
    handler = ThinkingEventHandler()
    events = handler.handle(_message({"content": "deep"}))
    assert events[1].data["delta"]["thinking"] == "deep"
    assert handler.handle(_message({"content": ""})) == []
    assert handler.handle(_message(b"garbage")) == []


def test_noop_handler():
    assert NoOpEventHandler().handle(_message({"a": 1})) == []