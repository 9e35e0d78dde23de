import json

import pytest

from cwstream.stream_types import (
    AssistantResponseEvent,
    EventStreamMessage,
    EventType,
    HeaderValue,
    MessageType,
    ParseError,
    ToolExecution,
    ToolStatus,
    ToolUseEvent,
    ValueType,
    parse_full_assistant_response_event,
)


@pytest.mark.parametrize(
    "headers, expected",
    [
        ({":message-type": HeaderValue(ValueType.STRING, "exception")}, "exception"),
        ({}, "event"),
        ({":message-type": HeaderValue(ValueType.INTEGER, 123)}, "event"),
    ],
)
def test_message_type(headers, expected):
    assert EventStreamMessage(headers=headers).message_type == expected


@pytest.mark.parametrize(
    "headers, expected",
    [
        ({":event-type": HeaderValue(ValueType.STRING, "contentBlockStart")}, "contentBlockStart"),
        ({}, ""),
        ({":event-type": HeaderValue(ValueType.BOOL_TRUE, True)}, ""),
    ],
)
def test_event_type(headers, expected):
    assert EventStreamMessage(headers=headers).event_type == expected


def test_content_type_default_and_value():
    assert EventStreamMessage().content_type == "application/json"
    msg = EventStreamMessage(
        headers={":content-type": HeaderValue(ValueType.STRING, "text/plain")}
    )
    assert msg.content_type == "text/plain"


def test_constants_read_back_through_headers():
    msg = EventStreamMessage(
        headers={
            ":message-type": HeaderValue(ValueType.STRING, MessageType.EXCEPTION),
            ":event-type": HeaderValue(
                ValueType.STRING, EventType.ASSISTANT_RESPONSE_EVENT
            ),
        }
    )
    assert msg.message_type == "exception"
    assert msg.event_type == "assistantResponseEvent"


@pytest.mark.parametrize(
    "status, text",
    [
        (ToolStatus.PENDING, "pending"),
        (ToolStatus.RUNNING, "running"),
        (ToolStatus.COMPLETED, "completed"),
        (ToolStatus.ERROR, "error"),
    ],
)
def test_tool_status_str(status, text):
    assert str(status) == text


def test_tool_execution_defaults():
    tool = ToolExecution(id="t1", name="search")
    assert tool.status is ToolStatus.PENDING
    assert tool.arguments == {}
    assert tool.end_time is None
    assert tool.start_time.tzinfo is not None


def test_parse_error_text():
    plain = ParseError("bad length")
    assert "bad length" in str(plain)
    assert plain.cause is None
    wrapped = ParseError("bad header", KeyError("x"))
    assert "bad header" in str(wrapped)
    assert "'x'" in str(wrapped)
    assert isinstance(wrapped, ValueError)


def test_parse_full_event_plain():
    payload = json.dumps({"content": "hello", "messageStatus": "IN_PROGRESS"}).encode()
    event = parse_full_assistant_response_event(payload)
    assert event.content == "hello"
    assert event.message_status == "IN_PROGRESS"


def test_parse_full_event_nested():
    payload = json.dumps(
        {"assistantResponseEvent": {"content": "x", "conversationId": "c1", "messageId": "m1"}}
    )
    event = parse_full_assistant_response_event(payload)
    assert event == AssistantResponseEvent(content="x", conversation_id="c1", message_id="m1")


def test_parse_full_event_rejects_tool_fragment():
    payload = json.dumps({"toolUseId": "tooluse_a", "name": "Read", "input": "{"})
    with pytest.raises(ValueError, match="tool call fragment"):
        parse_full_assistant_response_event(payload)


def test_parse_full_event_tool_fields_with_content_accepted():
    payload = json.dumps({"toolUseId": "tooluse_a", "name": "Read", "content": "text"})
    assert parse_full_assistant_response_event(payload).content == "text"


def test_parse_full_event_invalid_json():
    with pytest.raises(ValueError):
        parse_full_assistant_response_event(b"{not json")
    with pytest.raises(ValueError):
        parse_full_assistant_response_event(b"[1, 2]")


def test_from_dict_rejects_wrong_types():
    with pytest.raises(ValueError):
        AssistantResponseEvent.from_dict({"content": 5})


def test_tool_use_event_from_payload():
    payload = json.dumps(
        {"name": "Read", "toolUseId": "tooluse_abc", "input": {"path": "/tmp"}, "stop": True}
    ).encode()
    event = ToolUseEvent.from_payload(payload)
    assert event == ToolUseEvent("Read", "tooluse_abc", {"path": "/tmp"}, True)


def test_tool_use_event_defaults_and_errors():
    assert ToolUseEvent.from_payload(b"{}") == ToolUseEvent()
    with pytest.raises(ValueError):
        ToolUseEvent.from_payload(b'{"stop": "yes"}')
    with pytest.raises(ValueError):
        ToolUseEvent.from_payload(b"not json")