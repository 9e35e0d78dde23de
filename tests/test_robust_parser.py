import zlib

import pytest

from cwstream.robust_parser import (
    RobustEventStreamParser,
    TooManyErrors,
    extract_tool_use_ids,
    is_valid_tool_use_id,
)
from cwstream.stream_types import EventType, MessageType, ParseError, ValueType


def header(name: str, value: str) -> bytes:
    raw_name, raw_value = name.encode(), value.encode()
    return (
        bytes([len(raw_name)])
        + raw_name
        + bytes([ValueType.STRING])
        + len(raw_value).to_bytes(2, "big")
        + raw_value
    )


def frame(headers: bytes, payload: bytes) -> bytes:
    total = 16 + len(headers) + len(payload)
    prelude = total.to_bytes(4, "big") + len(headers).to_bytes(4, "big")
    body = prelude + zlib.crc32(prelude).to_bytes(4, "big") + headers + payload
    return body + zlib.crc32(body).to_bytes(4, "big")


def event_headers(event_type: str) -> bytes:
    return header(":message-type", "event") + header(":event-type", event_type)


PAYLOAD = b'{"content":"hello"}'


def test_single_frame_round_trip():
    parser = RobustEventStreamParser()
    messages = parser.feed(frame(event_headers(EventType.TOOL_USE_EVENT), PAYLOAD))
    assert len(messages) == 1
    message = messages[0]
    assert message.payload == PAYLOAD
    assert message.event_type == EventType.TOOL_USE_EVENT
    assert message.message_type == MessageType.EVENT
    assert parser.error_count == 0


def test_frame_split_across_feeds():
    data = frame(event_headers(EventType.COMPLETION), PAYLOAD)
    parser = RobustEventStreamParser()
    assert parser.feed(data[:20]) == []
    messages = parser.feed(data[20:])
    assert [m.payload for m in messages] == [PAYLOAD]


def test_multiple_frames_keep_order():
    first = frame(event_headers(EventType.COMPLETION), b'{"n":1}')
    second = frame(event_headers(EventType.SESSION_END), b'{"n":2}')
    messages = RobustEventStreamParser().feed(first + second)
    assert [m.payload for m in messages] == [b'{"n":1}', b'{"n":2}']
    assert [m.event_type for m in messages] == [
        EventType.COMPLETION,
        EventType.SESSION_END,
    ]


def test_empty_headers_use_defaults():
    messages = RobustEventStreamParser().feed(frame(b"", PAYLOAD))
    assert messages[0].event_type == EventType.ASSISTANT_RESPONSE_EVENT
    assert messages[0].content_type == "application/json"


def test_unparseable_headers_use_defaults():
    messages = RobustEventStreamParser().feed(frame(b"\x00", PAYLOAD))
    assert messages[0].event_type == EventType.ASSISTANT_RESPONSE_EVENT
    assert messages[0].payload == PAYLOAD


def test_truncated_headers_keep_parsed_ones():
    headers = header(":event-type", EventType.TOOL_USE_EVENT) + b"\x05ab"
    messages = RobustEventStreamParser().feed(frame(headers, PAYLOAD))
    message = messages[0]
    assert message.event_type == EventType.TOOL_USE_EVENT
    assert message.message_type == MessageType.EVENT


def test_garbage_prefix_is_skipped():
    prefix = b"\x00" * 3
    parser = RobustEventStreamParser()
    messages = parser.feed(prefix + frame(event_headers(EventType.COMPLETION), PAYLOAD))
    assert [m.payload for m in messages] == [PAYLOAD]
    assert parser.error_count == len(prefix)


def test_too_many_errors_carries_messages():
    parser = RobustEventStreamParser(max_errors=2)
    data = b"\x00\x00" + frame(event_headers(EventType.COMPLETION), PAYLOAD)
    with pytest.raises(TooManyErrors) as info:
        parser.feed(data)
    assert [m.payload for m in info.value.messages] == [PAYLOAD]
    assert info.value.count == parser.error_count


def test_frame_over_maximum_is_rejected():
    parser = RobustEventStreamParser(max_errors=1000, max_message_size=32)
    assert parser.feed(frame(b"", b"x" * 40)) == []
    assert parser.error_count > 0


def test_reset_clears_state():
    parser = RobustEventStreamParser()
    data = b"\x00" + frame(b"", PAYLOAD)
    parser.feed(data[:10])
    parser.reset()
    assert parser.error_count == 0
    assert parser.feed(frame(b"", PAYLOAD))[0].payload == PAYLOAD


def test_parse_message_length_mismatch():
    data = frame(b"", PAYLOAD)
    with pytest.raises(ParseError):
        RobustEventStreamParser().parse_message(data + b"\x00")


def test_parse_message_too_short():
    with pytest.raises(ParseError):
        RobustEventStreamParser().parse_message(b"\x00" * 8)


def test_parse_message_header_length_too_large():
    data = bytearray(frame(b"", PAYLOAD))
    data[4:8] = len(data).to_bytes(4, "big")
    with pytest.raises(ParseError):
        RobustEventStreamParser().parse_message(bytes(data))


def test_extract_tool_use_ids():
    good = "tooluse_" + "A" * 22
    bad_context = "tooluse_" + "B" * 22
    payload = '{"toolUseId":"' + good + '","x":"x' + bad_context + '","s":"tooluse_ab"}'
    assert extract_tool_use_ids(payload) == [good]


def test_extract_tool_use_ids_none():
    assert extract_tool_use_ids('{"content":"no ids here"}') == []


@pytest.mark.parametrize(
    ("tool_use_id", "expected"),
    [
        ("tooluse_" + "a" * 12, True),
        ("tooluse_" + "a" * 11, False),
        ("tooluse_" + "a" * 42, True),
        ("tooluse_" + "a" * 43, False),
        ("toolsuse_" + "a" * 20, False),
        ("tooluse_tooluse_abcdefghijk", False),
        ("tooluse_abc!defghijklmnop", False),
    ],
)
def test_is_valid_tool_use_id(tool_use_id, expected):
    assert is_valid_tool_use_id(tool_use_id) is expected