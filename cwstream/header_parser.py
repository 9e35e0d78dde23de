"""Resumable parser for the header section of event stream frames."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from . import jsonlog as log
from .stream_types import (
    EventStreamMessage,
    EventType,
    HeaderValue,
    MessageType,
    ParseError,
    ValueType,
)


class ParsePhase(IntEnum):
    """The part of a header the parser expects next."""

    READ_NAME_LENGTH = 0
    READ_NAME = 1
    READ_VALUE_TYPE = 2
    READ_VALUE_LENGTH = 3
    READ_VALUE = 4


@dataclass
class HeaderParseState:
    """Progress through a header block, kept between calls to resume parsing."""

    phase: ParsePhase = ParsePhase.READ_NAME_LENGTH
    current_header: int = 0
    name_length: int = 0
    value_type: int = 0
    value_length: int = 0
    partial_name: bytearray | None = None
    partial_value: bytearray | None = None
    partial_length: bytearray | None = None
    parsed_headers: dict[str, HeaderValue] = field(default_factory=dict)

    def _clear_current(self) -> None:
        self.name_length = 0
        self.value_type = 0
        self.value_length = 0
        self.partial_name = None
        self.partial_value = None
        self.partial_length = None
        self.phase = ParsePhase.READ_NAME_LENGTH

    def reset(self) -> None:
        """Forget all progress and every parsed header."""
        self._clear_current()
        self.current_header = 0
        self.parsed_headers = {}

    def is_complete(self) -> bool:
        """True when at least one header is parsed and none is half read."""
        return self.phase is ParsePhase.READ_NAME_LENGTH and bool(self.parsed_headers)


class IncompleteHeadersError(ParseError):
    """The data ended inside a header; more data is needed to continue."""

    def __init__(self, headers: dict[str, HeaderValue]) -> None:
        super().__init__("insufficient data: more data needed to continue parsing")
        self.headers = headers


def _value_type(raw: int) -> ValueType | int:
    try:
        return ValueType(raw)
    except ValueError:
        return raw


def _fixed_int(data: bytes, size: int, label: str) -> int:
    if len(data) != size:
        raise ValueError(
            f"{label} value has wrong length: expected {size} bytes, got {len(data)}"
        )
    return int.from_bytes(data, "big", signed=True)


def parse_header_value(value_type: int, data: bytes) -> Any:
    """Decode a header value of the given type; raises ``ValueError`` on bad lengths."""
    data = bytes(data)
    kind = _value_type(value_type)
    if kind is ValueType.BOOL_TRUE:
        return True
    if kind is ValueType.BOOL_FALSE:
        return False
    if kind is ValueType.BYTE:
        return _fixed_int(data, 1, "BYTE")
    if kind is ValueType.SHORT:
        return _fixed_int(data, 2, "SHORT")
    if kind is ValueType.INTEGER:
        return _fixed_int(data, 4, "INTEGER")
    if kind is ValueType.LONG:
        return _fixed_int(data, 8, "LONG")
    if kind is ValueType.BYTE_ARRAY:
        return data
    if kind is ValueType.STRING:
        return data.decode("utf-8", "replace")
    if kind is ValueType.TIMESTAMP:
        return _fixed_int(data, 8, "TIMESTAMP")
    if kind is ValueType.UUID:
        if len(data) == 16:
            return "-".join(
                data[a:b].hex() for a, b in ((0, 4), (4, 6), (6, 8), (8, 10), (10, 16))
            )
        return data.decode("utf-8", "replace")
    log.warn("unknown header value type", value_type=int(value_type))
    return data


def default_headers() -> dict[str, HeaderValue]:
    """Headers assumed for a frame whose own headers are missing."""
    return {
        ":message-type": HeaderValue(ValueType.STRING, MessageType.EVENT),
        ":event-type": HeaderValue(ValueType.STRING, EventType.ASSISTANT_RESPONSE_EVENT),
        ":content-type": HeaderValue(ValueType.STRING, "application/json"),
    }


def get_message_type(headers: Mapping[str, HeaderValue]) -> str:
    return EventStreamMessage(headers=dict(headers)).message_type


def get_event_type(headers: Mapping[str, HeaderValue]) -> str:
    return EventStreamMessage(headers=dict(headers)).event_type


def get_content_type(headers: Mapping[str, HeaderValue]) -> str:
    return EventStreamMessage(headers=dict(headers)).content_type


class HeaderParser:
    """Parses ``name-len, name, type, value-len, value`` headers, resumably."""

    def __init__(self) -> None:
        self._state = HeaderParseState()
        self._steps = {
            ParsePhase.READ_NAME_LENGTH: self._read_name_length,
            ParsePhase.READ_NAME: self._read_name,
            ParsePhase.READ_VALUE_TYPE: self._read_value_type,
            ParsePhase.READ_VALUE_LENGTH: self._read_value_length,
            ParsePhase.READ_VALUE: self._read_value,
        }

    @property
    def state(self) -> HeaderParseState:
        return self._state

    def reset(self) -> None:
        self._state.reset()

    def parse(self, data: bytes) -> dict[str, HeaderValue]:
        """Parse header bytes using the parser's own state."""
        if not data:
            return {}
        return self.parse_with_state(data, self._state)

    def parse_with_state(
        self, data: bytes, state: HeaderParseState
    ) -> dict[str, HeaderValue]:
        """Parse header bytes, continuing from and updating ``state``.

        Raises ``IncompleteHeadersError`` when the data stops inside a header
        and ``ParseError`` when the data is malformed.
        """
        if not data:
            return state.parsed_headers if state.parsed_headers else {}

        view = bytes(data)
        offset = 0
        while offset < len(view):
            offset, need_more = self._steps[state.phase](view, offset, state)
            if need_more:
                log.debug(
                    "header parsing needs more data (state kept)",
                    current_phase=int(state.phase),
                    processed_bytes=offset,
                    parsed_count=len(state.parsed_headers),
                )
                raise IncompleteHeadersError(state.parsed_headers)

        if state.phase is not ParsePhase.READ_NAME_LENGTH:
            log.debug(
                "data ended before header parsing finished",
                current_phase=int(state.phase),
                parsed_headers=len(state.parsed_headers),
            )
            if state.parsed_headers:
                return self.force_complete(state)
            raise IncompleteHeadersError(state.parsed_headers)
        return state.parsed_headers

    @staticmethod
    def _read_name_length(
        data: bytes, offset: int, state: HeaderParseState
    ) -> tuple[int, bool]:
        name_length = data[offset]
        if name_length == 0:
            raise ParseError(f"abnormal name length: {name_length}")
        state.name_length = name_length
        state.partial_name = bytearray()
        state.phase = ParsePhase.READ_NAME
        return offset + 1, False

    @staticmethod
    def _read_name(data: bytes, offset: int, state: HeaderParseState) -> tuple[int, bool]:
        assert state.partial_name is not None
        remaining = state.name_length - len(state.partial_name)
        if len(data) - offset < remaining:
            state.partial_name += data[offset:]
            return len(data), True
        state.partial_name += data[offset : offset + remaining]
        state.phase = ParsePhase.READ_VALUE_TYPE
        return offset + remaining, False

    @staticmethod
    def _read_value_type(
        data: bytes, offset: int, state: HeaderParseState
    ) -> tuple[int, bool]:
        state.value_type = data[offset]
        state.phase = ParsePhase.READ_VALUE_LENGTH
        return offset + 1, False

    @staticmethod
    def _read_value_length(
        data: bytes, offset: int, state: HeaderParseState
    ) -> tuple[int, bool]:
        if state.partial_length is None:
            state.partial_length = bytearray()
        remaining = 2 - len(state.partial_length)
        if len(data) - offset < remaining:
            state.partial_length += data[offset:]
            return len(data), True
        state.partial_length += data[offset : offset + remaining]
        state.value_length = int.from_bytes(state.partial_length, "big")
        state.partial_value = bytearray()
        state.partial_length = None
        state.phase = ParsePhase.READ_VALUE
        return offset + remaining, False

    @staticmethod
    def _read_value(data: bytes, offset: int, state: HeaderParseState) -> tuple[int, bool]:
        assert state.partial_value is not None and state.partial_name is not None
        remaining = state.value_length - len(state.partial_value)
        if len(data) - offset < remaining:
            state.partial_value += data[offset:]
            return len(data), True
        state.partial_value += data[offset : offset + remaining]

        name = state.partial_name.decode("utf-8", "replace")
        try:
            value = parse_header_value(state.value_type, bytes(state.partial_value))
        except ValueError as exc:
            log.warn(
                "failed to parse header value",
                header_name=name,
                value_type=int(state.value_type),
                error=str(exc),
            )
        else:
            state.parsed_headers[name] = HeaderValue(_value_type(state.value_type), value)

        state.current_header += 1
        state._clear_current()
        return offset + remaining, False

    @staticmethod
    def is_recoverable(state: HeaderParseState) -> bool:
        """True when enough headers were parsed to stop parsing early."""
        return bool(state.parsed_headers)

    @staticmethod
    def force_complete(state: HeaderParseState) -> dict[str, HeaderValue]:
        """Return the parsed headers with any missing key header filled in."""
        if not state.parsed_headers:
            return default_headers()
        result = dict(state.parsed_headers)
        for name, value in default_headers().items():
            result.setdefault(name, value)
        return result