"""Frame-level decoder for the binary event stream with error recovery."""

from __future__ import annotations

import re
import threading

from . import jsonlog as log
from .header_parser import HeaderParser, default_headers
from .stream_types import EventStreamMessage, HeaderValue, ParseError

PRELUDE_SIZE = 12
MIN_MESSAGE_SIZE = 16
MAX_MESSAGE_SIZE = 16 * 1024 * 1024
DEFAULT_MAX_ERRORS = 10

_TOOL_USE_PREFIX = "tooluse_"
_ID_CHARS = re.compile(r"[A-Za-z0-9_-]*")
_ID_ALLOWED_BEFORE = frozenset('":{ ')


class TooManyErrors(Exception):
    """The error count reached its limit; ``messages`` holds what was decoded."""

    def __init__(self, messages: list[EventStreamMessage], count: int) -> None:
        super().__init__(f"too many errors ({count}), parsing stopped")
        self.messages = messages
        self.count = count


def is_valid_tool_use_id(tool_use_id: str) -> bool:
    """True if the id looks like an intact ``tooluse_`` identifier."""
    if not tool_use_id.startswith(_TOOL_USE_PREFIX):
        return False
    length = len(tool_use_id.encode("utf-8"))
    if length < 20 or length > 50:
        log.debug("tool_use_id length abnormal", id=tool_use_id, length=length)
        return False
    suffix = tool_use_id[len(_TOOL_USE_PREFIX):]
    if _ID_CHARS.fullmatch(suffix) is None or not suffix.isascii():
        log.debug("tool_use_id contains invalid characters", id=tool_use_id)
        return False
    if "tooluluse_" in tool_use_id or "tooluse_tooluse_" in tool_use_id:
        log.warn("corrupted tool_use_id pattern detected", id=tool_use_id)
        return False
    return True


def extract_tool_use_ids(payload: str) -> list[str]:
    """Find the valid ``tooluse_`` ids in a payload.

    An occurrence counts only when it follows a quote, colon, space or brace
    (or starts the payload).
    """
    ids: list[str] = []
    start = 0
    while (pos := payload.find(_TOOL_USE_PREFIX, start)) != -1:
        start = pos + 1
        if pos > 0 and payload[pos - 1] not in _ID_ALLOWED_BEFORE:
            continue
        tail = _ID_CHARS.match(payload, pos + len(_TOOL_USE_PREFIX))
        end = tail.end() if tail is not None else pos + len(_TOOL_USE_PREFIX)
        if end <= pos + len(_TOOL_USE_PREFIX):
            continue
        candidate = payload[pos:end]
        if is_valid_tool_use_id(candidate):
            ids.append(candidate)
        else:
            log.warn("skipping invalid tool_use_id", invalid_id=candidate)
    return ids


def _preview(payload: bytes, limit: int = 100) -> str:
    text = payload[:limit].decode("utf-8", "replace")
    return text + "..." if len(payload) > limit else text


class RobustEventStreamParser:
    """Decodes frames from a byte stream, skipping damaged data.

    A frame is ``total length, header length, prelude CRC, headers, payload,
    message CRC``; all integers are big-endian 32-bit. CRCs are not checked.
    """

    def __init__(
        self,
        max_errors: int = DEFAULT_MAX_ERRORS,
        min_message_size: int = MIN_MESSAGE_SIZE,
        max_message_size: int = MAX_MESSAGE_SIZE,
    ) -> None:
        self.max_errors = max_errors
        self.min_message_size = min_message_size
        self.max_message_size = max_message_size
        self._header_parser = HeaderParser()
        self._buffer = bytearray()
        self._error_count = 0
        self._lock = threading.Lock()

    @property
    def error_count(self) -> int:
        return self._error_count

    def reset(self) -> None:
        """Drop buffered data and clear the error count."""
        with self._lock:
            self._error_count = 0
            self._buffer.clear()

    def feed(self, data: bytes) -> list[EventStreamMessage]:
        """Buffer ``data`` and return every complete frame it finishes.

        Raises ``TooManyErrors``, carrying the decoded messages, once the
        error count reaches ``max_errors``.
        """
        with self._lock:
            self._buffer += data
            messages: list[EventStreamMessage] = []
            while len(self._buffer) >= self.min_message_size:
                total = int.from_bytes(self._buffer[:4], "big")
                if total < self.min_message_size or total > self.max_message_size:
                    del self._buffer[:1]
                    self._error_count += 1
                    log.warn("skipping invalid message header", total_length=total)
                    continue
                if len(self._buffer) < total:
                    break
                frame = bytes(self._buffer[:total])
                del self._buffer[:total]
                try:
                    messages.append(self.parse_message(frame))
                except ParseError as exc:
                    log.warn("message parse failed", error=str(exc))
                    self._error_count += 1

            if self._error_count >= self.max_errors:
                raise TooManyErrors(messages, self._error_count)
            return messages

    def parse_message(self, data: bytes) -> EventStreamMessage:
        """Decode exactly one frame; raises ``ParseError`` if it is malformed."""
        data = bytes(data)
        if len(data) < MIN_MESSAGE_SIZE:
            raise ParseError("data too short")

        self._header_parser.reset()
        total = int.from_bytes(data[0:4], "big")
        header_length = int.from_bytes(data[4:8], "big")

        if total != len(data):
            raise ParseError(
                f"length mismatch: expected {total} bytes, got {len(data)} bytes"
            )
        if total > MAX_MESSAGE_SIZE:
            raise ParseError(f"message too large: {total}")
        if header_length > total - MIN_MESSAGE_SIZE:
            raise ParseError(f"abnormal header length: {header_length}")

        header_data = data[PRELUDE_SIZE : PRELUDE_SIZE + header_length]
        payload = data[PRELUDE_SIZE + header_length : total - 4]

        log.debug(
            "frame decoded",
            total_length=total,
            header_length=header_length,
            prelude_crc=data[8:12].hex(),
            payload_len=len(payload),
            payload_hex=payload[:20].hex() + ("..." if len(payload) > 20 else ""),
            payload_raw=_preview(payload),
        )

        message = EventStreamMessage(
            headers=self._parse_headers(header_data), payload=payload
        )
        self._check_tool_use_ids(message)
        return message

    def _parse_headers(self, header_data: bytes) -> dict[str, HeaderValue]:
        if not header_data:
            log.debug("empty headers, using defaults")
            return default_headers()
        parser = self._header_parser
        try:
            return dict(parser.parse(header_data))
        except ParseError as exc:
            if parser.is_recoverable(parser.state):
                log.warn("header parsing partly failed, using parsed headers", error=str(exc))
                headers = parser.force_complete(parser.state)
            else:
                log.warn("header parsing failed, using default headers", error=str(exc))
                headers = default_headers()
            parser.reset()
            return headers

    @staticmethod
    def _check_tool_use_ids(message: EventStreamMessage) -> None:
        if not message.payload:
            return
        text = message.payload.decode("utf-8", "replace")
        if "tool_use_id" not in text and "toolUseId" not in text:
            return
        for tool_use_id in extract_tool_use_ids(text):
            if not is_valid_tool_use_id(tool_use_id):
                log.warn(
                    "possibly corrupted tool_use_id",
                    tool_use_id=tool_use_id,
                    message_type=message.message_type,
                    event_type=message.event_type,
                )