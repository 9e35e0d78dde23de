"""Aggregation of streamed tool input fragments into complete JSON objects.

Fragments are buffered until the stop signal arrives and only then parsed,
because the upstream splits data on byte boundaries and an intermediate
fragment may end in the middle of a UTF-8 character.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from typing import Any

from . import jsonlog as log

ToolParamsCallback = Callable[[str, str], None]

_UTF8_LEADS = ((0xE0, 0xC0, 2), (0xF0, 0xE0, 3), (0xF8, 0xF0, 4))


def _split_incomplete_utf8(data: bytes) -> tuple[bytes, bytes]:
    """Split ``data`` into complete characters and a truncated trailing character."""
    n = len(data)
    for i in range(n - 1, max(n - 5, -1), -1):
        b = data[i]
        if b & 0x80 == 0:
            break
        for mask, lead, size in _UTF8_LEADS:
            if b & mask == lead:
                if n - i < size:
                    return data[:i], data[i:]
                return data, b""
        # continuation byte: keep looking backwards
    return data, b""


def _preview(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class JSONStreamer:
    """Buffers the input fragments of one tool call."""

    def __init__(self, tool_use_id: str, tool_name: str) -> None:
        self.tool_use_id = tool_use_id
        self.tool_name = tool_name
        self._buffer = bytearray()
        self._pending = b""
        self.has_valid_json = False
        self.result: dict[str, Any] | None = None
        self.fragment_count = 0
        self.total_bytes = 0
        self.is_complete = False
        self.last_update = time.monotonic()

    @property
    def buffer(self) -> bytes:
        """The bytes buffered so far, excluding a held-back partial character."""
        return bytes(self._buffer)

    def append(self, fragment: str | bytes) -> None:
        """Add a fragment, holding back a trailing partial UTF-8 character."""
        raw = fragment.encode("utf-8") if isinstance(fragment, str) else bytes(fragment)
        complete, self._pending = _split_incomplete_utf8(self._pending + raw)
        if self._pending:
            log.debug(
                "truncated UTF-8 character held back",
                toolUseId=self.tool_use_id,
                pending_bytes=len(self._pending),
            )
        self._buffer += complete
        self.last_update = time.monotonic()
        self.fragment_count += 1
        self.total_bytes += len(raw)

    def try_parse(self) -> str:
        """Parse the buffer; returns ``"empty"``, ``"complete"`` or ``"invalid"``."""
        content = bytes(self._buffer)
        if not content:
            return "empty"

        stripped = content.strip()
        if stripped in (b"{}", b"[]"):
            self.result = {} if stripped == b"{}" else None
            self.has_valid_json = True
            return "complete"

        try:
            parsed = json.loads(content)
        except ValueError:
            return "invalid"
        if parsed is not None and not isinstance(parsed, dict):
            return "invalid"
        self.result = parsed
        self.has_valid_json = True
        log.debug(
            "JSON parse complete",
            toolUseId=self.tool_use_id,
            resultKeys=len(parsed or {}),
        )
        return "complete"


class StreamingJSONAggregator:
    """Collects tool input fragments per tool call until the stop signal."""

    def __init__(self, callback: ToolParamsCallback | None = None) -> None:
        self._streamers: dict[str, JSONStreamer] = {}
        self._lock = threading.Lock()
        self._callback = callback

    def __contains__(self, tool_use_id: object) -> bool:
        with self._lock:
            return tool_use_id in self._streamers

    def process_tool_data(
        self, tool_use_id: str, name: str, fragment: str | bytes, stop: bool
    ) -> tuple[bool, str]:
        """Add a fragment; on ``stop`` return ``(True, full_json)``, else ``(False, "")``.

        The full JSON is ``"{}"`` when the buffered input is empty, not an
        object, or not valid JSON.
        """
        with self._lock:
            streamer = self._streamers.get(tool_use_id)
            if streamer is None:
                streamer = JSONStreamer(tool_use_id, name)
                self._streamers[tool_use_id] = streamer
                log.debug("created JSON streamer", toolUseId=tool_use_id, toolName=name)

            if fragment:
                streamer.append(fragment)

            if not stop:
                return False, ""

            status = streamer.try_parse()
            streamer.is_complete = True
            if streamer.has_valid_json and streamer.result is not None:
                full_input = json.dumps(
                    streamer.result,
                    ensure_ascii=False,
                    separators=(",", ":"),
                    sort_keys=True,
                )
            else:
                if streamer.fragment_count == 0 and streamer.total_bytes == 0:
                    log.debug("tool has no parameters", toolName=streamer.tool_name)
                else:
                    log.error(
                        "streaming parse failed, no valid JSON result",
                        toolName=streamer.tool_name,
                        toolUseId=tool_use_id,
                        parseStatus=status,
                        buffer=streamer.buffer.decode("utf-8", "replace"),
                        fragmentCount=streamer.fragment_count,
                        totalBytes=streamer.total_bytes,
                    )
                full_input = "{}"
            del self._streamers[tool_use_id]

        if self._callback is not None:
            self._callback(tool_use_id, full_input)
        log.debug(
            "JSON aggregation complete",
            toolUseId=tool_use_id,
            toolName=name,
            result=_preview(full_input),
            totalFragments=streamer.fragment_count,
            totalBytes=streamer.total_bytes,
        )
        return True, full_input