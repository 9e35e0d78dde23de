"""Streaming state machine that splits ``<thinking>`` blocks from text."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import IntEnum

from .thinking_detector import (
    END_TAG,
    START_TAG,
    find_char_boundary,
    find_real_end_tag,
    find_real_start_tag,
)


class ThinkingState(IntEnum):
    NOT_IN_THINKING = 0
    IN_THINKING = 1
    THINKING_EXTRACTED = 2


@dataclass
class ChunkResult:
    """What one processed chunk produced."""

    thinking_content: str = ""
    text_content: str = ""
    thinking_started: bool = False
    thinking_ended: bool = False


def _safe_prefix(buffer: str, keep: int) -> tuple[str, str]:
    """Split ``buffer`` so that at least ``keep - 1`` trailing bytes stay held back.

    The cut falls on a UTF-8 character boundary.
    """
    raw = buffer.encode("utf-8")
    safe_len = len(raw) - keep + 1
    if safe_len <= 0:
        return "", buffer
    boundary = find_char_boundary(raw, safe_len)
    if boundary <= 0:
        return "", buffer
    return raw[:boundary].decode("utf-8"), raw[boundary:].decode("utf-8")


def _strip_separator(text: str) -> str:
    if text.startswith("\n\n"):
        return text[2:]
    if text.startswith("\n"):
        return text[1:]
    return text


class ThinkingStreamContext:
    """Tracks a stream's progress through an optional leading thinking block.

    With thinking enabled, the thinking block takes content index 0 and the
    text block index 1; further indices are allocated from 2.
    """

    def __init__(self, thinking_enabled: bool = False) -> None:
        self.thinking_enabled = thinking_enabled
        self._lock = threading.Lock()
        self._state = ThinkingState.NOT_IN_THINKING
        self._buffer = ""
        self._thinking_extracted = False
        self._thinking_block_index: int | None = 0 if thinking_enabled else None
        self._text_block_index: int | None = 1 if thinking_enabled else None
        self._next_block_index = 2 if thinking_enabled else 0

    def reset(self) -> None:
        with self._lock:
            self._buffer = ""
            self._state = ThinkingState.NOT_IN_THINKING
            self._thinking_extracted = False
            self._next_block_index = 2 if self.thinking_enabled else 0

    def process_chunk(self, chunk: str) -> ChunkResult:
        """Feed a piece of streamed text and return what can be emitted now."""
        with self._lock:
            if not self.thinking_enabled:
                return ChunkResult(text_content=chunk)

            self._buffer += chunk
            buffer = self._buffer
            if self._state is ThinkingState.NOT_IN_THINKING:
                return self._process_not_in_thinking(buffer)
            if self._state is ThinkingState.IN_THINKING:
                return self._process_in_thinking(buffer)
            self._buffer = ""
            return ChunkResult(text_content=buffer)

    def _process_not_in_thinking(self, buffer: str) -> ChunkResult:
        result = ChunkResult()
        start = find_real_start_tag(buffer)
        if start != -1:
            self._state = ThinkingState.IN_THINKING
            result.thinking_started = True
            result.text_content = buffer[:start]
            self._buffer = buffer[start + len(START_TAG):]
        else:
            emitted, held = _safe_prefix(buffer, len(START_TAG))
            if emitted:
                result.text_content = emitted
                self._buffer = held
        return result

    def _process_in_thinking(self, buffer: str) -> ChunkResult:
        result = ChunkResult()
        end = find_real_end_tag(buffer)
        if end != -1:
            result.thinking_content = buffer[:end]
            self._state = ThinkingState.THINKING_EXTRACTED
            self._thinking_extracted = True
            result.thinking_ended = True
            result.text_content = _strip_separator(buffer[end + len(END_TAG):])
            self._buffer = ""
        else:
            emitted, held = _safe_prefix(buffer, len(END_TAG))
            if emitted:
                result.thinking_content = emitted
                self._buffer = held
        return result

    @property
    def thinking_block_index(self) -> int:
        return self._thinking_block_index if self._thinking_block_index is not None else 0

    @property
    def text_block_index(self) -> int:
        return self._text_block_index if self._text_block_index is not None else 0

    def allocate_block_index(self) -> int:
        """Return the next free content block index and reserve it."""
        with self._lock:
            index = self._next_block_index
            self._next_block_index += 1
            return index

    @property
    def in_thinking_block(self) -> bool:
        with self._lock:
            return self._state is ThinkingState.IN_THINKING

    @property
    def thinking_extracted(self) -> bool:
        with self._lock:
            return self._thinking_extracted

    @property
    def state(self) -> ThinkingState:
        with self._lock:
            return self._state

    def flush(self) -> ChunkResult:
        """Emit whatever is still held back, as thinking if inside a block."""
        with self._lock:
            buffer = self._buffer
            if not buffer:
                return ChunkResult()
            self._buffer = ""
            if self._state is ThinkingState.IN_THINKING:
                return ChunkResult(thinking_content=buffer)
            return ChunkResult(text_content=buffer)