"""Detection of real ``<thinking>`` tags in streamed text.

A tag touching a quote-like character, or preceded by an odd number of
backticks, is taken to be quoted rather than real.
"""

from __future__ import annotations

QUOTE_CHARS = frozenset("`\"'\\#[](){}")
START_TAG = "<thinking>"
END_TAG = "</thinking>"


def is_quote_char(char: str | int) -> bool:
    """True if ``char`` marks a tag as quoted."""
    if isinstance(char, int):
        char = chr(char)
    return char in QUOTE_CHARS


def _is_quoted(buffer: str, idx: int, tag: str) -> bool:
    if idx > 0 and is_quote_char(buffer[idx - 1]):
        return True
    after = idx + len(tag)
    if after < len(buffer) and is_quote_char(buffer[after]):
        return True
    return buffer.count("`", 0, idx) % 2 == 1


def find_real_start_tag(buffer: str) -> int:
    """Index of the first real start tag, or -1."""
    search = 0
    while (idx := buffer.find(START_TAG, search)) != -1:
        if not _is_quoted(buffer, idx, START_TAG):
            return idx
        search = idx + 1
    return -1


def find_real_end_tag(buffer: str) -> int:
    """Index of the first real end tag, or -1.

    A real end tag is followed by a blank line or ends the buffer; a single
    trailing character means more data is needed, so -1 is returned.
    """
    search = 0
    while (idx := buffer.find(END_TAG, search)) != -1:
        end = idx + len(END_TAG)
        if _is_quoted(buffer, idx, END_TAG):
            search = idx + 1
            continue
        remaining = buffer[end:]
        if len(remaining) == 1:
            return -1
        if len(remaining) >= 2 and not remaining.startswith("\n\n"):
            search = end
            continue
        return idx
    return -1


def find_char_boundary(data: bytes | str, target: int) -> int:
    """Largest UTF-8 character boundary at or before byte offset ``target``."""
    raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    if target <= 0:
        return 0
    if target >= len(raw):
        return len(raw)
    while target > 0 and raw[target] & 0xC0 == 0x80:
        target -= 1
    return target


def _strip_separator(text: str) -> str:
    if text.startswith("\n\n"):
        return text[2:]
    if text.startswith("\n"):
        return text[1:]
    return text


def extract_thinking_content(buffer: str) -> tuple[str, str, bool]:
    """Split out a complete thinking block: ``(thinking, remaining, found)``."""
    start = find_real_start_tag(buffer)
    if start == -1:
        return "", buffer, False
    content_start = start + len(START_TAG)
    end = find_real_end_tag(buffer[content_start:])
    if end == -1:
        return "", buffer, False
    end += content_start
    thinking = buffer[content_start:end]
    return thinking, _strip_separator(buffer[end + len(END_TAG) :]), True


def has_potential_tag(buffer: str) -> bool:
    """True if the buffer ends with a proper prefix of a start or end tag."""
    return any(
        buffer.endswith(tag[:i])
        for tag in (START_TAG, END_TAG)
        for i in range(1, len(tag))
    )