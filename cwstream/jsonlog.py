"""Structured JSON-lines logging with a fixed field order.

Each entry is one JSON object per line whose keys appear in the order
``timestamp``, ``level``, ``file``, ``func``, ``message`` and then the extra
fields sorted by name.
"""

from __future__ import annotations

import inspect
import json
import os
import sys
import threading
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from enum import IntEnum
from typing import IO, Any


class Level(IntEnum):
    """Severity of a log entry."""

    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3
    FATAL = 4


_RESERVED_KEYS = frozenset(
    {"level", "log_level", "timestamp", "message", "file", "log_file", "func"}
)
_TRUE_VALUES = ("true", "1")
_DEFAULT_CALLER_SKIP = 3


def parse_level(text: str) -> Level:
    """Parse a level name such as ``"info"`` or ``"WARNING"``."""
    name = text.strip().upper()
    if name == "WARNING":
        name = "WARN"
    try:
        return Level[name]
    except KeyError:
        raise ValueError(f"unknown log level: {text}") from None


class _Console:
    """Writes to whatever ``sys.stdout`` is at the time of writing."""

    def write(self, text: str) -> int:
        return sys.stdout.write(text)

    def flush(self) -> None:
        sys.stdout.flush()


_CONSOLE = _Console()


def _timestamp() -> str:
    stamp = datetime.now().astimezone().isoformat(timespec="milliseconds")
    if stamp.endswith("+00:00"):
        return stamp[:-6] + "Z"
    return stamp


def _encode_value(value: Any) -> str:
    if isinstance(value, timedelta):
        value = (value // timedelta(microseconds=1)) * 1000
    elif isinstance(value, BaseException):
        value = str(value)
    try:
        return json.dumps(
            value, ensure_ascii=False, separators=(",", ":"), allow_nan=False
        )
    except (TypeError, ValueError):
        return "null"


def _encode_string(text: Any) -> str:
    return json.dumps(str(text), ensure_ascii=False)


class Logger:
    """A thread-safe logger writing JSON lines to one or more text streams."""

    def __init__(
        self,
        level: Level = Level.INFO,
        writers: Iterable[IO[str]] | None = None,
        enable_caller: bool = False,
        caller_skip: int = _DEFAULT_CALLER_SKIP,
    ) -> None:
        self._level = Level(level)
        self.writers: list[Any] = list(writers) if writers is not None else [_CONSOLE]
        self.enable_caller = enable_caller
        self.caller_skip = caller_skip
        self._log_file: IO[str] | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Logger":
        """Build a logger configured from environment variables."""
        env = os.environ if environ is None else environ

        debug_flag = env.get("DEBUG", "") in _TRUE_VALUES
        level = Level.DEBUG if debug_flag else Level.INFO
        log_level = env.get("LOG_LEVEL", "")
        if log_level:
            try:
                level = parse_level(log_level)
            except ValueError:
                pass

        enable_caller = (
            env.get("LOG_ENABLE_CALLER", "") in _TRUE_VALUES
            or log_level.lower() == "debug"
            or debug_flag
        )

        caller_skip = _DEFAULT_CALLER_SKIP
        raw_skip = env.get("LOG_CALLER_SKIP", "")
        if raw_skip:
            try:
                skip = int(raw_skip)
            except ValueError:
                skip = 0
            if skip > 0:
                caller_skip = skip

        writers: list[Any] = [_CONSOLE]
        log_file = None
        path = env.get("LOG_FILE", "")
        if path:
            try:
                log_file = open(path, "w", encoding="utf-8")
            except OSError as exc:
                print(f"cannot open log file {path}: {exc}", file=sys.stderr)
            else:
                if env.get("LOG_CONSOLE") == "false":
                    writers = [log_file]
                else:
                    writers = [_CONSOLE, log_file]

        logger = cls(level, writers, enable_caller, caller_skip)
        logger._log_file = log_file
        return logger

    def close(self) -> None:
        """Close the log file opened by :meth:`from_env`, if any."""
        if self._log_file is None:
            return
        with self._lock:
            self.writers = [w for w in self.writers if w is not self._log_file]
            self._log_file.close()
            self._log_file = None

    def is_enabled_for(self, level: Level) -> bool:
        return self._level <= level

    def set_level(self, level: Level) -> None:
        self._level = Level(level)

    def format_entry(
        self,
        level: Level,
        message: str,
        fields: Mapping[str, Any],
        file: str | None = None,
        func: str | None = None,
    ) -> str:
        """Render one entry as a JSON object with a fixed key order."""
        parts = [f'{{"timestamp":"{_timestamp()}","level":"{Level(level).name}"']
        if file:
            parts.append(f',"file":{_encode_string(file)}')
        if func:
            parts.append(f',"func":{_encode_string(func)}')
        parts.append(f',"message":{_encode_string(message)}')
        for key in sorted(k for k in fields if k not in _RESERVED_KEYS):
            parts.append(f",{_encode_string(key)}:{_encode_value(fields[key])}")
        parts.append("}")
        return "".join(parts)

    def _caller(self) -> tuple[str | None, str | None]:
        frame = inspect.currentframe()
        frame = frame.f_back if frame is not None else None
        for _ in range(self.caller_skip):
            if frame is None:
                break
            frame = frame.f_back
        if frame is None:
            return None, None
        code = frame.f_code
        return f"{os.path.basename(code.co_filename)}:{frame.f_lineno}", code.co_name

    def log(self, level: Level, message: str, **kwargs: Any) -> None:
        """Write an entry; a FATAL entry then raises ``SystemExit(1)``.

        With caller information enabled, ``caller_skip`` counts the frames
        above this method: 1 for a direct call, 2 through a level method and
        3 through the module-level functions.
        """
        level = Level(level)
        if not self.is_enabled_for(level):
            return
        file = func = None
        if self.enable_caller:
            file, func = self._caller()
        line = self.format_entry(level, message, kwargs, file, func) + "\n"
        with self._lock:
            for writer in self.writers:
                writer.write(line)
                writer.flush()
        if level is Level.FATAL:
            raise SystemExit(1)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.log(Level.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self.log(Level.INFO, message, **kwargs)

    def warn(self, message: str, **kwargs: Any) -> None:
        self.log(Level.WARN, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.log(Level.ERROR, message, **kwargs)

    def fatal(self, message: str, **kwargs: Any) -> None:
        self.log(Level.FATAL, message, **kwargs)


_default = Logger.from_env()


def get_logger() -> Logger:
    """Return the process-wide default logger."""
    return _default


def set_level(level: Level) -> None:
    _default.set_level(level)


def debug(message: str, **kwargs: Any) -> None:
    _default.debug(message, **kwargs)


def info(message: str, **kwargs: Any) -> None:
    _default.info(message, **kwargs)


def warn(message: str, **kwargs: Any) -> None:
    _default.warn(message, **kwargs)


def error(message: str, **kwargs: Any) -> None:
    _default.error(message, **kwargs)


def fatal(message: str, **kwargs: Any) -> None:
    _default.fatal(message, **kwargs)


def reinitialize() -> None:
    """Rebuild the default logger from the current environment."""
    global _default
    _default.close()
    _default = Logger.from_env()