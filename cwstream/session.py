"""Tracking of a single conversation session."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from .stream_types import EventType, SessionInfo, SSEEvent


def _now() -> datetime:
    return datetime.now().astimezone()


def _rfc3339(moment: datetime) -> str:
    text = moment.isoformat(timespec="seconds")
    if text.endswith("+00:00"):
        return text[:-6] + "Z"
    return text


class SessionManager:
    """Holds the session id and its start and end times."""

    def __init__(self) -> None:
        self.session_id = str(uuid.uuid4())
        self.start_time = _now()
        self.end_time: datetime | None = None
        self._active = False

    def start(self) -> list[SSEEvent]:
        """Mark the session active and return its start event."""
        self._active = True
        self.start_time = _now()
        return [
            SSEEvent(
                EventType.SESSION_START,
                {
                    "type": EventType.SESSION_START,
                    "session_id": self.session_id,
                    "timestamp": _rfc3339(self.start_time),
                },
            )
        ]

    def end(self) -> list[SSEEvent]:
        """Mark the session ended and return its end event with the duration in ms."""
        now = _now()
        self.end_time = now
        self._active = False
        return [
            SSEEvent(
                EventType.SESSION_END,
                {
                    "type": EventType.SESSION_END,
                    "session_id": self.session_id,
                    "timestamp": _rfc3339(now),
                    "duration": (now - self.start_time) // timedelta(milliseconds=1),
                },
            )
        ]

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def info(self) -> SessionInfo:
        return SessionInfo(self.session_id, self.start_time, self.end_time)

    def reset(self) -> None:
        self.session_id = str(uuid.uuid4())
        self.start_time = _now()
        self.end_time = None
        self._active = False