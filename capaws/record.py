"""Process-wide event recorder with a one-shot initialiser."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


class EventRecorder(Protocol):
    """Anything able to record events about an object."""

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None: ...

    def eventf(self, obj: Any, event_type: str, reason: str, message: str, *args: Any) -> None: ...


@dataclass
class FakeRecorder:
    """Recorder that keeps every event as a ``"<type> <reason> <message>"`` line."""

    events: list[str] = field(default_factory=list)

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        self.events.append(f"{event_type} {reason} {message}")

    def eventf(self, obj: Any, event_type: str, reason: str, message: str, *args: Any) -> None:
        text = message % args if args else message
        self.events.append(f"{event_type} {reason} {text}")


class _Default:
    """Holds the process-wide recorder; it can be replaced only once."""

    def __init__(self) -> None:
        self.recorder: EventRecorder = FakeRecorder()
        self._initialized = False
        self._lock = threading.Lock()

    def init(self, recorder: EventRecorder) -> None:
        with self._lock:
            if not self._initialized:
                self.recorder = recorder
                self._initialized = True


_DEFAULT = _Default()


def _is_separator(ch: str) -> bool:
    if ch.isascii():
        return not (ch.isalnum() or ch == "_")
    if ch.isalpha() or ch.isdigit():
        return False
    return ch.isspace()


def _title(text: str) -> str:
    """Upper-case the first letter of every word, leaving the rest untouched."""
    out = []
    prev = " "
    for ch in text:
        out.append(ch.upper() if _is_separator(prev) else ch)
        prev = ch
    return "".join(out)


def init_from_recorder(recorder: EventRecorder) -> None:
    """Install the global recorder. Only the first call has any effect."""
    _DEFAULT.init(recorder)


def event(obj: Any, reason: str, message: str) -> None:
    """Record a normal event."""
    _DEFAULT.recorder.event(obj, EVENT_TYPE_NORMAL, _title(reason), message)


def eventf(obj: Any, reason: str, message: str, *args: Any) -> None:
    """Record a normal event whose message is formatted with ``args``."""
    _DEFAULT.recorder.eventf(obj, EVENT_TYPE_NORMAL, _title(reason), message, *args)


def warn(obj: Any, reason: str, message: str) -> None:
    """Record a warning event."""
    _DEFAULT.recorder.event(obj, EVENT_TYPE_WARNING, _title(reason), message)


def warnf(obj: Any, reason: str, message: str, *args: Any) -> None:
    """Record a warning event whose message is formatted with ``args``."""
    _DEFAULT.recorder.eventf(obj, EVENT_TYPE_WARNING, _title(reason), message, *args)