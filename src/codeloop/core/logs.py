"""Operational event log shown by ``/logs``, with secret redaction.

Events arrive two ways: the shell records them explicitly through
:meth:`LogBuffer.record`, and :class:`LogBufferHandler` bridges warnings from the
``codeloop`` loggers so transport and dispatch problems show up without the
shell having to know about them.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import Counter, deque
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Literal

LogCategory = Literal["agent", "tool", "permission", "transport", "system"]
LogSeverity = Literal["info", "warning", "error"]

VALID_CATEGORIES: set[str] = {"agent", "tool", "permission", "transport", "system"}
VALID_SEVERITIES: set[str] = {"info", "warning", "error"}

_API_KEY_PATTERN = re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}")
_BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-~+/=]{8,}")

# Logger name prefix -> category, most specific first.
_LOGGER_CATEGORIES: tuple[tuple[str, LogCategory], ...] = (
    ("codeloop.core.llm", "transport"),
    ("codeloop.core.permissions", "permission"),
    ("codeloop.core.dispatcher", "tool"),
    ("codeloop.core.tools", "tool"),
    ("codeloop.core.agent_loop", "agent"),
)


def mask_secret(token: str) -> str:
    if len(token) <= 8:
        return "••••"
    return f"{token[:4]}…{token[-4:]}"


def redact(text: str) -> str:
    """Mask API-key-like tokens in ``text``."""
    text = _API_KEY_PATTERN.sub(lambda match: mask_secret(match.group(0)), text)
    return _BEARER_PATTERN.sub(lambda match: f"{match.group(1)}••••", text)


def _normalize(value: str, allowed: set[str], fallback: str) -> str:
    lowered = value.lower()
    return lowered if lowered in allowed else fallback


@dataclass(slots=True, frozen=True)
class LogEntry:
    timestamp: datetime
    category: LogCategory
    severity: LogSeverity
    message: str

    def as_dict(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "category": self.category,
            "severity": self.severity,
            "message": self.message,
        }


class LogBuffer:
    """Bounded, thread-safe FIFO of recent events. Oldest entries fall off first."""

    def __init__(self, *, max_entries: int = 200, redaction_enabled: bool = True) -> None:
        self.max_entries = max(max_entries, 1)
        self._redaction_enabled = redaction_enabled
        self._entries: deque[LogEntry] = deque(maxlen=self.max_entries)
        self._subscribers: list[Callable[[LogEntry], None]] = []
        self._lock = threading.Lock()

    def record(self, category: str, message: str, *, severity: str = "info") -> LogEntry:
        entry = LogEntry(
            timestamp=datetime.now(UTC),
            category=_normalize(category, VALID_CATEGORIES, "system"),  # type: ignore[arg-type]
            severity=_normalize(severity, VALID_SEVERITIES, "info"),  # type: ignore[arg-type]
            message=redact(message) if self._redaction_enabled else message,
        )
        with self._lock:
            self._entries.append(entry)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(entry)
        return entry

    def recent(self, *, category: str | None = None, limit: int = 50) -> list[LogEntry]:
        if limit <= 0:
            return []
        with self._lock:
            entries = list(self._entries)
        if category is not None:
            wanted = _normalize(category, VALID_CATEGORIES, "system")
            entries = [entry for entry in entries if entry.category == wanted]
        return entries[-limit:]

    def latest(self) -> LogEntry | None:
        with self._lock:
            return self._entries[-1] if self._entries else None

    def severity_counts(self) -> dict[str, int]:
        with self._lock:
            counts = Counter(entry.severity for entry in self._entries)
        return {severity: counts.get(severity, 0) for severity in ("info", "warning", "error")}

    def subscribe(self, callback: Callable[[LogEntry], None]) -> None:
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[LogEntry], None]) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)


def category_for_logger(name: str) -> LogCategory:
    for prefix, category in _LOGGER_CATEGORIES:
        if name == prefix or name.startswith(f"{prefix}."):
            return category
    return "system"


class LogBufferHandler(logging.Handler):
    """Copies ``codeloop`` log records into a :class:`LogBuffer`."""

    def __init__(self, buffer: LogBuffer, level: int = logging.WARNING) -> None:
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            if record.levelno >= logging.ERROR:
                severity = "error"
            elif record.levelno >= logging.WARNING:
                severity = "warning"
            else:
                severity = "info"
            self.buffer.record(category_for_logger(record.name), record.getMessage(), severity=severity)
        except Exception:  # noqa: BLE001
            self.handleError(record)


__all__ = [
    "LogBuffer",
    "LogBufferHandler",
    "LogCategory",
    "LogEntry",
    "LogSeverity",
    "VALID_CATEGORIES",
    "VALID_SEVERITIES",
    "category_for_logger",
    "mask_secret",
    "redact",
]
