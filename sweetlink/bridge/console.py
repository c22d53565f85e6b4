from __future__ import annotations

import json
import logging
import threading
import traceback
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from ..config import MAX_CONSOLE_LOGS
from ..protocol import now_ms

LEVELS = ("log", "debug", "info", "warn", "error")

# Loggers whose records would echo the bridge's own traffic back to it.
_IGNORED_LOGGERS = ("sweetlink", "websockets")


@dataclass(frozen=True, slots=True)
class ConsoleLogEntry:
    level: str
    message: str
    timestamp: int
    source: str | None = None
    stack: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"level": self.level, "message": self.message, "timestamp": self.timestamp}
        if self.source:
            out["source"] = self.source
        if self.stack:
            out["stack"] = self.stack
        return out


def format_arg(arg: Any) -> str:
    if isinstance(arg, str):
        return arg
    if isinstance(arg, BaseException):
        return f"{type(arg).__name__}: {arg}"
    if isinstance(arg, (dict, list, tuple)):
        try:
            return json.dumps(arg, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(arg)
    return str(arg)


def format_args(args: Iterable[Any]) -> str:
    return " ".join(format_arg(a) for a in args)


class LogRingBuffer:
    """Fixed-capacity console history; the oldest entry is dropped when full."""

    def __init__(self, capacity: int = MAX_CONSOLE_LOGS) -> None:
        self.capacity = max(1, int(capacity))
        self._entries: deque[ConsoleLogEntry] = deque(maxlen=self.capacity)
        self._lock = threading.Lock()

    def append(self, entry: ConsoleLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def record(self, level: str, *args: Any, source: str | None = None, stack: str | None = None) -> ConsoleLogEntry:
        entry = ConsoleLogEntry(level=level, message=format_args(args), timestamp=now_ms(), source=source, stack=stack)
        self.append(entry)
        return entry

    def entries(self) -> list[ConsoleLogEntry]:
        with self._lock:
            return list(self._entries)

    def filter(self, term: str | None) -> list[ConsoleLogEntry]:
        """Entries whose level equals ``term`` or whose message contains it (case-insensitive)."""
        entries = self.entries()
        if not term:
            return entries
        needle = term.lower()
        return [e for e in entries if e.level == needle or needle in e.message.lower()]

    def errors(self) -> list[ConsoleLogEntry]:
        return [e for e in self.entries() if e.level == "error"]

    def warnings(self) -> list[ConsoleLogEntry]:
        return [e for e in self.entries() if e.level == "warn"]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def level_for_record(record: logging.LogRecord) -> str:
    if record.levelno >= logging.ERROR:
        return "error"
    if record.levelno >= logging.WARNING:
        return "warn"
    if record.levelno >= logging.INFO:
        return "info"
    return "debug"


class ConsoleCaptureHandler(logging.Handler):
    """Mirror the host process's log records into a ``LogRingBuffer``."""

    def __init__(
        self,
        buffer: LogRingBuffer,
        *,
        on_entry: Callable[[ConsoleLogEntry], None] | None = None,
        level: int = logging.DEBUG,
    ) -> None:
        super().__init__(level=level)
        self.buffer = buffer
        self.on_entry = on_entry

    def _ignored(self, record: logging.LogRecord) -> bool:
        name = record.name or ""
        return any(name == n or name.startswith(n + ".") for n in _IGNORED_LOGGERS)

    def emit(self, record: logging.LogRecord) -> None:
        if self._ignored(record):
            return
        try:
            stack = None
            if record.exc_info and record.exc_info[0] is not None:
                stack = "".join(traceback.format_exception(*record.exc_info))
            entry = ConsoleLogEntry(
                level=level_for_record(record),
                message=record.getMessage(),
                timestamp=int(record.created * 1000),
                source=record.name,
                stack=stack,
            )
            self.buffer.append(entry)
            if self.on_entry is not None:
                self.on_entry(entry)
        except Exception:  # noqa: BLE001
            self.handleError(record)
