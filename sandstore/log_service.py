"""Levelled, per-node event logging to local log files."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

DEBUG_LEVEL = "DEBUG"
INFO_LEVEL = "INFO"
WARN_LEVEL = "WARN"
ERROR_LEVEL = "ERROR"

DEBUG_LEVEL_VALUE = 1
INFO_LEVEL_VALUE = 2
WARN_LEVEL_VALUE = 3
ERROR_LEVEL_VALUE = 4

_LEVEL_VALUES = {
    DEBUG_LEVEL: DEBUG_LEVEL_VALUE,
    INFO_LEVEL: INFO_LEVEL_VALUE,
    WARN_LEVEL: WARN_LEVEL_VALUE,
    ERROR_LEVEL: ERROR_LEVEL_VALUE,
}


def get_level_value(level: str) -> int:
    """Return the numeric severity of a level name; unknown names count as INFO."""
    return _LEVEL_VALUES.get(level, INFO_LEVEL_VALUE)


@dataclass
class LogEvent:
    """A single log record."""

    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None
    node_id: str = ""


def _rfc3339(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.astimezone()
    text = ts.replace(microsecond=0).isoformat()
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


def format_log(level: str, event: LogEvent) -> str:
    """Render an event as one log line, ending in a newline."""
    ts = event.timestamp or datetime.now(timezone.utc)
    meta = "".join(f"{key}={value} " for key, value in (event.metadata or {}).items())
    return f"{_rfc3339(ts)} [{event.node_id}] {level}: {event.message} {meta}\n"


class LogService(ABC):
    """Sink for log events at four severities."""

    @abstractmethod
    def debug(self, event: LogEvent) -> None: ...

    @abstractmethod
    def info(self, event: LogEvent) -> None: ...

    @abstractmethod
    def warn(self, event: LogEvent) -> None: ...

    @abstractmethod
    def error(self, event: LogEvent) -> None: ...


class LocalDiscLogService(LogService):
    """Appends formatted events to ``<log_dir>/<node_id>.log``."""

    def __init__(self, log_dir, node_id: str, min_log_level: str | None = None) -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.node_id = node_id
        self.path = self.log_dir / f"{node_id}.log"
        self._file = open(self.path, "a", encoding="utf-8")
        self._lock = threading.Lock()
        self._min_level = DEBUG_LEVEL_VALUE
        self._filter_enabled = False
        if min_log_level:
            self.set_min_log_level(min_log_level)

    def set_min_log_level(self, level: str) -> None:
        """Only write events at or above ``level`` from now on."""
        with self._lock:
            self._min_level = get_level_value(level.strip().upper())
            self._filter_enabled = True

    def disable_filtering(self) -> None:
        """Write events of every level."""
        with self._lock:
            self._filter_enabled = False

    def _should_log(self, level: str) -> bool:
        if not self._filter_enabled:
            return True
        return get_level_value(level) >= self._min_level

    def _log(self, level: str, event: LogEvent) -> None:
        if not self._should_log(level):
            return
        with self._lock:
            if self._file.closed:
                return
            self._file.write(format_log(level, replace(event, node_id=self.node_id)))
            self._file.flush()

    def debug(self, event: LogEvent) -> None:
        self._log(DEBUG_LEVEL, event)

    def info(self, event: LogEvent) -> None:
        self._log(INFO_LEVEL, event)

    def warn(self, event: LogEvent) -> None:
        self._log(WARN_LEVEL, event)

    def error(self, event: LogEvent) -> None:
        self._log(ERROR_LEVEL, event)

    def close(self) -> None:
        """Close the underlying log file."""
        with self._lock:
            self._file.close()

    def __enter__(self) -> "LocalDiscLogService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()