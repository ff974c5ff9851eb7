"""
Log Aggregator

Bounded, newest-first buffer of proxy decisions and errors shown in the
control panel. Every entry is mirrored to the stdlib logger so it also lands
in the rotating log file.
"""
import json
import logging
import secrets
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from chatrelay.core.events import EventBus, LOG_APPENDED

event_logger = logging.getLogger("chatrelay.events")

DEFAULT_CAPACITY = 10_000
DAY_MS = 24 * 60 * 60 * 1000


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def now_ms() -> int:
    return int(time.time() * 1000)


class LogEntry(BaseModel):
    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: f"{now_ms()}-{secrets.token_hex(4)}")
    timestamp: int = Field(default_factory=now_ms)
    level: LogLevel
    message: str
    account_id: Optional[str] = None
    provider_id: Optional[str] = None
    request_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class LogFilter(BaseModel):
    level: Optional[LogLevel] = None
    keyword: Optional[str] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    offset: int = 0
    limit: Optional[int] = None


class LogStats(BaseModel):
    total: int = 0
    debug: int = 0
    info: int = 0
    warn: int = 0
    error: int = 0


class LogTrendPoint(BaseModel):
    date: str
    total: int = 0
    debug: int = 0
    info: int = 0
    warn: int = 0
    error: int = 0


def filter_entries(entries: List[LogEntry], log_filter: LogFilter) -> List[LogEntry]:
    """Apply a filter to an already newest-first list of entries."""
    result = entries
    if log_filter.level is not None:
        result = [e for e in result if e.level == log_filter.level]
    if log_filter.keyword:
        keyword = log_filter.keyword.lower()
        result = [e for e in result if keyword in e.message.lower()]
    if log_filter.start_time is not None:
        result = [e for e in result if e.timestamp >= log_filter.start_time]
    if log_filter.end_time is not None:
        result = [e for e in result if e.timestamp <= log_filter.end_time]
    result = result[log_filter.offset:]
    if log_filter.limit is not None:
        result = result[:log_filter.limit]
    return result


class LogAggregator:
    def __init__(self, capacity: int = DEFAULT_CAPACITY, events: Optional[EventBus] = None):
        if capacity < 1:
            raise ValueError("Log capacity must be at least 1")
        self._entries: Deque[LogEntry] = deque(maxlen=capacity)
        self._lock = Lock()
        self._events = events

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: LogEntry) -> LogEntry:
        with self._lock:
            # newest first; a full deque drops the oldest entry from the right
            self._entries.appendleft(entry)

        event_logger.log(_STDLIB_LEVELS[entry.level], entry.message)
        if self._events is not None:
            self._events.publish(LOG_APPENDED, entry.model_dump(mode="json"))
        return entry

    def log(
        self,
        level: LogLevel,
        message: str,
        account_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        request_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> LogEntry:
        return self.append(LogEntry(
            level=level,
            message=message,
            account_id=account_id,
            provider_id=provider_id,
            request_id=request_id,
            data=data,
        ))

    def debug(self, message: str, **context) -> LogEntry:
        return self.log(LogLevel.DEBUG, message, **context)

    def info(self, message: str, **context) -> LogEntry:
        return self.log(LogLevel.INFO, message, **context)

    def warn(self, message: str, **context) -> LogEntry:
        return self.log(LogLevel.WARN, message, **context)

    def error(self, message: str, **context) -> LogEntry:
        return self.log(LogLevel.ERROR, message, **context)

    def entries(self) -> List[LogEntry]:
        with self._lock:
            return list(self._entries)

    def query(self, log_filter: Optional[LogFilter] = None) -> List[LogEntry]:
        return filter_entries(self.entries(), log_filter or LogFilter())

    def get(self, entry_id: str) -> Optional[LogEntry]:
        for entry in self.entries():
            if entry.id == entry_id:
                return entry
        return None

    def stats(self) -> LogStats:
        stats = LogStats()
        for entry in self.entries():
            stats.total += 1
            setattr(stats, entry.level.value, getattr(stats, entry.level.value) + 1)
        return stats

    def trend(
        self, days: int = 7, now: Optional[datetime] = None, account_id: Optional[str] = None
    ) -> List[LogTrendPoint]:
        """
        Per-level counts for each of the trailing `days` calendar days (UTC), oldest first.

        With account_id only that account's request entries are counted.
        """
        if days < 1:
            return []
        today = (now or datetime.now(timezone.utc)).date()
        points: Dict[str, LogTrendPoint] = {}
        for offset in range(days - 1, -1, -1):
            key = (today - timedelta(days=offset)).isoformat()
            points[key] = LogTrendPoint(date=key)

        for entry in self.entries():
            if account_id is not None and (entry.account_id != account_id or entry.request_id is None):
                continue
            key = datetime.fromtimestamp(entry.timestamp / 1000, tz=timezone.utc).date().isoformat()
            point = points.get(key)
            if point is None:
                continue
            point.total += 1
            setattr(point, entry.level.value, getattr(point, entry.level.value) + 1)
        return list(points.values())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def prune(self, retention_days: int, now: Optional[int] = None) -> int:
        """Drop entries older than the retention window. Returns how many were removed."""
        cutoff = (now if now is not None else now_ms()) - retention_days * DAY_MS
        with self._lock:
            kept = [e for e in self._entries if e.timestamp >= cutoff]
            removed = len(self._entries) - len(kept)
            self._entries.clear()
            self._entries.extend(kept)
        return removed

    def export(self, fmt: str = "json") -> str:
        entries = self.entries()
        if fmt == "json":
            return json.dumps([e.model_dump(mode="json") for e in entries], indent=2)
        if fmt != "txt":
            raise ValueError(f"Unsupported export format: {fmt}")

        lines = []
        for entry in entries:
            stamp = datetime.fromtimestamp(entry.timestamp / 1000, tz=timezone.utc).isoformat()
            line = f"[{stamp}] [{entry.level.value.upper():<5}] {entry.message}"
            if entry.provider_id:
                line += f" | Provider: {entry.provider_id}"
            if entry.account_id:
                line += f" | Account: {entry.account_id}"
            if entry.request_id:
                line += f" | Request: {entry.request_id}"
            if entry.data:
                line += f" | Data: {json.dumps(entry.data)}"
            lines.append(line)
        return "\n".join(lines)
