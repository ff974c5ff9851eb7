"""
Proxy Statistics

Accumulates terminal request outcomes: totals, average latency, a trailing
60-second request rate and per-model / per-provider / per-account counts.
"""
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field


@dataclass
class RequestOutcome:
    model: str
    success: bool
    latency_ms: float
    provider_id: Optional[str] = None
    account_id: Optional[str] = None
    error_type: Optional[str] = None


class ProxyStatistics(BaseModel):
    total_requests: int = 0
    success_requests: int = 0
    failed_requests: int = 0
    avg_latency_ms: float = 0.0
    requests_per_minute: int = 0
    active_connections: int = 0
    model_usage: Dict[str, int] = Field(default_factory=dict)
    provider_usage: Dict[str, int] = Field(default_factory=dict)
    account_usage: Dict[str, int] = Field(default_factory=dict)


class RateWindow:
    """Fixed ring of one-second buckets covering the trailing `size` seconds."""

    def __init__(self, size: int = 60, clock: Callable[[], float] = time.time):
        self._size = size
        self._clock = clock
        self._counts: List[int] = [0] * size
        self._seconds: List[int] = [-1] * size

    def add(self, count: int = 1) -> None:
        second = int(self._clock())
        idx = second % self._size
        if self._seconds[idx] != second:
            self._seconds[idx] = second
            self._counts[idx] = 0
        self._counts[idx] += count

    def total(self) -> int:
        now = int(self._clock())
        return sum(
            count
            for count, second in zip(self._counts, self._seconds)
            if 0 <= now - second < self._size
        )

    def clear(self) -> None:
        self._counts = [0] * self._size
        self._seconds = [-1] * self._size


class StatisticsAggregator:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._lock = Lock()
        self._clock = clock
        self._reset()

    def _reset(self) -> None:
        self._total = 0
        self._success = 0
        self._failed = 0
        self._latency_sum = 0.0
        self._latency_count = 0
        self._active = 0
        self._window = RateWindow(60, self._clock)
        self._model_usage: Dict[str, int] = {}
        self._provider_usage: Dict[str, int] = {}
        self._account_usage: Dict[str, int] = {}

    def begin(self) -> None:
        with self._lock:
            self._active += 1

    def end(self) -> None:
        with self._lock:
            self._active = max(0, self._active - 1)

    def record(self, outcome: RequestOutcome) -> None:
        """Count one terminal outcome. Retries of the same request must not call this."""
        with self._lock:
            self._total += 1
            if outcome.success:
                self._success += 1
            else:
                self._failed += 1
            self._latency_sum += outcome.latency_ms
            self._latency_count += 1
            self._window.add()

            _bump(self._model_usage, outcome.model)
            if outcome.provider_id:
                _bump(self._provider_usage, outcome.provider_id)
            if outcome.account_id:
                _bump(self._account_usage, outcome.account_id)

    def snapshot(self) -> ProxyStatistics:
        with self._lock:
            avg = self._latency_sum / self._latency_count if self._latency_count else 0.0
            return ProxyStatistics(
                total_requests=self._total,
                success_requests=self._success,
                failed_requests=self._failed,
                avg_latency_ms=round(avg, 1),
                requests_per_minute=self._window.total(),
                active_connections=self._active,
                model_usage=dict(self._model_usage),
                provider_usage=dict(self._provider_usage),
                account_usage=dict(self._account_usage),
            )

    def clear(self) -> None:
        with self._lock:
            active = self._active
            self._reset()
            self._active = active


def _bump(counter: Dict[str, int], key: str) -> None:
    counter[key] = counter.get(key, 0) + 1
