"""Simple metrics for knockroom.

This module provides:
- Request timing (recorded by the API middleware)
- Store operation timing
- Event publish counters, split by event type and outcome

Everything is in memory and exposed through the admin-only /metrics
endpoint. Nothing here ever records a token, secret or payload.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterator

logger = logging.getLogger(__name__)

SLOW_OPERATION_MS = 100


@dataclass
class TimingStats:
    """Statistics for a timed operation."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 2),
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count > 0 else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class PublishStats:
    """Outcome counts for one event type."""

    ok: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"ok": self.ok, "failed": self.failed}


@dataclass
class Metrics:
    """Process-wide metrics collector."""

    _lock: Lock = field(default_factory=Lock)
    store_operations: dict[str, TimingStats] = field(
        default_factory=lambda: defaultdict(TimingStats)
    )
    request_stats: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    publish_stats: dict[str, PublishStats] = field(default_factory=lambda: defaultdict(PublishStats))
    swept_rooms: int = 0
    _start_time: float = field(default_factory=time.time)

    def record_store_operation(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self.store_operations[operation].record(duration_ms)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self.request_stats[endpoint].record(duration_ms)

    def record_publish(self, event_type: str, ok: bool) -> None:
        with self._lock:
            stats = self.publish_stats[event_type]
            if ok:
                stats.ok += 1
            else:
                stats.failed += 1

    def record_sweep(self, count: int) -> None:
        with self._lock:
            self.swept_rooms += count

    def to_dict(self) -> dict:
        """Export metrics as a dictionary."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "store_operations": {k: v.to_dict() for k, v in self.store_operations.items()},
                "requests": {k: v.to_dict() for k, v in self.request_stats.items()},
                "publish": {k: v.to_dict() for k, v in self.publish_stats.items()},
                "swept_rooms": self.swept_rooms,
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.store_operations.clear()
            self.request_stats.clear()
            self.publish_stats.clear()
            self.swept_rooms = 0
            self._start_time = time.time()


# Global metrics instance
metrics = Metrics()


@contextmanager
def timed_store_operation(operation: str) -> Iterator[None]:
    """Time a block of store work.

    Usage:
        with timed_store_operation("register_room"):
            store.insert_room(...)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_store_operation(operation, duration_ms)
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning("Slow store operation: %s took %.1fms", operation, duration_ms)
