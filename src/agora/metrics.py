"""In-process metrics for agora, exposed via /metrics.

Four groups are collected:

- requests: latency per endpoint group (see api._endpoint_name)
- db_operations: latency of the hot queries wrapped with @timed_operation
- cache: lookups and hits per TTLCache
- fanout: outcome counters for real-time delivery

Everything is process-local and reset on restart.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from functools import wraps
from threading import Lock
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Operations slower than this are logged and counted as slow
SLOW_OPERATION_MS = 100


@dataclass
class LatencyStats:
    count: int = 0
    slow: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def observe(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        if duration_ms > self.max_ms:
            self.max_ms = duration_ms
        if duration_ms > SLOW_OPERATION_MS:
            self.slow += 1

    def to_dict(self) -> dict:
        avg = self.total_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "slow": self.slow,
            "avg_ms": round(avg, 2),
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class CacheCounts:
    lookups: int = 0
    hits: int = 0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.lookups - self.hits,
            "hit_rate_pct": round(self.hits * 100 / self.lookups, 2) if self.lookups else 0.0,
        }


@dataclass
class FanoutStats:
    """Counters for real-time delivery."""

    broadcasts: int = 0
    empty_broadcasts: int = 0
    delivered: int = 0
    pruned: int = 0
    failed: int = 0


class Metrics:
    """Process-wide collector. All updates take one lock."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.reset()

    def reset(self) -> None:
        """Clear everything (used between tests)."""
        with self._lock:
            self.requests: dict[str, LatencyStats] = defaultdict(LatencyStats)
            self.db_operations: dict[str, LatencyStats] = defaultdict(LatencyStats)
            self.caches: dict[str, CacheCounts] = defaultdict(CacheCounts)
            self.fanout = FanoutStats()
            self.started_at = time.time()

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self.requests[endpoint].observe(duration_ms)

    def record_db_operation(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self.db_operations[operation].observe(duration_ms)

    def record_cache_lookup(self, cache_name: str, hit: bool) -> None:
        with self._lock:
            counts = self.caches[cache_name]
            counts.lookups += 1
            if hit:
                counts.hits += 1

    def record_broadcast(self, delivered: int, pruned: int, failed: int) -> None:
        """Record the outcome of one fan-out."""
        with self._lock:
            stats = self.fanout
            stats.broadcasts += 1
            if not (delivered or pruned or failed):
                stats.empty_broadcasts += 1
            stats.delivered += delivered
            stats.pruned += pruned
            stats.failed += failed

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self.started_at, 1),
                "requests": {name: s.to_dict() for name, s in self.requests.items()},
                "db_operations": {name: s.to_dict() for name, s in self.db_operations.items()},
                "cache": {name: c.to_dict() for name, c in self.caches.items()},
                "fanout": asdict(self.fanout),
            }


metrics = Metrics()


def timed_operation(operation_name: str) -> Callable[[F], F]:
    """Record a sync DB function's latency under ``operation_name``.

        @timed_operation("find_subscribers")
        def find_subscribers(conversation_id: str) -> list[dict]:
            ...
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            started = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                elapsed_ms = (time.perf_counter() - started) * 1000
                metrics.record_db_operation(operation_name, elapsed_ms)
                if elapsed_ms > SLOW_OPERATION_MS:
                    logger.warning(f"Slow DB operation {operation_name}: {elapsed_ms:.1f}ms")

        return wrapper  # type: ignore

    return decorator
