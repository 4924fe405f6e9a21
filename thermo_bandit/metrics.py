"""
Metrics collection for the recommendation engine.

Tracks:
- Recommendation latency
- Reward outcomes (accepted / overridden)
- Monitoring window lifecycle (armed / superseded / cancelled)
- Persistence outcomes (saved / retried / dropped)
"""
from __future__ import annotations

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


@dataclass
class LatencyStats:
    """Statistics for a latency measurement."""
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    # For percentile calculation (approximate)
    _samples: List[float] = field(default_factory=list)
    _max_samples: int = 1000

    def record(self, ms: float) -> None:
        """Record a latency sample."""
        self.count += 1
        self.total_ms += ms
        self.min_ms = min(self.min_ms, ms)
        self.max_ms = max(self.max_ms, ms)

        self._samples.append(ms)
        if len(self._samples) > self._max_samples:
            self._samples = self._samples[-self._max_samples:]

    @property
    def avg_ms(self) -> float:
        return self.total_ms / max(1, self.count)

    def percentile(self, p: float) -> float:
        """Get percentile (0-100)."""
        if not self._samples:
            return 0.0
        ordered = sorted(self._samples)
        idx = min(int(len(ordered) * p / 100), len(ordered) - 1)
        return ordered[idx]

    def to_dict(self) -> Dict:
        return {
            "count": self.count,
            "avg_ms": round(self.avg_ms, 3),
            "min_ms": round(self.min_ms, 3) if self.count > 0 else 0,
            "max_ms": round(self.max_ms, 3),
            "p50_ms": round(self.percentile(50), 3),
            "p95_ms": round(self.percentile(95), 3),
        }


class Counter:
    """Thread-safe counter."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, n: int = 1) -> int:
        """Increment and return new value."""
        with self._lock:
            self._value += n
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class MetricsCollector:
    """
    Per-engine metrics registry.

    Example:
        >>> metrics = MetricsCollector()
        >>> metrics.increment("rewards.accepted")
        >>> with metrics.time_operation("recommendation"):
        ...     pass
        >>> metrics.get_counter("rewards.accepted")
        1
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._start_time = datetime.now()
        self._latencies: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._counters: Dict[str, Counter] = defaultdict(Counter)

    def increment(self, counter: str, n: int = 1) -> int:
        with self._lock:
            c = self._counters[counter]
        return c.inc(n)

    def get_counter(self, counter: str) -> int:
        with self._lock:
            c = self._counters.get(counter)
        return c.value if c is not None else 0

    def record_latency(self, operation: str, ms: float) -> None:
        with self._lock:
            self._latencies[operation].record(ms)

    def time_operation(self, operation: str) -> "LatencyContext":
        """Context manager for timing an operation."""
        return LatencyContext(self, operation)

    def summary(self) -> Dict:
        uptime = (datetime.now() - self._start_time).total_seconds()
        with self._lock:
            return {
                "uptime_seconds": round(uptime, 1),
                "latencies": {op: s.to_dict() for op, s in self._latencies.items()},
                "counters": {name: c.value for name, c in self._counters.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._latencies.clear()
            self._counters.clear()
            self._start_time = datetime.now()


class LatencyContext:
    """Context manager for timing operations."""

    def __init__(self, collector: MetricsCollector, operation: str):
        self.collector = collector
        self.operation = operation
        self.start_time: Optional[float] = None

    def __enter__(self) -> "LatencyContext":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        if self.start_time is not None:
            elapsed_ms = (time.perf_counter() - self.start_time) * 1000
            self.collector.record_latency(self.operation, elapsed_ms)
