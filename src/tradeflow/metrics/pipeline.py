"""In-process pipeline counters, gauges and rolling latency series."""

from __future__ import annotations

import time
from collections import Counter, deque
from contextlib import contextmanager
from threading import Lock
from typing import Any, Iterator

# Counters every snapshot reports, even at zero.
COUNTERS = (
    "events_ingested",
    "decode_failures",
    "overlap_dropped",
    "reconnects",
    "stale_disconnects",
    "backpressure_waits",
    "events_published",
    "publish_retries",
    "publish_failures",
    "publish_rejected",
    "events_abandoned",
    "records_consumed",
    "dedup_hits",
    "rows_written",
    "storage_write_failures",
    "batches_committed",
    "commit_failures",
    "poll_failures",
)


class LatencySeries:
    """Rolling window of millisecond samples with summary stats."""

    def __init__(self, maxlen: int = 1024) -> None:
        self._samples: deque[float] = deque(maxlen=maxlen)
        self.count = 0

    def push(self, ms: float) -> None:
        self._samples.append(ms)
        self.count += 1

    def _quantile(self, ordered: list[float], q: float) -> float:
        idx = min(len(ordered) - 1, max(0, int(round(q * (len(ordered) - 1)))))
        return ordered[idx]

    def summary(self) -> dict[str, float | int | None]:
        if not self._samples:
            return {"count": self.count, "avg": None, "p50": None, "p99": None, "max": None}
        ordered = sorted(self._samples)
        return {
            "count": self.count,
            "avg": round(sum(ordered) / len(ordered), 3),
            "p50": round(self._quantile(ordered, 0.5), 3),
            "p99": round(self._quantile(ordered, 0.99), 3),
            "max": round(ordered[-1], 3),
        }


class UpdateRateCounter:
    """Count events per second (rolling)."""

    def __init__(self, window_sec: float = 10.0) -> None:
        self._window = window_sec
        self._times: deque[float] = deque()

    def hit(self) -> None:
        now = time.monotonic()
        self._times.append(now)
        self._trim(now)

    def _trim(self, now: float) -> None:
        while self._times and self._times[0] < now - self._window:
            self._times.popleft()

    @property
    def rate(self) -> float:
        self._trim(time.monotonic())
        return len(self._times) / self._window if self._window > 0 else 0.0


class PipelineMetrics:
    """Observability surface shared by the pipeline components.

    One instance per pipeline, passed to each component's constructor.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter({name: 0 for name in COUNTERS})
        self._gauges: dict[str, Any] = {}
        self._latency: dict[str, LatencySeries] = {}
        self._ingest_rate = UpdateRateCounter()
        self.started_at = time.time()

    def inc(self, name: str, n: int = 1) -> None:
        with self._lock:
            self._counters[name] += n
        if name == "events_ingested":
            self._ingest_rate.hit()

    def get(self, name: str) -> int:
        return self._counters[name]

    def set_gauge(self, name: str, value: Any) -> None:
        with self._lock:
            self._gauges[name] = value

    def gauge(self, name: str, default: Any = None) -> Any:
        return self._gauges.get(name, default)

    def observe_ms(self, name: str, ms: float) -> None:
        with self._lock:
            series = self._latency.get(name)
            if series is None:
                series = self._latency[name] = LatencySeries()
            series.push(ms)

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Record the wall time of the block in milliseconds, including when it raises."""
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.observe_ms(name, (time.perf_counter() - t0) * 1000.0)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            latency = {name: s.summary() for name, s in self._latency.items()}
        return {
            "uptime_sec": round(time.time() - self.started_at, 1),
            "ingest_rate_per_sec": round(self._ingest_rate.rate, 2),
            "counters": counters,
            "gauges": gauges,
            "latency_ms": latency,
        }
