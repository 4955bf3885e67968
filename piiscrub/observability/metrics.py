"""
In-process metrics collection.

Counters and histograms live in memory behind one lock and can be read as
a JSON-friendly snapshot or as Prometheus text.  The token pruner reports
``prune_tokens.start`` / ``.error`` / ``.complete`` through
:meth:`MetricsCollector.increment` and the pass duration through
:meth:`MetricsCollector.observe`; any object with the same methods can
stand in for the collector.
"""

import bisect
import threading
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

# Upper bounds for duration histograms, in milliseconds.
DURATION_BUCKETS_MS: Tuple[float, ...] = (1, 5, 10, 50, 100, 500, 1000, 5000, 30000)


class MetricsSink(Protocol):
    def increment(self, name: str, amount: float = 1.0) -> None:
        ...


def _series(name: str, labels: Optional[Dict[str, str]]) -> str:
    """``name{k="v",...}`` with labels sorted, or just ``name``."""
    if not labels:
        return name
    rendered = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
    return f"{name}{{{rendered}}}"


def _prom_name(series: str) -> str:
    """Prometheus names may not contain dots; label values are left alone."""
    name, brace, labels = series.partition("{")
    return name.replace(".", "_") + brace + labels


class _Histogram:
    __slots__ = ("bounds", "counts", "count", "total")

    def __init__(self, bounds: Tuple[float, ...] = DURATION_BUCKETS_MS):
        self.bounds = bounds
        # One slot per bound plus the +Inf overflow slot; not cumulative.
        self.counts = [0] * (len(bounds) + 1)
        self.count = 0
        self.total = 0.0

    def observe(self, value: float) -> None:
        self.counts[bisect.bisect_left(self.bounds, value)] += 1
        self.count += 1
        self.total += value

    def cumulative(self) -> List[Tuple[str, int]]:
        out, running = [], 0
        for bound, n in zip(self.bounds + (float("inf"),), self.counts):
            running += n
            out.append(("+Inf" if bound == float("inf") else f"{bound:g}", running))
        return out


class MetricsCollector:
    """Thread-safe in-process metrics store (process-wide singleton).

    Usage::

        mc = MetricsCollector()
        mc.increment("prune_tokens.start")
        mc.observe("prune_tokens.duration_ms", 42.5)
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "MetricsCollector":
        with cls._lock:
            if cls._instance is None:
                inst = super().__new__(cls)
                inst._mutex = threading.Lock()
                inst._counters = {}
                inst._histograms = {}
                inst._started = time.time()
                cls._instance = inst
            return cls._instance

    def increment(
        self, name: str, amount: float = 1.0, *, labels: Optional[Dict[str, str]] = None
    ) -> None:
        key = _series(name, labels)
        with self._mutex:
            self._counters[key] = self._counters.get(key, 0.0) + amount

    def observe(self, name: str, value: float, *, labels: Optional[Dict[str, str]] = None) -> None:
        key = _series(name, labels)
        with self._mutex:
            hist = self._histograms.get(key)
            if hist is None:
                hist = self._histograms[key] = _Histogram()
            hist.observe(value)

    def counter(self, name: str, *, labels: Optional[Dict[str, str]] = None) -> float:
        """Current value of a counter (0 if never incremented)."""
        with self._mutex:
            return self._counters.get(_series(name, labels), 0.0)

    def uptime(self) -> float:
        return time.time() - self._started

    # ── Export ───────────────────────────────────────────────────

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly view of every series."""
        with self._mutex:
            return {
                "uptime_seconds": round(self.uptime(), 1),
                "counters": dict(self._counters),
                "histograms": {
                    key: {
                        "count": h.count,
                        "sum": round(h.total, 2),
                        "avg": round(h.total / h.count, 2) if h.count else 0,
                        "buckets": dict(h.cumulative()),
                    }
                    for key, h in self._histograms.items()
                },
            }

    def prometheus_exposition(self) -> str:
        """Prometheus text exposition format."""
        lines = [
            "# TYPE uptime_seconds gauge",
            f"uptime_seconds {self.uptime():.1f}",
        ]
        with self._mutex:
            for key in sorted(self._counters):
                lines.append(f"{_prom_name(key)} {self._counters[key]}")
            for key in sorted(self._histograms):
                h = self._histograms[key]
                name, _, labels = _prom_name(key).partition("{")
                labels = labels.rstrip("}")
                sep = "," if labels else ""
                for le, n in h.cumulative():
                    lines.append(f'{name}_bucket{{{labels}{sep}le="{le}"}} {n}')
                suffix = f"{{{labels}}}" if labels else ""
                lines.append(f"{name}_sum{suffix} {h.total:.2f}")
                lines.append(f"{name}_count{suffix} {h.count}")
        return "\n".join(lines) + "\n"

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (for tests)."""
        with cls._lock:
            cls._instance = None
