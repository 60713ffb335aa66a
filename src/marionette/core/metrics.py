"""
Marionette Metrics — counters, gauges and latency windows kept in-process.

Turn, tool and provider code record into the shared `metrics` collector;
the host application reads snapshot() when it wants numbers (a debug
overlay, a health endpoint, a periodic log line).

Series are keyed by name plus optional labels, rendered as
"tool.duration_ms{tool=add}". Histograms keep a bounded window of recent
samples and compute percentiles on read.

Usage:
    from marionette.core.metrics import metrics

    metrics.inc("tool.calls", labels={"tool": "add"})
    metrics.observe("tool.duration_ms", 12.5, labels={"tool": "add"})
    metrics.gauge_inc("turn.active")
"""

from __future__ import annotations

import time
from collections import defaultdict, deque


def series_key(name: str, labels: dict | None = None) -> str:
    if not labels:
        return name
    rendered = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
    return f"{name}{{{rendered}}}"


def _rank(ordered: list[float], p: float) -> float:
    """Nearest-rank pick from already sorted samples."""
    return ordered[min(int(len(ordered) * p / 100), len(ordered) - 1)]


class MetricsCollector:
    """Counters, gauges and rolling histograms for one process."""

    HISTOGRAM_MAX_SAMPLES = 1000

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = defaultdict(float)
        self._windows: dict[str, deque[float]] = {}
        self._since = time.time()

    def inc(self, name: str, value: int = 1, labels: dict | None = None) -> None:
        self._counters[series_key(name, labels)] += value

    def counter(self, name: str, labels: dict | None = None) -> int:
        """Current count, 0 for a series never touched."""
        return self._counters.get(series_key(name, labels), 0)

    def observe(self, name: str, value: float, labels: dict | None = None) -> None:
        """Add a sample to the series window, evicting the oldest when full."""
        key = series_key(name, labels)
        window = self._windows.get(key)
        if window is None:
            window = self._windows[key] = deque(maxlen=self.HISTOGRAM_MAX_SAMPLES)
        window.append(value)

    def gauge_set(self, name: str, value: float, labels: dict | None = None) -> None:
        self._gauges[series_key(name, labels)] = value

    def gauge_inc(self, name: str, value: float = 1.0, labels: dict | None = None) -> None:
        self._gauges[series_key(name, labels)] += value

    def gauge_dec(self, name: str, value: float = 1.0, labels: dict | None = None) -> None:
        self.gauge_inc(name, -value, labels)

    def percentile(self, name: str, p: float, labels: dict | None = None) -> float | None:
        """Percentile (0-100) of the recorded samples, or None if there are none.

        Without labels the samples of every labelled variant of `name` are
        pooled together.
        """
        if labels is not None:
            pooled = list(self._windows.get(series_key(name, labels), ()))
        else:
            pooled = [
                sample
                for key, window in self._windows.items()
                if key == name or key.startswith(name + "{")
                for sample in window
            ]
        return _rank(sorted(pooled), p) if pooled else None

    def snapshot(self) -> dict:
        histograms = {}
        for key, window in self._windows.items():
            if not window:
                continue
            ordered = sorted(window)
            histograms[key] = {
                "count": len(ordered),
                "min": ordered[0],
                "max": ordered[-1],
                "p50": _rank(ordered, 50),
                "p95": _rank(ordered, 95),
            }
        return {
            "uptime_seconds": round(time.time() - self._since, 1),
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "histograms": histograms,
        }

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._windows.clear()
        self._since = time.time()


# Shared by every module in the process
metrics = MetricsCollector()
