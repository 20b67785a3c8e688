"""
Kudos Integrity - In-process Metrics

Thread-safe counters, gauges and latency histograms with Prometheus text
export. There is no module-level collector: the process entry point creates
one MetricsCollector and hands it to the engine and the Flask app.

Metric names used by the engine:
    verifications_total{status}
    verification_rejections_total{guard}
    verification_replays_total
    recognitions_created_total
    recognition_rejections_total{guard}
    abuse_flags_total{flag_type}
    http_requests_total{method,path,status}
    http_request_duration_ms{method,path}
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

DEFAULT_PREFIX = "kudos_"
LATENCY_BOUNDS_MS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)


@dataclass
class HistogramBucket:
    le: float
    count: int = 0


@dataclass
class Histogram:
    """Cumulative-bucket histogram; bounds are in milliseconds."""

    name: str
    buckets: list[HistogramBucket] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.buckets:
            self.buckets = [HistogramBucket(le=b) for b in LATENCY_BOUNDS_MS]
            self.buckets.append(HistogramBucket(le=float("inf")))

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1


class MetricsCollector:
    """
    Collects counters, gauges and histograms keyed by name and label set.

    Args:
        prefix: Prepended to every metric name in the Prometheus export
    """

    def __init__(self, prefix: str = DEFAULT_PREFIX):
        self.prefix = prefix
        self._lock = threading.RLock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

    @staticmethod
    def _labels_key(labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    # Counters

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[name][self._labels_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters[name].get(self._labels_key(labels), 0)

    # Gauges

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] = value

    def increment_gauge(self, name: str, value: float = 1.0, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] += value

    def decrement_gauge(self, name: str, value: float = 1.0, labels: dict[str, str] | None = None) -> None:
        self.increment_gauge(name, -value, labels)

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges[name].get(self._labels_key(labels), 0.0)

    # Histograms

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            key = self._labels_key(labels)
            if key not in self._histograms[name]:
                self._histograms[name][key] = Histogram(name=name)
            self._histograms[name][key].observe(value_ms)

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        """Time the enclosed block into histogram ``name``."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    # Export

    def get_all(self) -> dict[str, Any]:
        """Snapshot as a plain dict (for the JSON health view)."""
        with self._lock:
            histograms: dict[str, dict[str, Any]] = {}
            for name, by_key in self._histograms.items():
                histograms[name] = {
                    (key or "_total"): {
                        "count": h.count,
                        "sum": h.sum,
                        "avg": h.sum / h.count if h.count else 0,
                    }
                    for key, h in by_key.items()
                }
            return {
                "uptime_seconds": time.time() - self._start_time,
                "counters": {name: _collapse(values) for name, values in self._counters.items()},
                "gauges": {name: _collapse(values) for name, values in self._gauges.items()},
                "histograms": histograms,
            }

    def to_prometheus(self) -> str:
        """Render every metric in Prometheus text exposition format."""
        p = self.prefix
        lines = [
            f"# HELP {p}uptime_seconds Time since application start",
            f"# TYPE {p}uptime_seconds gauge",
            f"{p}uptime_seconds {time.time() - self._start_time:.2f}",
            "",
        ]

        with self._lock:
            for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in series.items():
                    lines.append(f"# TYPE {p}{name} {kind}")
                    lines.extend(_sample(f"{p}{name}", key, value) for key, value in values.items())
                    lines.append("")

            for name, by_key in self._histograms.items():
                metric = f"{p}{name}"
                lines.append(f"# TYPE {metric} histogram")
                for key, hist in by_key.items():
                    for bucket in hist.buckets:
                        le = "+Inf" if bucket.le == float("inf") else bucket.le
                        labels = f'{key},le="{le}"' if key else f'le="{le}"'
                        lines.append(f"{metric}_bucket{{{labels}}} {bucket.count}")
                    lines.append(_sample(f"{metric}_sum", key, f"{hist.sum:.2f}"))
                    lines.append(_sample(f"{metric}_count", key, hist.count))
                lines.append("")

        return "\n".join(lines)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()


def _collapse(values: dict[str, Any]) -> Any:
    """An unlabeled series exports as a bare value, a labeled one as a dict."""
    if len(values) == 1 and "" in values:
        return values[""]
    return dict(values)


def _sample(metric: str, key: str, value: Any) -> str:
    return f"{metric}{{{key}}} {value}" if key else f"{metric} {value}"
