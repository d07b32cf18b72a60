"""
In-process metrics for InfraShare.

Counters cover the settlement flow (distributions and claims created, claim
transitions, rollbacks, payment initiation failures, reconciliation
discrepancies) plus HTTP traffic; gauges hold storage availability and
in-flight requests; histograms hold request latency. ``GET /metrics``
renders everything in the Prometheus text format under the ``infrashare_``
prefix.
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

METRICS_PREFIX = "infrashare"

# Request latency bucket bounds, ms
DEFAULT_BUCKETS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)


def _escape(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


@dataclass
class HistogramBucket:
    """Cumulative count of observations <= le."""

    le: float
    count: int = 0


@dataclass
class Histogram:
    """A histogram over fixed buckets (cumulative counts)."""

    name: str
    buckets: list[HistogramBucket] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.buckets:
            self.buckets = [HistogramBucket(le=b) for b in DEFAULT_BUCKETS]
            self.buckets.append(HistogramBucket(le=float("inf")))

    def observe(self, value: float) -> None:
        """Record an observation."""
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1


class MetricsCollector:
    """
    Labelled counters, gauges and latency histograms behind one lock.

    Services take a collector in their constructor so tests can pass a
    fresh one and assert on ``get_counter``.
    """

    def __init__(self, prefix: str = METRICS_PREFIX):
        self.prefix = prefix
        self._lock = threading.RLock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

    @staticmethod
    def _labels_key(labels: dict[str, str] | None) -> str:
        """Convert labels dict to a hashable key in Prometheus label syntax."""
        if not labels:
            return ""
        return ",".join(f'{k}="{_escape(v)}"' for k, v in sorted(labels.items()))

    # Counter operations

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        """Increment a counter."""
        with self._lock:
            self._counters[name][self._labels_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        """Get current counter value (0 if never incremented)."""
        with self._lock:
            values = self._counters.get(name)
            return values.get(self._labels_key(labels), 0) if values else 0

    # Gauge operations

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] = value

    def increment_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] += value

    def decrement_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] -= value

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            values = self._gauges.get(name)
            return values.get(self._labels_key(labels), 0.0) if values else 0.0

    # Histogram operations

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        """Add a latency sample (ms) to the labelled histogram."""
        with self._lock:
            key = self._labels_key(labels)
            if key not in self._histograms[name]:
                self._histograms[name][key] = Histogram(name=name)
            self._histograms[name][key].observe(value_ms)

    # Export methods

    def get_all(self) -> dict[str, Any]:
        """Snapshot for the JSON metrics endpoint."""

        def flatten(values: dict[str, Any]) -> Any:
            if len(values) == 1 and "" in values:
                return values[""]
            return dict(values)

        with self._lock:
            return {
                "uptime_seconds": time.time() - self._start_time,
                "counters": {name: flatten(v) for name, v in self._counters.items()},
                "gauges": {name: flatten(v) for name, v in self._gauges.items()},
                "histograms": {
                    name: {
                        (key or "_total"): {
                            "count": hist.count,
                            "sum": hist.sum,
                            "avg": hist.sum / hist.count if hist.count else 0,
                            "buckets": {str(b.le): b.count for b in hist.buckets},
                        }
                        for key, hist in histograms.items()
                    }
                    for name, histograms in self._histograms.items()
                },
            }

    def to_prometheus(self) -> str:
        """Render the Prometheus exposition text."""
        lines = []

        def sample(metric: str, key: str, value: Any) -> str:
            return f"{metric}{{{key}}} {value}" if key else f"{metric} {value}"

        with self._lock:
            uptime_name = f"{self.prefix}_uptime_seconds"
            lines.append(f"# HELP {uptime_name} Time since application start")
            lines.append(f"# TYPE {uptime_name} gauge")
            lines.append(f"{uptime_name} {time.time() - self._start_time:.2f}")
            lines.append("")

            for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in series.items():
                    metric_name = f"{self.prefix}_{name}"
                    lines.append(f"# TYPE {metric_name} {kind}")
                    lines.extend(sample(metric_name, key, value) for key, value in values.items())
                    lines.append("")

            for name, histograms in self._histograms.items():
                metric_name = f"{self.prefix}_{name}"
                lines.append(f"# TYPE {metric_name} histogram")
                for key, hist in histograms.items():
                    for bucket in hist.buckets:
                        le_val = "+Inf" if bucket.le == float("inf") else bucket.le
                        bucket_key = f'{key},le="{le_val}"' if key else f'le="{le_val}"'
                        lines.append(sample(f"{metric_name}_bucket", bucket_key, bucket.count))
                    lines.append(sample(f"{metric_name}_sum", key, f"{hist.sum:.2f}"))
                    lines.append(sample(f"{metric_name}_count", key, hist.count))
                lines.append("")

        return "\n".join(lines)


# Process-wide collector used by default
metrics = MetricsCollector()
