"""
In-process billing metrics in Prometheus text format
"""
import time
from collections import defaultdict
from threading import Lock
from typing import Dict, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in (labels or {}).items()))


def _render_labels(key: LabelKey, extra: str = "") -> str:
    parts = [f'{k}="{v}"' for k, v in key]
    if extra:
        parts.append(extra)
    return "{" + ",".join(parts) + "}" if parts else ""


class MetricsCollector:
    """
    Thread-safe counters and duration summaries

    Durations keep the last 1000 observations per series.
    """

    MAX_OBSERVATIONS = 1000

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, Dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
        self._durations: Dict[str, Dict[LabelKey, list]] = defaultdict(lambda: defaultdict(list))

    def increment_counter(self, name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            self._counters[name][_label_key(labels)] += value

    def record_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            series = self._durations[name][_label_key(labels)]
            series.append(value)
            if len(series) > self.MAX_OBSERVATIONS:
                del series[:-self.MAX_OBSERVATIONS]

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels), 0.0)

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._durations.clear()

    def format_prometheus(self) -> str:
        lines = []
        with self._lock:
            for name in sorted(self._counters):
                for key, value in sorted(self._counters[name].items()):
                    lines.append(f"{name}{_render_labels(key)} {value}")

            for name in sorted(self._durations):
                for key, values in sorted(self._durations[name].items()):
                    if not values:
                        continue
                    ordered = sorted(values)
                    lines.append(f"{name}_count{_render_labels(key)} {len(ordered)}")
                    lines.append(f"{name}_sum{_render_labels(key)} {sum(ordered)}")
                    for quantile in (0.5, 0.95, 0.99):
                        index = min(int(len(ordered) * quantile), len(ordered) - 1)
                        labels = _render_labels(key, 'quantile="%s"' % quantile)
                        lines.append(f"{name}{labels} {ordered[index]}")
        return "\n".join(lines) + "\n"


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector instance"""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def increment_counter(name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None):
    get_metrics_collector().increment_counter(name, value, labels)


def record_histogram(name: str, value: float, labels: Optional[Dict[str, str]] = None):
    get_metrics_collector().record_histogram(name, value, labels)


class JobTimer:
    """Context manager recording a scheduled job's duration and outcome"""

    def __init__(self, job: str):
        self.job = job
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.start_time
        outcome = "error" if exc_type else "ok"
        record_histogram("billing_job_duration_seconds", duration, {"job": self.job})
        increment_counter("billing_job_runs_total", labels={"job": self.job, "outcome": outcome})
        return False
