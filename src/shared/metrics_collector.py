"""
Metrics collection for the sprint report cache.

Counters and gauges keep one value per label set, so
``cache_hits_total{tier="memory"}`` and ``cache_hits_total{tier="redis"}``
are separate values of one counter. Recent observations are retained for windowed statistics, and the whole
registry can be exported as JSON or Prometheus text.
"""

import json
import statistics
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

import psutil

from .logging_config import get_logger

Number = Union[int, float]
LabelSet = Tuple[Tuple[str, str], ...]

DEFAULT_BUCKETS = (0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, float('inf'))
SAMPLE_HISTORY = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _label_set(labels: Dict[str, Any]) -> LabelSet:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _format_labels(label_set: LabelSet) -> str:
    if not label_set:
        return ''
    return '{' + ','.join(f'{k}="{v}"' for k, v in label_set) + '}'


def _format_bound(bound: float) -> str:
    return '+Inf' if bound == float('inf') else str(bound)


class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


class MetricUnit(str, Enum):
    """Metric units."""
    COUNT = "count"
    BYTES = "bytes"
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"
    PERCENT = "percent"


@dataclass
class MetricSample:
    """One recorded value."""
    value: Number
    labels: LabelSet = ()
    timestamp: datetime = field(default_factory=_utcnow)


class Metric:
    """Base for all metric kinds: a name, a unit and recent samples."""

    metric_type: MetricType = MetricType.GAUGE

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT):
        self.name = name
        self.description = description
        self.unit = unit
        self.samples: Deque[MetricSample] = deque(maxlen=SAMPLE_HISTORY)
        self._lock = threading.Lock()

    def _remember(self, value: Number, label_set: LabelSet) -> None:
        self.samples.append(MetricSample(value=value, labels=label_set))

    def latest(self) -> Optional[MetricSample]:
        return self.samples[-1] if self.samples else None

    def window_statistics(self, window_minutes: int = 5) -> Dict[str, float]:
        """Statistics over samples recorded within the window."""
        cutoff = _utcnow() - timedelta(minutes=window_minutes)
        recent = [s.value for s in self.samples if s.timestamp >= cutoff]
        if not recent:
            return {}

        return {
            'count': len(recent),
            'sum': sum(recent),
            'min': min(recent),
            'max': max(recent),
            'mean': statistics.mean(recent),
            'median': statistics.median(recent),
        }

    def prometheus_lines(self) -> List[str]:
        raise NotImplementedError


class Counter(Metric):
    """Monotonically increasing value per label set."""

    metric_type = MetricType.COUNTER

    def __init__(self, name: str, description: str = ""):
        super().__init__(name, description, MetricUnit.COUNT)
        self._values: Dict[LabelSet, Number] = {}

    def increment(self, amount: Number = 1, **labels):
        """Increment the counter for one label set."""
        if amount < 0:
            raise ValueError(f"Counter {self.name} cannot decrease")
        label_set = _label_set(labels)
        with self._lock:
            value = self._values.get(label_set, 0) + amount
            self._values[label_set] = value
            self._remember(value, label_set)

    def get_value(self, **labels) -> Number:
        with self._lock:
            return self._values.get(_label_set(labels), 0)

    def total(self) -> Number:
        """Sum over every label set."""
        with self._lock:
            return sum(self._values.values())

    def prometheus_lines(self) -> List[str]:
        with self._lock:
            return [f"{self.name}{_format_labels(ls)} {v}" for ls, v in self._values.items()]


class Gauge(Metric):
    """Point-in-time value per label set."""

    metric_type = MetricType.GAUGE

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT):
        super().__init__(name, description, unit)
        self._values: Dict[LabelSet, Number] = {}

    def set(self, value: Number, **labels):
        label_set = _label_set(labels)
        with self._lock:
            self._values[label_set] = value
            self._remember(value, label_set)

    def get_value(self, **labels) -> Number:
        with self._lock:
            return self._values.get(_label_set(labels), 0)

    def prometheus_lines(self) -> List[str]:
        with self._lock:
            return [f"{self.name}{_format_labels(ls)} {v}" for ls, v in self._values.items()]


class Histogram(Metric):
    """Distribution of observed values with cumulative buckets."""

    metric_type = MetricType.HISTOGRAM

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT,
                 buckets: Optional[List[float]] = None):
        super().__init__(name, description, unit)
        self.buckets = sorted(buckets or DEFAULT_BUCKETS)
        if self.buckets[-1] != float('inf'):
            self.buckets.append(float('inf'))
        self._bucket_counts = {bucket: 0 for bucket in self.buckets}
        self._sum = 0
        self._count = 0

    def observe(self, value: Number, **labels):
        with self._lock:
            self._sum += value
            self._count += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1
            self._remember(value, _label_set(labels))

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'count': self._count,
                'sum': self._sum,
                'mean': self._sum / self._count if self._count > 0 else 0,
                'buckets': self._bucket_counts.copy(),
            }

    def prometheus_lines(self) -> List[str]:
        with self._lock:
            lines = [
                f'{self.name}_bucket{{le="{_format_bound(bucket)}"}} {count}'
                for bucket, count in self._bucket_counts.items()
            ]
            lines.append(f"{self.name}_sum {self._sum}")
            lines.append(f"{self.name}_count {self._count}")
            return lines


class Timer:
    """Records durations in seconds into a ``<name>_seconds`` histogram."""

    def __init__(self, histogram: Histogram):
        self.histogram = histogram

    def time(self, **labels) -> 'TimerContext':
        """Context manager for timing a block."""
        return TimerContext(self, labels)

    def record(self, duration: float, **labels):
        self.histogram.observe(duration, **labels)


class TimerContext:
    """Context manager for timing operations."""

    def __init__(self, timer: Timer, labels: Dict[str, Any]):
        self.timer = timer
        self.labels = labels
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.timer.record(time.perf_counter() - self.start_time, **self.labels)


class MetricsCollector:
    """Registry of every metric in the process."""

    _instance: Optional['MetricsCollector'] = None
    _lock = threading.Lock()

    def __init__(self):
        self.logger = get_logger(__name__, 'metrics_collector')
        self.metrics: Dict[str, Metric] = {}
        self._registry_lock = threading.Lock()
        self.started_at = _utcnow()

    @classmethod
    def get_instance(cls) -> 'MetricsCollector':
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton so the next access starts from a clean slate."""
        with cls._lock:
            cls._instance = None

    def _register(self, name: str, kind: type, factory) -> Any:
        metric = self.metrics.get(name)
        if metric is None:
            with self._registry_lock:
                metric = self.metrics.get(name)
                if metric is None:
                    metric = factory()
                    self.metrics[name] = metric
        if not isinstance(metric, kind):
            raise ValueError(f"Metric {name} is already registered as a {metric.metric_type.value}")
        return metric

    def get_counter(self, name: str, description: str = "") -> Counter:
        """Get or create a counter."""
        return self._register(name, Counter, lambda: Counter(name, description))

    def get_gauge(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT) -> Gauge:
        """Get or create a gauge."""
        return self._register(name, Gauge, lambda: Gauge(name, description, unit))

    def get_histogram(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT,
                      buckets: Optional[List[float]] = None) -> Histogram:
        """Get or create a histogram."""
        return self._register(name, Histogram, lambda: Histogram(name, description, unit, buckets))

    def get_timer(self, name: str, description: str = "") -> Timer:
        """Get a timer backed by the ``<name>_seconds`` histogram."""
        return Timer(self.get_histogram(f"{name}_seconds", description, MetricUnit.SECONDS))

    def get_metric(self, name: str) -> Optional[Metric]:
        return self.metrics.get(name)

    def get_metrics_summary(self, window_minutes: int = 5) -> Dict[str, Any]:
        """Latest value and windowed statistics of every metric."""
        summary: Dict[str, Any] = {
            'total_metrics': len(self.metrics),
            'started_at': self.started_at.isoformat(),
            'metrics': {},
        }

        for name, metric in sorted(self.metrics.items()):
            latest = metric.latest()
            summary['metrics'][name] = {
                'type': metric.metric_type.value,
                'unit': metric.unit.value,
                'description': metric.description,
                'latest_value': latest.value if latest else None,
                'latest_labels': dict(latest.labels) if latest else {},
                'statistics': metric.window_statistics(window_minutes),
            }

        return summary

    def export_metrics(self, format_type: str = 'json') -> str:
        """Export metrics in specified format."""
        if format_type == 'json':
            return json.dumps(self.get_metrics_summary(), default=str, indent=2)
        elif format_type == 'prometheus':
            return self._export_prometheus_format()
        else:
            raise ValueError(f"Unsupported format: {format_type}")

    def _export_prometheus_format(self) -> str:
        lines = []
        for name, metric in sorted(self.metrics.items()):
            samples = metric.prometheus_lines()
            if not samples:
                continue
            lines.append(f"# HELP {name} {metric.description or name}")
            lines.append(f"# TYPE {name} {metric.metric_type.value}")
            lines.extend(samples)
        return '\n'.join(lines)

    def set_cache_hit_rate(self, cache_name: str, hit_rate: float):
        """Publish a cache hit rate (0..1) as a percentage gauge."""
        self.get_gauge('cache_hit_rate', 'Cache hit rate', MetricUnit.PERCENT).set(hit_rate * 100, cache=cache_name)


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    return MetricsCollector.get_instance()


def get_process_memory() -> Dict[str, int]:
    """Resident and virtual memory of the current process, in bytes."""
    memory = psutil.Process().memory_info()
    return {'rss_bytes': memory.rss, 'vms_bytes': memory.vms}
