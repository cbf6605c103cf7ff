"""In-process metrics collection for bulk operations."""

import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .models import MetricUnit, PerformanceMetric


logger = logging.getLogger(__name__)


@dataclass
class MetricValue:
    """A metric value with metadata."""
    value: float
    timestamp: datetime
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class TimerContext:
    """Context manager for timing operations."""
    metric_name: str
    collector: 'MetricsCollector'
    labels: Dict[str, str]
    start_time: Optional[float] = None
    elapsed: Optional[float] = None

    def __enter__(self) -> 'TimerContext':
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.elapsed = time.monotonic() - self.start_time
            self.collector.record_timer(self.metric_name, self.elapsed, self.labels)


class MetricsCollector:
    """Collects counters, gauges, histograms and timers keyed by name and labels."""

    def __init__(self, retention_hours: int = 24, max_samples_per_metric: int = 10000):
        """Initialize metrics collector.

        Args:
            retention_hours: How long to keep metric samples
            max_samples_per_metric: Maximum samples to keep per metric
        """
        self.retention_hours = retention_hours
        self.max_samples_per_metric = max_samples_per_metric

        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_samples_per_metric))
        self._timers: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_samples_per_metric))

        self._cleanup_task: Optional[asyncio.Task] = None
        self._cleanup_interval = 3600

    @property
    def is_running(self) -> bool:
        return self._cleanup_task is not None

    async def start(self) -> None:
        """Start the periodic sample cleanup."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Metrics collector started")

    async def stop(self) -> None:
        """Stop the periodic sample cleanup."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info("Metrics collector stopped")

    def increment_counter(self, name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        self._counters[self._make_metric_key(name, labels)] += value

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        self._gauges[self._make_metric_key(name, labels)] = value

    def record_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        metric_key = self._make_metric_key(name, labels)
        self._histograms[metric_key].append(MetricValue(value, datetime.now(timezone.utc), labels or {}))

    def record_timer(self, name: str, duration_seconds: float, labels: Optional[Dict[str, str]] = None) -> None:
        metric_key = self._make_metric_key(name, labels)
        self._timers[metric_key].append(MetricValue(duration_seconds, datetime.now(timezone.utc), labels or {}))

    def timer(self, name: str, labels: Optional[Dict[str, str]] = None) -> TimerContext:
        """Create a timer context manager."""
        return TimerContext(name, self, labels or {})

    def record_metric(self, metric: PerformanceMetric) -> None:
        """Record a performance sample under the collector kind matching its unit."""
        if metric.unit == MetricUnit.COUNT:
            self.increment_counter(metric.name, metric.value, metric.tags)
        elif metric.unit == MetricUnit.MS:
            self.record_timer(metric.name, metric.value / 1000.0, metric.tags)
        elif metric.unit == MetricUnit.SECONDS:
            self.record_timer(metric.name, metric.value, metric.tags)
        else:
            self.record_histogram(metric.name, metric.value, metric.tags)

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self._counters.get(self._make_metric_key(name, labels), 0.0)

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        return self._gauges.get(self._make_metric_key(name, labels))

    def get_histogram_stats(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        """Get histogram statistics."""
        return self._stats(self._histograms.get(self._make_metric_key(name, labels), ()))

    def get_timer_stats(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        """Get timer statistics (seconds)."""
        return self._stats(self._timers.get(self._make_metric_key(name, labels), ()))

    def get_all_metrics(self) -> Dict[str, Any]:
        """Get all current metrics."""
        return {
            'counters': dict(self._counters),
            'gauges': dict(self._gauges),
            'histograms': {key: self._stats(samples) for key, samples in self._histograms.items()},
            'timers': {key: self._stats(samples) for key, samples in self._timers.items()},
            'timestamp': datetime.now(timezone.utc).isoformat()
        }

    @staticmethod
    def _stats(samples) -> Dict[str, float]:
        values = sorted(mv.value for mv in samples)
        if not values:
            return {}

        count = len(values)
        return {
            'count': count,
            'sum': sum(values),
            'min': values[0],
            'max': values[-1],
            'mean': sum(values) / count,
            'p50': values[int(count * 0.5)],
            'p90': values[int(count * 0.9)],
            'p99': values[int(count * 0.99)]
        }

    def _make_metric_key(self, name: str, labels: Optional[Dict[str, str]] = None) -> str:
        """Create a metric key with labels."""
        if not labels:
            return name
        label_parts = [f"{key}={value}" for key, value in sorted(labels.items())]
        return f"{name}|{','.join(label_parts)}"

    async def _cleanup_loop(self) -> None:
        """Background task to clean up old metrics."""
        while True:
            try:
                await asyncio.sleep(self._cleanup_interval)
                self.cleanup_old_samples()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in metrics cleanup: {e}")

    def cleanup_old_samples(self, now: Optional[datetime] = None) -> int:
        """Drop histogram and timer samples older than the retention window."""
        cutoff_time = (now or datetime.now(timezone.utc)) - timedelta(hours=self.retention_hours)
        cleaned_count = 0

        for store in (self._histograms, self._timers):
            for samples in store.values():
                while samples and samples[0].timestamp < cutoff_time:
                    samples.popleft()
                    cleaned_count += 1

        if cleaned_count > 0:
            logger.debug(f"Cleaned up {cleaned_count} old metric samples")
        return cleaned_count
