"""Operation audit trail: structured log entries, analytics and metrics."""

from .models import (
    LogLevel,
    LogCategory,
    MetricUnit,
    ContextSnapshot,
    LogMetadata,
    LogEntry,
    AnalyticsEvent,
    PerformanceMetric,
    RecoveryAction
)
from .metrics import MetricsCollector, TimerContext
from .sinks import (
    LogPersistenceLayer,
    InMemoryLogStore,
    FileLogStore,
    AnalyticsSink,
    InMemoryAnalyticsSink,
    NullAnalyticsSink
)
from .logger import OperationLogger, FALLBACK_LOGGER_NAME

__all__ = [
    'LogLevel',
    'LogCategory',
    'MetricUnit',
    'ContextSnapshot',
    'LogMetadata',
    'LogEntry',
    'AnalyticsEvent',
    'PerformanceMetric',
    'RecoveryAction',
    'MetricsCollector',
    'TimerContext',
    'LogPersistenceLayer',
    'InMemoryLogStore',
    'FileLogStore',
    'AnalyticsSink',
    'InMemoryAnalyticsSink',
    'NullAnalyticsSink',
    'OperationLogger',
    'FALLBACK_LOGGER_NAME'
]
