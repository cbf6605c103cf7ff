"""Engine data models package."""

from .config import (
    QueueConfig,
    RecoveryConfig,
    LoggerConfig,
    MetricThreshold,
    EngineConfig,
    default_metric_thresholds
)

__all__ = [
    'QueueConfig',
    'RecoveryConfig',
    'LoggerConfig',
    'MetricThreshold',
    'EngineConfig',
    'default_metric_thresholds'
]
