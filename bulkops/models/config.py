"""Pydantic models for engine configuration.

This module defines the configuration surface of the bulk-operation engine:
queue throttling and retry settings, recovery routing policy, and operation
logger thresholds and persistence options.
"""

from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class QueueConfig(BaseModel):
    """Throttling and retry configuration for the request queue.

    All durations are expressed in seconds.
    """

    max_requests_per_minute: int = Field(
        default=3000,
        ge=1,
        le=1_000_000,
        description="Maximum dispatches inside a rolling one-minute window"
    )

    max_concurrent_requests: int = Field(
        default=5,
        ge=1,
        le=500,
        description="Maximum units of work in flight at any time"
    )

    minimum_delay: float = Field(
        default=0.1,
        ge=0.0,
        le=60.0,
        description="Minimum spacing between two consecutive dispatches"
    )

    retry_limit: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Maximum number of retries after the first attempt"
    )

    initial_retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=600.0,
        description="Base delay for the first retry"
    )

    max_retry_delay: float = Field(
        default=60.0,
        ge=0.0,
        le=3600.0,
        description="Upper bound for any retry delay"
    )

    backoff_factor: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Exponential growth factor between retries"
    )

    jitter_ratio: float = Field(
        default=0.2,
        ge=0.0,
        lt=1.0,
        description="Uniform jitter applied around the computed retry delay"
    )

    poll_interval: float = Field(
        default=0.1,
        gt=0.0,
        le=5.0,
        description="Sleep interval while a rate or concurrency ceiling is saturated"
    )

    history_sweep_interval: float = Field(
        default=60.0,
        gt=0.0,
        le=3600.0,
        description="Interval of the periodic purge of the rolling dispatch window"
    )

    @model_validator(mode='after')
    def validate_retry_delays(self):
        """Ensure the retry delay ceiling is not below the base delay."""
        if self.max_retry_delay < self.initial_retry_delay:
            raise ValueError("max_retry_delay must be >= initial_retry_delay")
        return self


class RecoveryConfig(BaseModel):
    """Policy used by the classifier and the recovery handlers."""

    retry_ceiling: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Recovery-level retry attempts allowed per failed unit"
    )

    escalate_failed_rollback: bool = Field(
        default=True,
        description="Open a manual intervention when a compensating call fails"
    )

    immediate_retry_delay: float = Field(
        default=0.0,
        ge=0.0,
        le=60.0,
        description="Wait before an IMMEDIATE_RETRY is re-submitted"
    )


class MetricThreshold(BaseModel):
    """Warning and critical thresholds for a single performance metric."""

    warning: float
    critical: float

    @model_validator(mode='after')
    def validate_order(self):
        """Critical threshold must not be below the warning threshold."""
        if self.critical < self.warning:
            raise ValueError("critical threshold must be >= warning threshold")
        return self


def default_metric_thresholds() -> Dict[str, MetricThreshold]:
    """Default severity thresholds keyed by metric name."""
    return {
        "operation_duration": MetricThreshold(warning=5000, critical=10000),
        "error_rate": MetricThreshold(warning=0.1, critical=0.25),
        "resource_count": MetricThreshold(warning=1000, critical=5000),
    }


class LoggerConfig(BaseModel):
    """Operation logger configuration."""

    log_dir: Optional[Path] = Field(
        default=None,
        description="Directory for the JSON-lines audit trail (None = in-memory)"
    )

    retention_days: int = Field(
        default=30,
        ge=1,
        le=3650,
        description="Days to keep persisted operation timelines"
    )

    max_entries_per_operation: int = Field(
        default=10000,
        ge=1,
        description="Maximum persisted log entries per operation"
    )

    analytics_event_prefix: str = Field(
        default="bulk_operation",
        min_length=1,
        description="Prefix of analytics event names"
    )

    metric_thresholds: Dict[str, MetricThreshold] = Field(
        default_factory=default_metric_thresholds,
        description="Severity thresholds for performance samples"
    )

    @field_validator('analytics_event_prefix')
    @classmethod
    def validate_prefix(cls, v):
        """Event prefixes are used as identifiers and must not contain spaces."""
        if any(ch.isspace() for ch in v):
            raise ValueError("analytics_event_prefix must not contain whitespace")
        return v


class EngineConfig(BaseModel):
    """Complete engine configuration."""

    environment: str = Field(default="production", description="Active environment name")
    queue: QueueConfig = Field(default_factory=QueueConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    logging: LoggerConfig = Field(default_factory=LoggerConfig)
    snapshot_dir: Optional[Path] = Field(
        default=None,
        description="Directory for persisted state snapshots (None = in-memory)"
    )
