"""Structured operation logger.

Every logged event becomes exactly one immutable ``LogEntry`` which is
persisted to the configured persistence layer, forwarded as exactly one
analytics event, and mirrored to the stdlib logger. Metric emissions go to
the ``MetricsCollector``. Failures of any of these outputs are reported on
the fallback logger and never reach the caller.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from ..errors.taxonomy import CategorizedError
from ..models.config import LoggerConfig
from ..state.stages import stage_name
from .metrics import MetricsCollector
from .models import (
    AnalyticsEvent,
    ContextSnapshot,
    LogCategory,
    LogEntry,
    LogLevel,
    LogMetadata,
    MetricUnit,
    PerformanceMetric,
    RecoveryAction,
)
from .sinks import AnalyticsSink, InMemoryLogStore, LogPersistenceLayer, NullAnalyticsSink


logger = logging.getLogger(__name__)

FALLBACK_LOGGER_NAME = "bulkops.oplog.fallback"

_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}


def _json_safe(value: Any) -> Any:
    """Coerce arbitrary detail payloads into JSON-compatible values."""
    return json.loads(json.dumps(value, default=str))


def _as_milliseconds(metric: PerformanceMetric) -> Optional[float]:
    """Value of a time sample in milliseconds, None for other units."""
    if metric.unit == MetricUnit.MS:
        return metric.value
    if metric.unit == MetricUnit.SECONDS:
        return metric.value * 1000.0
    return None


class OperationLogger:
    """Audit trail, analytics and metrics for bulk operations."""

    def __init__(
        self,
        persistence: Optional[LogPersistenceLayer] = None,
        analytics: Optional[AnalyticsSink] = None,
        metrics: Optional[MetricsCollector] = None,
        config: Optional[LoggerConfig] = None,
        fallback_logger: Optional[logging.Logger] = None
    ):
        """Initialize the operation logger.

        Args:
            persistence: Log persistence layer (default: in-memory)
            analytics: Analytics sink (default: discard)
            metrics: Metrics collector
            config: Thresholds and analytics naming
            fallback_logger: Logger receiving entries that failed to persist
        """
        self.config = config or LoggerConfig()
        self.persistence = persistence or InMemoryLogStore(self.config.max_entries_per_operation)
        self.analytics = analytics or NullAnalyticsSink()
        self.metrics = metrics or MetricsCollector()
        self.fallback_logger = fallback_logger or logging.getLogger(FALLBACK_LOGGER_NAME)

    async def start(self) -> None:
        """Start background retention cleanup of metric samples."""
        await self.metrics.start()

    async def close(self) -> None:
        await self.metrics.stop()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def log_operation_start(self, context, stage: Optional[str] = None) -> LogEntry:
        """Record the start of an operation stage."""
        stage = stage_name(stage or context.current_stage)
        entry = self._create_entry(
            level=LogLevel.INFO,
            category=LogCategory.OPERATION,
            message=f"Starting operation stage: {stage}",
            context=context,
            stage=stage,
            resource_count=context.resource_count
        )
        await self._persist_and_track(entry)
        self._emit(lambda m: m.increment_counter("operation_start", labels={"stage": stage}))
        return entry

    async def log_error(self, error: CategorizedError, context) -> LogEntry:
        """Record a categorized error with its details and stack trace."""
        extra: Dict[str, Any] = {"error": _json_safe(error.to_dict())}
        if error.stack_trace:
            extra["stack_trace"] = error.stack_trace

        entry = self._create_entry(
            level=LogLevel.ERROR,
            category=LogCategory.ERROR,
            message=error.message,
            context=context,
            snapshot_extra=extra,
            error_category=error.category.value,
            recovery_strategy=error.recovery_strategy.value,
            metadata_extra={"code": error.code, "error_type": error.error_type.value}
        )
        await self._persist_and_track(entry)

        def emit(m: MetricsCollector) -> None:
            m.increment_counter("errors_total", labels={"category": error.category.value, "code": error.code})
            m.increment_counter("recovery_attempts", labels={"strategy": error.recovery_strategy.value})

        self._emit(emit)
        return entry

    async def log_recovery_action(self, action: RecoveryAction, context, success: bool) -> LogEntry:
        """Record the outcome of a recovery attempt."""
        entry = self._create_entry(
            level=LogLevel.INFO if success else LogLevel.WARN,
            category=LogCategory.RECOVERY,
            message=f"Recovery action {action.type}: {'succeeded' if success else 'failed'}",
            context=context,
            snapshot_extra={"action": _json_safe(action.model_dump()), "success": success},
            duration=action.duration,
            recovery_strategy=action.strategy
        )
        await self._persist_and_track(entry)

        def emit(m: MetricsCollector) -> None:
            m.increment_counter(
                "recovery_action",
                labels={"type": action.type, "success": "true" if success else "false"}
            )
            if action.duration is not None:
                m.record_timer("recovery_duration", action.duration, {"type": action.type})

        self._emit(emit)
        return entry

    async def log_performance_metric(self, metric: PerformanceMetric, context) -> LogEntry:
        """Record a performance sample; severity follows the metric thresholds."""
        entry = self._create_entry(
            level=self.metric_severity(metric),
            category=LogCategory.PERFORMANCE,
            message=f"Performance metric: {metric.name} = {metric.value}{metric.unit.value}",
            context=context,
            snapshot_extra={"metric": metric.model_dump(mode="json")},
            duration=_as_milliseconds(metric),
            metadata_extra={"metric": metric.name, "unit": metric.unit.value}
        )
        await self._persist_and_track(entry)
        self._emit(lambda m: m.record_metric(metric))
        return entry

    async def log_operation_complete(self, context, duration: float, success: bool = True) -> LogEntry:
        """Record the end of an operation.

        Args:
            context: Execution context
            duration: Wall time of the operation in seconds
            success: Whether the operation completed without being undone
        """
        duration_ms = duration * 1000.0
        level = self._severity("operation_duration", duration_ms)
        if not success:
            level = LogLevel.ERROR

        entry = self._create_entry(
            level=level,
            category=LogCategory.OPERATION,
            message=(
                f"Operation {'completed' if success else 'failed'} in {duration:.2f}s "
                f"with {context.resource_count} resource(s)"
            ),
            context=context,
            duration=duration_ms,
            resource_count=context.resource_count,
            metadata_extra={"success": success}
        )
        await self._persist_and_track(entry)

        def emit(m: MetricsCollector) -> None:
            m.record_timer("operation_duration", duration, {"success": str(success).lower()})
            m.set_gauge("resource_count", context.resource_count, {"operation_id": context.operation_id})
            m.increment_counter("operations_completed", labels={"success": str(success).lower()})

        self._emit(emit)
        return entry

    async def timeline(self, operation_id: str) -> List[LogEntry]:
        """Persisted entries of an operation, oldest first."""
        entries = await self.persistence.entries_for(operation_id)
        return sorted(entries, key=lambda e: e.timestamp)

    # ------------------------------------------------------------------
    # Severity
    # ------------------------------------------------------------------

    def metric_severity(self, metric: PerformanceMetric) -> LogLevel:
        """Severity of a sample; time samples are compared in milliseconds."""
        value = _as_milliseconds(metric)
        return self._severity(metric.name, metric.value if value is None else value)

    def _severity(self, name: str, value: float) -> LogLevel:
        threshold = self.config.metric_thresholds.get(name)
        if threshold is None:
            return LogLevel.INFO
        if value > threshold.critical:
            return LogLevel.CRITICAL
        if value > threshold.warning:
            return LogLevel.WARN
        return LogLevel.INFO

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_entry(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        context,
        stage: Optional[str] = None,
        snapshot_extra: Optional[Dict[str, Any]] = None,
        metadata_extra: Optional[Dict[str, Any]] = None,
        **metadata: Any
    ) -> LogEntry:
        snapshot = ContextSnapshot(
            resources={
                kind: sorted(keys)
                for kind, keys in context.mapping_view().items()
            },
            error_count=len(context.errors),
            warning_count=len(context.warnings),
            extra=snapshot_extra or {}
        )
        return LogEntry(
            level=level,
            category=category,
            message=message,
            context=snapshot,
            metadata=LogMetadata(
                operation_id=context.operation_id,
                stage=stage_name(stage or context.current_stage),
                extra=metadata_extra or {},
                **metadata
            )
        )

    def _analytics_event(self, entry: LogEntry) -> AnalyticsEvent:
        properties = entry.metadata.model_dump(mode="json")
        properties.update({
            "level": entry.level.value,
            "message": entry.message,
            "context": entry.context.model_dump(mode="json")
        })
        return AnalyticsEvent(
            event_name=f"{self.config.analytics_event_prefix}_{entry.category.value.lower()}",
            properties=properties,
            timestamp=entry.timestamp
        )

    async def _persist_and_track(self, entry: LogEntry) -> None:
        logger.log(
            _STDLIB_LEVELS[entry.level],
            f"[{entry.metadata.operation_id}] {entry.category.value}: {entry.message}"
        )

        try:
            event = self._analytics_event(entry)
        except Exception as e:
            self.fallback_logger.error(f"Failed to build analytics event for {entry.id}: {e}")
            event = None

        outputs = [self.persistence.store(entry)]
        if event is not None:
            outputs.append(self.analytics.track(event))

        results = await asyncio.gather(*outputs, return_exceptions=True)
        for name, result in zip(("persistence", "analytics"), results):
            if isinstance(result, BaseException):
                self.fallback_logger.error(f"Failed to write log entry {entry.id} to {name}: {result}")
                self.fallback_logger.info(f"Log entry: {entry!r}")

    def _emit(self, emit) -> None:
        try:
            emit(self.metrics)
        except Exception as e:
            self.fallback_logger.error(f"Failed to record metrics: {e}")
