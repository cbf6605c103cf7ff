"""Unit tests for the structured operation logger."""

import logging
import os
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from bulkops.errors import ApiError, ErrorClassifier
from bulkops.models.config import LoggerConfig
from bulkops.oplog import (
    FALLBACK_LOGGER_NAME,
    FileLogStore,
    InMemoryAnalyticsSink,
    InMemoryLogStore,
    LogCategory,
    LogLevel,
    MetricUnit,
    OperationLogger,
    PerformanceMetric,
    RecoveryAction,
)


@pytest.fixture
def analytics():
    return InMemoryAnalyticsSink()


@pytest.fixture
def store():
    return InMemoryLogStore()


@pytest.fixture
def oplog(store, analytics):
    return OperationLogger(persistence=store, analytics=analytics)


class TestOperationLogger:
    """Test cases for entries and analytics events."""

    @pytest.mark.asyncio
    async def test_operation_start(self, oplog, store, analytics, context):
        context.record_resource("campaign", "c1", "c-1")

        entry = await oplog.log_operation_start(context)

        assert entry.level == LogLevel.INFO
        assert entry.category == LogCategory.OPERATION
        assert entry.message == "Starting operation stage: VALIDATION"
        assert entry.metadata.operation_id == "op-test"
        assert entry.metadata.resource_count == 1
        assert entry.context.resources == {"campaign": ["c1"]}
        assert await store.entries_for("op-test") == [entry]
        assert [e.event_name for e in analytics.events] == ["bulk_operation_operation"]
        assert oplog.metrics.get_counter("operation_start", {"stage": "VALIDATION"}) == 1

    @pytest.mark.asyncio
    async def test_one_analytics_event_per_entry(self, oplog, store, analytics, context):
        error = ErrorClassifier().classify(ApiError("bad name", status_code=400), context)

        await oplog.log_operation_start(context)
        await oplog.log_error(error, context)
        await oplog.log_recovery_action(RecoveryAction(type="rollback", strategy="PARTIAL_ROLLBACK"), context, True)
        await oplog.log_performance_metric(PerformanceMetric(name="batch_size", value=20), context)
        await oplog.log_operation_complete(context, 1.5)

        entries = await store.entries_for("op-test")
        assert len(entries) == 5
        assert len(analytics.events) == 5
        assert [e.event_name for e in analytics.events] == [
            "bulk_operation_operation",
            "bulk_operation_error",
            "bulk_operation_recovery",
            "bulk_operation_performance",
            "bulk_operation_operation",
        ]

    @pytest.mark.asyncio
    async def test_custom_event_prefix(self, store, analytics, context):
        oplog = OperationLogger(store, analytics, config=LoggerConfig(analytics_event_prefix="campaign_clone"))

        await oplog.log_operation_start(context)

        assert analytics.events[0].event_name == "campaign_clone_operation"

    @pytest.mark.asyncio
    async def test_error_entry(self, oplog, context):
        error = ErrorClassifier().classify(ApiError("Budget too low", status_code=400, code="BUDGET"), context)

        entry = await oplog.log_error(error, context)

        assert entry.level == LogLevel.ERROR
        assert entry.message == "Budget too low"
        assert entry.metadata.error_category == "API_ERROR"
        assert entry.metadata.recovery_strategy == "MANUAL_INTERVENTION"
        assert entry.metadata.extra["code"] == "BUDGET"
        assert entry.context.extra["error"]["error_type"] == "VALIDATION"
        assert entry.context.error_count == 1
        assert oplog.metrics.get_counter("errors_total", {"category": "API_ERROR", "code": "BUDGET"}) == 1

    @pytest.mark.asyncio
    async def test_failed_recovery_is_warning(self, oplog, context):
        action = RecoveryAction(type="rollback", strategy="FULL_ROLLBACK", duration=0.25, details={"x": object()})

        entry = await oplog.log_recovery_action(action, context, success=False)

        assert entry.level == LogLevel.WARN
        assert entry.message == "Recovery action rollback: failed"
        assert entry.metadata.duration == 0.25
        assert oplog.metrics.get_timer_stats("recovery_duration", {"type": "rollback"})["count"] == 1

    @pytest.mark.asyncio
    async def test_entries_mirrored_to_stdlib_logging(self, oplog, context, caplog):
        await oplog.log_operation_start(context)

        assert any(
            record.name == "bulkops.oplog.logger" and "Starting operation stage" in record.getMessage()
            for record in caplog.records
        )


class TestMetricSeverity:
    """Test cases for threshold based severity."""

    @pytest.mark.parametrize("value, expected", [
        (4000, LogLevel.INFO),
        (5000, LogLevel.INFO),
        (6000, LogLevel.WARN),
        (11000, LogLevel.CRITICAL),
    ])
    @pytest.mark.asyncio
    async def test_duration_thresholds(self, oplog, context, value, expected):
        metric = PerformanceMetric(name="operation_duration", value=value, unit=MetricUnit.MS)

        entry = await oplog.log_performance_metric(metric, context)

        assert entry.level == expected

    @pytest.mark.parametrize("seconds, expected", [
        (4.0, LogLevel.INFO),
        (6.0, LogLevel.WARN),
        (11.0, LogLevel.CRITICAL),
    ])
    @pytest.mark.asyncio
    async def test_second_samples_compared_in_milliseconds(self, oplog, context, seconds, expected):
        metric = PerformanceMetric(name="operation_duration", value=seconds, unit=MetricUnit.SECONDS)

        entry = await oplog.log_performance_metric(metric, context)

        assert entry.level == expected
        assert entry.metadata.duration == pytest.approx(seconds * 1000.0)

    def test_unknown_metric_is_info(self, oplog):
        assert oplog.metric_severity(PerformanceMetric(name="anything", value=1e9)) == LogLevel.INFO

    @pytest.mark.asyncio
    async def test_slow_operation_completion(self, oplog, context):
        entry = await oplog.log_operation_complete(context, 12.0)

        assert entry.level == LogLevel.CRITICAL
        assert entry.metadata.duration == pytest.approx(12000.0)

    @pytest.mark.asyncio
    async def test_failed_operation_completion(self, oplog, context):
        entry = await oplog.log_operation_complete(context, 0.5, success=False)

        assert entry.level == LogLevel.ERROR
        assert entry.message.startswith("Operation failed")
        assert oplog.metrics.get_counter("operations_completed", {"success": "false"}) == 1


class TestLoggerFailures:
    """Output failures are reported on the fallback logger and never raised."""

    @pytest.mark.asyncio
    async def test_persistence_failure(self, analytics, context, caplog):
        persistence = AsyncMock(spec=InMemoryLogStore)
        persistence.store.side_effect = OSError("disk full")
        oplog = OperationLogger(persistence=persistence, analytics=analytics)

        with caplog.at_level(logging.INFO, logger=FALLBACK_LOGGER_NAME):
            entry = await oplog.log_operation_start(context)

        assert len(analytics.events) == 1
        fallback = [r for r in caplog.records if r.name == FALLBACK_LOGGER_NAME]
        assert any("disk full" in r.getMessage() for r in fallback)
        assert any(entry.id in r.getMessage() for r in fallback)

    @pytest.mark.asyncio
    async def test_analytics_failure(self, store, context, caplog):
        analytics = AsyncMock(spec=InMemoryAnalyticsSink)
        analytics.track.side_effect = ConnectionError("analytics offline")
        oplog = OperationLogger(persistence=store, analytics=analytics)

        entry = await oplog.log_operation_start(context)

        assert await store.entries_for("op-test") == [entry]
        assert any(
            r.name == FALLBACK_LOGGER_NAME and "analytics offline" in r.getMessage()
            for r in caplog.records
        )

    @pytest.mark.asyncio
    async def test_in_memory_cap(self, analytics, context):
        store = InMemoryLogStore(max_entries_per_operation=2)
        oplog = OperationLogger(persistence=store, analytics=analytics)

        for _ in range(3):
            await oplog.log_operation_start(context)

        assert len(await store.entries_for("op-test")) == 2
        assert store.dropped == 1
        assert len(analytics.events) == 3


class TestFileLogStore:
    """Test cases for the JSON-lines timeline store."""

    @pytest.mark.asyncio
    async def test_timeline_round_trip(self, tmp_path, context):
        oplog = OperationLogger(persistence=FileLogStore(tmp_path))
        await oplog.log_operation_start(context)
        await oplog.log_operation_complete(context, 0.2)

        reader = OperationLogger(persistence=FileLogStore(tmp_path))
        timeline = await reader.timeline("op-test")

        assert [e.message for e in timeline][0] == "Starting operation stage: VALIDATION"
        assert timeline[1].message.startswith("Operation completed")
        assert await reader.persistence.list_operations() == ["op-test"]

    @pytest.mark.asyncio
    async def test_cap_survives_reopen(self, tmp_path, context):
        oplog = OperationLogger(persistence=FileLogStore(tmp_path, max_entries_per_operation=2))
        await oplog.log_operation_start(context)
        await oplog.log_operation_start(context)

        reopened = FileLogStore(tmp_path, max_entries_per_operation=2)
        await OperationLogger(persistence=reopened).log_operation_start(context)

        assert len(await reopened.entries_for("op-test")) == 2
        assert reopened.dropped == 1

    @pytest.mark.asyncio
    async def test_purge_expired(self, tmp_path, context):
        store = FileLogStore(tmp_path, retention_days=7)
        await OperationLogger(persistence=store).log_operation_start(context)
        old = tmp_path / "old-op.jsonl"
        old.write_text("")
        stale = time.time() - 30 * 86400
        os.utime(old, (stale, stale))

        assert await store.purge_expired() == 1
        assert await store.list_operations() == ["op-test"]
        assert await store.purge_expired(now=datetime.now(timezone.utc) + timedelta(days=8)) == 1
        assert await store.list_operations() == []
