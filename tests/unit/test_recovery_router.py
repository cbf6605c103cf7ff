"""Unit tests for recovery routing and handlers."""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from bulkops.errors import ApiError, ErrorClassifier, ErrorType, RecoveryStrategy
from bulkops.models.config import RecoveryConfig
from bulkops.oplog import InMemoryLogStore, LogCategory, LogLevel, OperationLogger
from bulkops.recovery import (
    InMemoryIncidentTracker,
    ManualInterventionHandler,
    OperatorChannel,
    RecoveryError,
    RecoveryOutcome,
    RecoveryRouter,
    RetryHandler,
    RollbackHandler,
    UnknownRecoveryStrategyError,
)
from bulkops.recovery.handlers import ROLLBACK_INCOMPLETE


@pytest.fixture
def operator_channel():
    channel = AsyncMock(spec=OperatorChannel)
    return channel


@pytest.fixture
def incident_tracker():
    return InMemoryIncidentTracker()


@pytest.fixture
def log_store():
    return InMemoryLogStore()


@pytest_asyncio.fixture
async def router(queue, operator_channel, incident_tracker, log_store):
    return RecoveryRouter.with_default_handlers(
        queue,
        RecoveryConfig(retry_ceiling=3),
        oplog=OperationLogger(persistence=log_store),
        operator_channel=operator_channel,
        incident_tracker=incident_tracker
    )


@pytest_asyncio.fixture
async def executing_context(context):
    """Context in EXECUTION with one campaign created in that stage."""
    await context.advance_stage("EXECUTION")
    context.record_resource("campaign", "c1", "c-1")
    await context.checkpoint()
    return context


class TestRouting:
    """Test cases for strategy dispatch."""

    @pytest.mark.asyncio
    async def test_unregistered_strategy_raises(self, context):
        router = RecoveryRouter()
        error = ErrorClassifier().classify(ApiError("throttled", status_code=429))

        with pytest.raises(UnknownRecoveryStrategyError) as exc_info:
            await router.execute_recovery(error, context)
        assert exc_info.value.strategy == RecoveryStrategy.IMMEDIATE_RETRY
        assert not isinstance(exc_info.value, RecoveryError)

    @pytest.mark.asyncio
    async def test_unknown_strategy_raises(self, router, context):
        error = ErrorClassifier().classify(ApiError("throttled", status_code=429)).with_strategy("TELEPORT")

        with pytest.raises(UnknownRecoveryStrategyError):
            await router.execute_recovery(error, context)

    @pytest.mark.asyncio
    async def test_default_handlers_cover_every_strategy(self, router):
        assert isinstance(router.handler_for(RecoveryStrategy.IMMEDIATE_RETRY), RetryHandler)
        assert isinstance(router.handler_for(RecoveryStrategy.DELAYED_RETRY), RetryHandler)
        assert isinstance(router.handler_for(RecoveryStrategy.PARTIAL_ROLLBACK), RollbackHandler)
        assert isinstance(router.handler_for(RecoveryStrategy.FULL_ROLLBACK), RollbackHandler)
        assert isinstance(router.handler_for("MANUAL_INTERVENTION"), ManualInterventionHandler)

    @pytest.mark.asyncio
    async def test_handler_failure_wrapped(self, router, context, log_store):
        """A failing handler surfaces as RecoveryError chained to its cause."""
        error = ErrorClassifier().classify(ApiError("throttled", status_code=429), context)

        with pytest.raises(RecoveryError) as exc_info:
            await router.execute_recovery(error, context)

        assert exc_info.value.error is error
        assert isinstance(exc_info.value.__cause__, ValueError)
        entries = await log_store.entries_for(context.operation_id)
        assert entries[-1].category == LogCategory.RECOVERY
        assert entries[-1].level == LogLevel.WARN

    @pytest.mark.asyncio
    async def test_custom_handler_registration(self, context):
        handler = AsyncMock(spec=ManualInterventionHandler)
        handler.action_type = "custom"
        handler.handle.return_value = RecoveryOutcome(
            strategy=RecoveryStrategy.MANUAL_INTERVENTION, action="custom", success=True
        )
        router = RecoveryRouter()
        router.register_handler(RecoveryStrategy.MANUAL_INTERVENTION, handler)
        error = ErrorClassifier().classify(ApiError("denied", status_code=403))

        outcome = await router.execute_recovery(error, context)

        assert outcome.action == "custom"
        handler.handle.assert_awaited_once_with(error, context)


class TestRetryRecovery:
    """Test cases for retry handling."""

    @pytest.mark.asyncio
    async def test_retry_restores_then_runs_unit(self, router, executing_context, log_store):
        calls = []
        original_restore = executing_context.restore_state

        async def restore(stage):
            calls.append(("restore", stage))
            await original_restore(stage)

        async def unit():
            calls.append(("unit", executing_context.resource_count))
            return {"remote_id": "ag-1"}

        executing_context.restore_state = restore
        executing_context.record_resource("campaign", "unsaved", "c-2")
        error = ErrorClassifier().classify(
            ApiError("throttled", status_code=429), executing_context, unit=unit
        )

        outcome = await router.execute_recovery(error, executing_context)

        assert outcome.success
        assert outcome.result == {"remote_id": "ag-1"}
        assert calls == [("restore", "EXECUTION"), ("unit", 2)]
        assert executing_context.get_resource("campaign", "unsaved").remote_id == "c-2"

        entries = await log_store.entries_for(executing_context.operation_id)
        assert entries[-1].category == LogCategory.RECOVERY
        assert entries[-1].message == "Recovery action retry: succeeded"
        assert entries[-1].metadata.recovery_strategy == "IMMEDIATE_RETRY"

    @pytest.mark.asyncio
    async def test_retry_keeps_resources_recorded_since_last_checkpoint(self, router, context, compensations):
        """Resources recorded without a checkpoint survive a retry and stay undoable."""
        await context.advance_stage("EXECUTION")
        context.record_resource("campaign", "c1", "c-1")

        async def unit():
            return "ag-1"

        error = ErrorClassifier().classify(ApiError("throttled", status_code=429), context, unit=unit)
        assert error.recovery_strategy == RecoveryStrategy.IMMEDIATE_RETRY

        outcome = await router.execute_recovery(error, context)

        assert outcome.result == "ag-1"
        assert context.mapping_view() == {"campaign": {"c1": "c-1"}}

        await context.rollback_to("EXECUTION")
        assert compensations == [("campaign", "c1")]

    @pytest.mark.asyncio
    async def test_delayed_retry_waits_backoff(self, queue, executing_context):
        handler = RetryHandler(queue, RecoveryConfig())

        async def unit():
            return "ok"

        error = ErrorClassifier().classify(
            ApiError("busy", status_code=503), executing_context, attempt=1, unit=unit
        )
        assert error.recovery_strategy == RecoveryStrategy.DELAYED_RETRY

        delay = handler.backoff_for(error)
        assert 0.0 < delay <= queue.get_config().max_retry_delay

        outcome = await handler.handle(error, executing_context)
        assert outcome.result == "ok"


class TestRollbackRecovery:
    """Test cases for rollback handling."""

    @pytest.mark.asyncio
    async def test_validation_error_rolls_back_partially(self, router, executing_context, compensations):
        """Non-retryable failures are never retried; created resources are undone."""
        unit = AsyncMock()
        error = ErrorClassifier().classify(
            ApiError("bad name", status_code=400), executing_context, unit=unit
        )

        outcome = await router.execute_recovery(error, executing_context)

        assert error.error_type == ErrorType.VALIDATION
        assert error.recovery_strategy == RecoveryStrategy.PARTIAL_ROLLBACK
        unit.assert_not_called()
        assert outcome.success
        assert outcome.details["target_stage"] == "EXECUTION"
        assert compensations == [("campaign", "c1")]
        assert executing_context.current_stage == "EXECUTION"

    @pytest.mark.asyncio
    async def test_full_rollback_targets_first_stage(self, router, executing_context, compensations):
        executing_context.record_resource("ad_group", "a1", "ag-1")
        error = ErrorClassifier().classify(
            ApiError("bad", status_code=400), executing_context
        ).with_strategy(RecoveryStrategy.FULL_ROLLBACK)

        outcome = await router.execute_recovery(error, executing_context)

        assert outcome.rollback.target_stage == "VALIDATION"
        assert executing_context.current_stage == "VALIDATION"
        assert compensations == [("ad_group", "a1"), ("campaign", "c1")]

    @pytest.mark.asyncio
    async def test_failed_compensation_escalates(self, router, executing_context, incident_tracker, operator_channel):
        async def refuse(local_key, descriptor):
            raise ApiError("delete refused", status_code=500)

        executing_context.state_manager.register_compensator("campaign", refuse)
        error = ErrorClassifier().classify(ApiError("bad name", status_code=400), executing_context)

        outcome = await router.execute_recovery(error, executing_context)

        assert not outcome.success
        assert outcome.escalated
        assert outcome.incident.code == ROLLBACK_INCOMPLETE
        assert incident_tracker.for_operation(executing_context.operation_id) == [outcome.incident]
        operator_channel.notify.assert_awaited_once_with(outcome.incident)
        assert executing_context.errors[-1].code == ROLLBACK_INCOMPLETE
        assert executing_context.get_resource("campaign", "c1") is not None

    @pytest.mark.asyncio
    async def test_failed_compensation_reaches_audit_trail(self, router, executing_context, log_store):
        async def refuse(local_key, descriptor):
            raise ApiError("delete refused", status_code=500)

        executing_context.state_manager.register_compensator("campaign", refuse)
        error = ErrorClassifier().classify(ApiError("bad name", status_code=400), executing_context)

        outcome = await router.execute_recovery(error, executing_context)

        assert [e.code for e in outcome.errors] == ["ROLLBACK_COMPENSATION_FAILED", ROLLBACK_INCOMPLETE]
        entries = await log_store.entries_for(executing_context.operation_id)
        errors = [e for e in entries if e.category == LogCategory.ERROR]
        assert [e.metadata.extra["code"] for e in errors] == ["ROLLBACK_COMPENSATION_FAILED", ROLLBACK_INCOMPLETE]
        assert all(e.metadata.error_category == "SYSTEM" for e in errors)
        assert entries[-1].category == LogCategory.RECOVERY

    @pytest.mark.asyncio
    async def test_rollback_handler_rejects_other_strategies(self, executing_context):
        error = ErrorClassifier().classify(ApiError("denied", status_code=403), executing_context)
        error = error.with_strategy(RecoveryStrategy.MANUAL_INTERVENTION)

        with pytest.raises(ValueError):
            await RollbackHandler().handle(error, executing_context)

    @pytest.mark.asyncio
    async def test_escalation_can_be_disabled(self, executing_context):
        async def refuse(local_key, descriptor):
            raise RuntimeError("nope")

        executing_context.state_manager.register_compensator("campaign", refuse)
        handler = RollbackHandler(
            escalation=ManualInterventionHandler(),
            config=RecoveryConfig(escalate_failed_rollback=False)
        )
        error = ErrorClassifier().classify(ApiError("bad", status_code=400), executing_context)

        outcome = await handler.handle(error, executing_context)

        assert not outcome.success
        assert not outcome.escalated


class TestManualIntervention:
    """Test cases for operator escalation."""

    @pytest.mark.asyncio
    async def test_opens_incident_without_touching_context(self, router, executing_context,
                                                           incident_tracker, operator_channel):
        before = executing_context.mapping_view()
        error = ErrorClassifier().classify(ApiError("denied", status_code=403), executing_context)
        error = error.with_strategy(RecoveryStrategy.MANUAL_INTERVENTION)

        outcome = await router.execute_recovery(error, executing_context)

        assert outcome.action == "manual_intervention"
        assert outcome.incident.operation_id == executing_context.operation_id
        assert outcome.incident.stage == "EXECUTION"
        assert len(incident_tracker.incidents) == 1
        operator_channel.notify.assert_awaited_once()
        assert executing_context.mapping_view() == before
