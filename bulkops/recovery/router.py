"""Routes categorized errors to recovery handlers."""

import logging
import random
import time
from typing import Dict, Mapping, Optional

from ..errors.taxonomy import CategorizedError, RecoveryStrategy
from ..models.config import RecoveryConfig
from ..oplog import OperationLogger, RecoveryAction
from ..queue import RequestQueue
from ..state.context import ExecutionContext
from .handlers import (
    IncidentTracker,
    ManualInterventionHandler,
    OperatorChannel,
    RecoveryHandler,
    RecoveryOutcome,
    RetryHandler,
    RollbackHandler,
)


logger = logging.getLogger(__name__)


class RecoveryError(Exception):
    """Raised when a recovery handler fails.

    The categorized error being recovered is available as ``error``; the
    handler's exception is chained as ``__cause__``.
    """

    def __init__(self, error: CategorizedError, message: Optional[str] = None):
        super().__init__(message or f"Recovery failed for {error}")
        self.error = error


class UnknownRecoveryStrategyError(Exception):
    """Raised for an error whose strategy has no registered handler.

    This is a configuration fault and is never recovered from.
    """

    def __init__(self, strategy):
        super().__init__(f"No recovery handler registered for strategy: {strategy}")
        self.strategy = strategy


class RecoveryRouter:
    """Dispatches CategorizedErrors to the handler of their strategy."""

    def __init__(
        self,
        handlers: Optional[Mapping[RecoveryStrategy, RecoveryHandler]] = None,
        oplog: Optional[OperationLogger] = None
    ):
        self._handlers: Dict[RecoveryStrategy, RecoveryHandler] = dict(handlers or {})
        self.oplog = oplog

    @classmethod
    def with_default_handlers(
        cls,
        queue: RequestQueue,
        config: Optional[RecoveryConfig] = None,
        oplog: Optional[OperationLogger] = None,
        operator_channel: Optional[OperatorChannel] = None,
        incident_tracker: Optional[IncidentTracker] = None,
        rng: Optional[random.Random] = None
    ) -> 'RecoveryRouter':
        """Router with retry, rollback and manual intervention handlers for every strategy."""
        config = config or RecoveryConfig()
        retry = RetryHandler(queue, config, rng)
        manual = ManualInterventionHandler(operator_channel, incident_tracker)
        rollback = RollbackHandler(escalation=manual, config=config)
        return cls(
            handlers={
                RecoveryStrategy.IMMEDIATE_RETRY: retry,
                RecoveryStrategy.DELAYED_RETRY: retry,
                RecoveryStrategy.PARTIAL_ROLLBACK: rollback,
                RecoveryStrategy.FULL_ROLLBACK: rollback,
                RecoveryStrategy.MANUAL_INTERVENTION: manual,
            },
            oplog=oplog
        )

    def register_handler(self, strategy: RecoveryStrategy, handler: RecoveryHandler) -> None:
        self._handlers[RecoveryStrategy(strategy)] = handler

    def handler_for(self, strategy) -> RecoveryHandler:
        """Return the handler of a strategy.

        Raises:
            UnknownRecoveryStrategyError: Not a known strategy, or no handler registered
        """
        try:
            strategy = RecoveryStrategy(strategy)
        except ValueError:
            raise UnknownRecoveryStrategyError(strategy) from None
        handler = self._handlers.get(strategy)
        if handler is None:
            raise UnknownRecoveryStrategyError(strategy)
        return handler

    async def execute_recovery(self, error: CategorizedError, context: ExecutionContext) -> RecoveryOutcome:
        """Run the handler of the error's strategy and log the attempt.

        Raises:
            UnknownRecoveryStrategyError: The strategy has no handler
            RecoveryError: The handler failed
        """
        try:
            handler = self.handler_for(error.recovery_strategy)
        except UnknownRecoveryStrategyError:
            logger.critical(
                f"Unroutable error {error.code} for operation {context.operation_id}: "
                f"strategy {error.recovery_strategy!r}"
            )
            raise

        strategy = RecoveryStrategy(error.recovery_strategy)
        logger.info(f"Executing {strategy.value} for {error.code} on operation {context.operation_id}")
        started = time.monotonic()

        try:
            outcome = await handler.handle(error, context)
        except Exception as exc:
            await self._log_action(
                handler, strategy, context, False, time.monotonic() - started,
                {"error": str(exc), "error_type": type(exc).__name__, "code": error.code}
            )
            raise RecoveryError(error, f"{strategy.value} failed for {error}: {exc}") from exc

        if self.oplog is not None:
            for raised in outcome.errors:
                await self.oplog.log_error(raised, context)

        details = dict(outcome.details)
        details["code"] = error.code
        if outcome.escalated:
            details["escalated_to"] = outcome.escalation.action
        await self._log_action(handler, strategy, context, outcome.success, time.monotonic() - started, details)
        return outcome

    async def _log_action(
        self,
        handler: RecoveryHandler,
        strategy: RecoveryStrategy,
        context: ExecutionContext,
        success: bool,
        duration: float,
        details: dict
    ) -> None:
        if self.oplog is None:
            return
        action = RecoveryAction(
            type=handler.action_type,
            strategy=strategy.value,
            duration=duration,
            details=details
        )
        await self.oplog.log_recovery_action(action, context, success)
