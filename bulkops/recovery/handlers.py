"""Recovery handlers: retry, rollback and manual intervention."""

import asyncio
import logging
import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..errors.taxonomy import CategorizedError, ErrorDetails, RecoveryStrategy
from ..models.config import RecoveryConfig
from ..queue import RequestQueue, retry_delay_for
from ..state.context import ExecutionContext
from ..state.manager import RollbackReport


logger = logging.getLogger(__name__)

ROLLBACK_INCOMPLETE = "ROLLBACK_INCOMPLETE"


@dataclass
class Incident:
    """A request for operator attention."""
    id: str
    operation_id: str
    code: str
    message: str
    stage: Optional[str]
    error: CategorizedError
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operation_id": self.operation_id,
            "code": self.code,
            "message": self.message,
            "stage": self.stage,
            "error": self.error.to_dict(),
            "opened_at": self.opened_at.isoformat()
        }


@dataclass
class RecoveryOutcome:
    """Result of running a recovery handler."""
    strategy: RecoveryStrategy
    action: str
    success: bool
    result: Any = None
    rollback: Optional[RollbackReport] = None
    incident: Optional[Incident] = None
    escalation: Optional['RecoveryOutcome'] = None
    errors: List[CategorizedError] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def escalated(self) -> bool:
        return self.escalation is not None


class OperatorChannel(ABC):
    """Notification channel reaching a human operator."""

    @abstractmethod
    async def notify(self, incident: Incident) -> None:
        pass


class IncidentTracker(ABC):
    """System of record for incidents."""

    @abstractmethod
    async def open_incident(self, error: CategorizedError, operation_id: str) -> Incident:
        pass


class LoggingOperatorChannel(OperatorChannel):
    """Reports incidents on the stdlib logger."""

    async def notify(self, incident: Incident) -> None:
        logger.critical(
            f"Manual intervention required for operation {incident.operation_id} "
            f"(incident {incident.id}): [{incident.code}] {incident.message}"
        )


class InMemoryIncidentTracker(IncidentTracker):
    """Keeps opened incidents in a list."""

    def __init__(self):
        self.incidents: List[Incident] = []

    async def open_incident(self, error: CategorizedError, operation_id: str) -> Incident:
        incident = Incident(
            id=f"inc_{uuid.uuid4().hex[:12]}",
            operation_id=operation_id,
            code=error.code,
            message=error.message,
            stage=error.context.stage,
            error=error
        )
        self.incidents.append(incident)
        return incident

    def for_operation(self, operation_id: str) -> List[Incident]:
        return [i for i in self.incidents if i.operation_id == operation_id]


class RecoveryHandler(ABC):
    """Executes one class of recovery strategies against a context."""

    action_type = "recovery"

    @abstractmethod
    async def handle(self, error: CategorizedError, context: ExecutionContext) -> RecoveryOutcome:
        pass


class RetryHandler(RecoveryHandler):
    """Re-submits the failed unit through the request queue after a backoff.

    The current stage is checkpointed first. The re-submitted unit then
    restores the context from that snapshot, so the retried call sees the
    state the stage had reached.
    """

    action_type = "retry"

    def __init__(
        self,
        queue: RequestQueue,
        config: Optional[RecoveryConfig] = None,
        rng: Optional[random.Random] = None
    ):
        self.queue = queue
        self.config = config or RecoveryConfig()
        self._rng = rng

    def backoff_for(self, error: CategorizedError) -> float:
        if error.recovery_strategy == RecoveryStrategy.IMMEDIATE_RETRY:
            return self.config.immediate_retry_delay
        return retry_delay_for(self.queue.get_config(), error.context.attempt, self._rng)

    async def handle(self, error: CategorizedError, context: ExecutionContext) -> RecoveryOutcome:
        if error.unit is None:
            raise ValueError(f"Error {error.code} carries no unit of work to retry")

        stage = error.context.stage or context.current_stage
        unit = error.unit
        if stage == context.current_stage:
            await context.checkpoint()
        delay = self.backoff_for(error)
        if delay > 0:
            logger.info(f"Retrying {error.code} for {context.operation_id} in {delay:.2f}s")
            await asyncio.sleep(delay)

        async def resume():
            await context.restore_state(stage)
            return await unit()

        result = await self.queue.enqueue(
            resume,
            operation_id=context.operation_id,
            label=f"Retry {error.code} ({error.context.resource_kind or 'unit'}:"
                  f"{error.context.resource_id or '-'})"
        )
        return RecoveryOutcome(
            strategy=error.recovery_strategy,
            action=self.action_type,
            success=True,
            result=result,
            details={"delay": delay, "stage": stage}
        )


class ManualInterventionHandler(RecoveryHandler):
    """Opens an incident and notifies an operator; never mutates the context."""

    action_type = "manual_intervention"

    def __init__(
        self,
        operator_channel: Optional[OperatorChannel] = None,
        incident_tracker: Optional[IncidentTracker] = None
    ):
        self.operator_channel = operator_channel or LoggingOperatorChannel()
        self.incident_tracker = incident_tracker or InMemoryIncidentTracker()

    async def handle(self, error: CategorizedError, context: ExecutionContext) -> RecoveryOutcome:
        incident = await self.incident_tracker.open_incident(error, context.operation_id)
        await self.operator_channel.notify(incident)
        return RecoveryOutcome(
            strategy=error.recovery_strategy,
            action=self.action_type,
            success=True,
            incident=incident,
            details={"incident_id": incident.id}
        )


class RollbackHandler(RecoveryHandler):
    """Rolls the context back to the last stable stage.

    A full rollback, or a partial one without a known stable stage, targets
    the first stage of the operation. When compensating calls fail the
    remote state is inconsistent and, unless disabled, a SYSTEM error is
    escalated to manual intervention.
    """

    action_type = "rollback"

    def __init__(
        self,
        escalation: Optional[RecoveryHandler] = None,
        config: Optional[RecoveryConfig] = None
    ):
        self.escalation = escalation
        self.config = config or RecoveryConfig()

    @staticmethod
    def target_stage(error: CategorizedError, context: ExecutionContext) -> str:
        if error.recovery_strategy == RecoveryStrategy.FULL_ROLLBACK:
            return context.stage_graph.first
        return error.context.last_stable_state or context.stage_graph.first

    async def handle(self, error: CategorizedError, context: ExecutionContext) -> RecoveryOutcome:
        if not RecoveryStrategy(error.recovery_strategy).is_rollback:
            raise ValueError(f"Error {error.code} is not routed to a rollback")
        target = self.target_stage(error, context)
        report = await context.rollback_to(target)
        outcome = RecoveryOutcome(
            strategy=error.recovery_strategy,
            action=self.action_type,
            success=report.ok,
            rollback=report,
            errors=list(report.failed),
            details={"target_stage": target, "compensated": len(report.compensated)}
        )

        if report.failed and self.config.escalate_failed_rollback and self.escalation is not None:
            failure = CategorizedError.system(
                ROLLBACK_INCOMPLETE,
                f"Rollback to {target} left {len(report.failed)} resource(s) uncompensated",
                ErrorDetails(
                    operation_id=context.operation_id,
                    stage=context.current_stage,
                    last_stable_state=target,
                    extra={
                        "original_code": error.code,
                        "uncompensated": [
                            f"{e.context.resource_kind}:{e.context.resource_id}" for e in report.failed
                        ]
                    }
                ),
                cause=error.cause
            )
            context.add_error(failure)
            outcome.errors.append(failure)
            outcome.escalation = await self.escalation.handle(failure, context)
            outcome.incident = outcome.escalation.incident

        return outcome
