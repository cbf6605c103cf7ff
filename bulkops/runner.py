"""Bulk operation runner.

Wires the request queue, state manager, error classifier, recovery router,
operation logger and progress tracker into one execution flow: each stage
submits its resource-creating steps through the queue, records the created
resources, and routes failures through classification and recovery.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from .errors import CategorizedError, ErrorClassifier, RecoveryStrategy
from .models.config import EngineConfig
from .oplog import (
    AnalyticsSink,
    FileLogStore,
    InMemoryLogStore,
    MetricUnit,
    OperationLogger,
    PerformanceMetric,
)
from .progress import OperationTracker
from .queue import RequestQueue
from .recovery import (
    IncidentTracker,
    OperatorChannel,
    RecoveryError,
    RecoveryOutcome,
    RecoveryRouter,
)
from .state import (
    DEFAULT_STAGE_GRAPH,
    Compensator,
    ExecutionContext,
    FileKeyValueStore,
    InMemoryKeyValueStore,
    ResourceRecord,
    RollbackReport,
    StageGraph,
    StateManager,
    stage_name,
)


logger = logging.getLogger(__name__)


@dataclass
class ResourceStep:
    """One resource to create: the call returns its descriptor or remote id."""
    kind: str
    local_key: str
    create: Callable[[], Awaitable[Any]]


@dataclass
class ItemFailure:
    """A step that did not produce a resource."""
    kind: str
    local_key: str
    error: CategorizedError
    recovery: Optional[RecoveryOutcome] = None

    @property
    def reason(self) -> str:
        return f"{self.error.category.value}: {self.error.message}"


@dataclass
class StageReport:
    """Partial-success report of one stage."""
    stage: str
    succeeded: List[ResourceRecord] = field(default_factory=list)
    failed: List[ItemFailure] = field(default_factory=list)
    rollback: Optional[RollbackReport] = None
    aborted: bool = False

    @property
    def rolled_back(self) -> bool:
        return self.rollback is not None

    @property
    def ok(self) -> bool:
        return not self.failed and not self.aborted


@dataclass
class _RunStats:
    started: float
    attempted: int = 0
    failed: int = 0
    aborted: bool = False


class BulkOperationRunner:
    """Executes staged bulk operations with throttling and recovery."""

    def __init__(
        self,
        queue: RequestQueue,
        state_manager: StateManager,
        classifier: ErrorClassifier,
        router: RecoveryRouter,
        oplog: OperationLogger,
        tracker: Optional[OperationTracker] = None
    ):
        self.queue = queue
        self.state_manager = state_manager
        self.classifier = classifier
        self.router = router
        self.oplog = oplog
        self.tracker = tracker
        self._runs: Dict[str, _RunStats] = {}

    @classmethod
    def from_config(
        cls,
        config: Optional[EngineConfig] = None,
        compensators: Optional[Mapping[str, Compensator]] = None,
        *,
        analytics: Optional[AnalyticsSink] = None,
        operator_channel: Optional[OperatorChannel] = None,
        incident_tracker: Optional[IncidentTracker] = None,
        tracker: Optional[OperationTracker] = None
    ) -> 'BulkOperationRunner':
        """Build a runner and all its collaborators from an EngineConfig."""
        config = config or EngineConfig()
        tracker = tracker or OperationTracker()
        classifier = ErrorClassifier(config.recovery)
        queue = RequestQueue(config.queue, retry_on=classifier.is_retryable, tracker=tracker)

        if config.snapshot_dir is not None:
            store = FileKeyValueStore(config.snapshot_dir)
        else:
            store = InMemoryKeyValueStore()
        state_manager = StateManager(compensators, store=store, queue=queue)

        log_config = config.logging
        if log_config.log_dir is not None:
            persistence = FileLogStore(
                log_config.log_dir,
                retention_days=log_config.retention_days,
                max_entries_per_operation=log_config.max_entries_per_operation
            )
        else:
            persistence = InMemoryLogStore(log_config.max_entries_per_operation)
        oplog = OperationLogger(persistence=persistence, analytics=analytics, config=log_config)

        router = RecoveryRouter.with_default_handlers(
            queue,
            config.recovery,
            oplog=oplog,
            operator_channel=operator_channel,
            incident_tracker=incident_tracker
        )
        return cls(queue, state_manager, classifier, router, oplog, tracker)

    async def start_operation(
        self,
        operation_id: Optional[str] = None,
        stage_graph: StageGraph = DEFAULT_STAGE_GRAPH,
        operation_type: str = "bulk_operation",
        metadata: Optional[Dict[str, Any]] = None
    ) -> ExecutionContext:
        """Open a context in the first stage and log the start."""
        await self.oplog.start()
        context = await self.state_manager.open_context(
            operation_id=operation_id,
            stage_graph=stage_graph,
            operation_type=operation_type
        )
        if self.tracker:
            self.tracker.create_operation(operation_type, metadata, operation_id=context.operation_id)
            self.tracker.start_operation(context.operation_id)

        self._runs[context.operation_id] = _RunStats(started=time.monotonic())
        await self.oplog.log_operation_start(context)
        return context

    async def run_stage(
        self,
        context: ExecutionContext,
        stage: str,
        steps: Sequence[ResourceStep],
        *,
        concurrency: Optional[int] = None
    ) -> StageReport:
        """Run the steps of a stage and recover failed ones.

        Enters ``stage`` first when the context is not already in it. A
        failed step is classified, logged and routed; a retry that succeeds
        is recorded like any other step. A failure only triggers a rollback
        when the stage held resources before the batch started; otherwise
        its siblings are delivered and the failure goes to an operator. A
        full rollback aborts the stage and leaves remaining failures unrouted.

        Raises:
            InvalidTransitionError: ``stage`` is not a successor of the current stage
            UnknownRecoveryStrategyError: A failure could not be routed
        """
        stage = stage_name(stage)
        if stage != context.current_stage:
            await context.advance_stage(stage)
            await self.oplog.log_operation_start(context, stage)

        stats = self._runs.setdefault(context.operation_id, _RunStats(started=time.monotonic()))
        report = StageReport(stage=stage)
        steps = list(steps)
        if not steps:
            return report
        stats.attempted += len(steps)
        # Failures only count resources that existed in the stage before the batch
        stage_had_resources = bool(context.resources_in_current_stage())

        outcomes = await self.queue.batch_enqueue(
            [step.create for step in steps],
            concurrency=concurrency,
            batch_label=f"{context.operation_type} {stage}",
            operation_id=context.operation_id,
            return_exceptions=True
        )

        failures = []
        for step, outcome in zip(steps, outcomes):
            if isinstance(outcome, Exception):
                failures.append((step, outcome))
            else:
                report.succeeded.append(context.record_resource(step.kind, step.local_key, outcome))
        if report.succeeded:
            await context.checkpoint()

        for index, (step, exc) in enumerate(failures):
            error = self.classifier.classify(
                exc,
                context,
                unit=step.create,
                resource_kind=step.kind,
                resource_id=step.local_key,
                stage_has_resources=stage_had_resources and bool(context.resources_in_current_stage())
            )
            await self.oplog.log_error(error, context)
            failure = ItemFailure(step.kind, step.local_key, error)

            try:
                failure.recovery = await self.router.execute_recovery(error, context)
            except RecoveryError as e:
                context.add_warning(f"Recovery of {step.kind}:{step.local_key} failed: {e}")
                report.failed.append(failure)
                continue

            recovery = failure.recovery
            if RecoveryStrategy(recovery.strategy).is_retry and recovery.success:
                report.succeeded.append(context.record_resource(step.kind, step.local_key, recovery.result))
                await context.checkpoint()
                continue

            report.failed.append(failure)
            if recovery.rollback is not None:
                report.rollback = recovery.rollback
                report.succeeded = [
                    r for r in report.succeeded
                    if context.get_resource(r.kind, r.local_key) is not None
                ]
            if recovery.strategy == RecoveryStrategy.FULL_ROLLBACK:
                report.aborted = True
                stats.aborted = True
                for skipped_step, skipped_exc in failures[index + 1:]:
                    report.failed.append(ItemFailure(
                        skipped_step.kind,
                        skipped_step.local_key,
                        self.classifier.classify(
                            skipped_exc,
                            context,
                            resource_kind=skipped_step.kind,
                            resource_id=skipped_step.local_key
                        )
                    ))
                break

        stats.failed += len(report.failed)
        logger.info(
            f"Stage {stage} of {context.operation_id}: {len(report.succeeded)} succeeded, "
            f"{len(report.failed)} failed{' (aborted)' if report.aborted else ''}"
        )
        return report

    async def complete_operation(self, context: ExecutionContext) -> bool:
        """Archive the operation and log its outcome.

        Returns:
            True unless a full rollback aborted the operation
        """
        stats = self._runs.pop(context.operation_id, None) or _RunStats(started=time.monotonic())
        duration = time.monotonic() - stats.started
        success = not stats.aborted

        await self.state_manager.archive(context)

        error_rate = stats.failed / stats.attempted if stats.attempted else 0.0
        await self.oplog.log_performance_metric(
            PerformanceMetric(
                name="error_rate",
                value=error_rate,
                unit=MetricUnit.RATIO,
                tags={"operation_type": context.operation_type}
            ),
            context
        )
        await self.oplog.log_performance_metric(
            PerformanceMetric(
                name="resource_count",
                value=context.resource_count,
                unit=MetricUnit.COUNT,
                tags={"operation_type": context.operation_type}
            ),
            context
        )
        await self.oplog.log_operation_complete(context, duration, success=success)

        if self.tracker:
            if success:
                self.tracker.complete_operation(context.operation_id)
            else:
                self.tracker.fail_operation(context.operation_id, "Operation rolled back")
        return success

    async def close(self) -> None:
        await self.queue.close()
        await self.oplog.close()
