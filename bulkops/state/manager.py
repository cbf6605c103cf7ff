"""State manager: snapshots, restores and compensating rollbacks."""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from ..errors.taxonomy import CategorizedError, ErrorDetails
from ..queue import RequestQueue, RequestFailedError
from .context import (
    ExecutionContext,
    ResourceDescriptor,
    ResourceRecord,
    SnapshotNotFoundError,
    StateError,
)
from .stages import DEFAULT_STAGE_GRAPH, StageGraph
from .store import InMemoryKeyValueStore, KeyValueStore


logger = logging.getLogger(__name__)

Compensator = Callable[[str, ResourceDescriptor], Awaitable[Any]]

COMPENSATION_FAILED = "ROLLBACK_COMPENSATION_FAILED"
NO_COMPENSATOR = "ROLLBACK_NO_COMPENSATOR"


@dataclass
class RollbackReport:
    """Outcome of a rollback."""
    operation_id: str
    target_stage: str
    compensated: List[ResourceRecord] = field(default_factory=list)
    failed: List[CategorizedError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "target_stage": self.target_stage,
            "compensated": [f"{r.kind}:{r.local_key}" for r in self.compensated],
            "failed": [e.to_dict() for e in self.failed]
        }


class StateManager:
    """Owns snapshot persistence and compensating calls for contexts.

    Snapshots are stored under ``{operation_id}:{stage}`` (latest per
    stage) and ``{operation_id}:archive`` for the terminal snapshot.
    """

    def __init__(
        self,
        compensators: Optional[Mapping[str, Compensator]] = None,
        store: Optional[KeyValueStore] = None,
        queue: Optional[RequestQueue] = None
    ):
        """Initialize the state manager.

        Args:
            compensators: Async callables per resource kind undoing a
                created resource, called with (local_key, descriptor)
            store: Snapshot store (default: in-memory)
            queue: Request queue throttling compensating calls
        """
        self._compensators: Dict[str, Compensator] = dict(compensators or {})
        self.store = store or InMemoryKeyValueStore()
        self.queue = queue

    def register_compensator(self, kind: str, compensator: Compensator) -> None:
        self._compensators[kind] = compensator

    async def open_context(
        self,
        operation_id: Optional[str] = None,
        stage_graph: StageGraph = DEFAULT_STAGE_GRAPH,
        operation_type: str = "bulk_operation"
    ) -> ExecutionContext:
        """Create a context in the graph's first stage and checkpoint it."""
        context = ExecutionContext(
            self,
            operation_id=operation_id,
            stage_graph=stage_graph,
            operation_type=operation_type
        )
        await context.checkpoint()
        logger.info(f"Opened execution context {context.operation_id} at stage {context.current_stage}")
        return context

    @staticmethod
    def snapshot_key(operation_id: str, stage: str) -> str:
        return f"{operation_id}:{stage}"

    async def checkpoint(self, context: ExecutionContext) -> None:
        key = self.snapshot_key(context.operation_id, context.current_stage)
        await self.store.put(key, context.to_snapshot())
        logger.debug(f"Checkpointed {key} ({context.resource_count} resources)")

    async def archive(self, context: ExecutionContext) -> None:
        """Store the final snapshot of an operation."""
        key = self.snapshot_key(context.operation_id, "archive")
        await self.store.put(key, context.to_snapshot())
        logger.info(f"Archived operation {context.operation_id} at stage {context.current_stage}")

    async def load_snapshot(self, operation_id: str, stage: str) -> Dict[str, Any]:
        snapshot = await self.store.get(self.snapshot_key(operation_id, stage))
        if snapshot is None:
            raise SnapshotNotFoundError(operation_id, stage)
        return snapshot

    async def restore_state(self, stage: str, context: ExecutionContext) -> None:
        """Reload a context from the latest snapshot of ``stage``.

        No remote calls are issued.

        Raises:
            SnapshotNotFoundError: No snapshot was taken in ``stage``
        """
        snapshot = await self.load_snapshot(context.operation_id, stage)
        context.apply_snapshot(snapshot)
        logger.info(
            f"Restored operation {context.operation_id} to stage {stage} "
            f"({context.resource_count} resources)"
        )

    async def rollback_to(self, stage: str, context: ExecutionContext) -> RollbackReport:
        """Compensate resources recorded since ``stage`` was entered.

        Compensation runs in strict reverse creation order. Failures are
        recorded on the context as SYSTEM errors and returned in the report;
        the affected entries are kept.

        Raises:
            StateError: ``stage`` was never entered or lies ahead of the
                current stage
        """
        if stage not in context.stage_graph:
            raise StateError(f"Unknown stage: {stage}")
        if context.stage_graph.precedes(context.current_stage, stage):
            raise StateError(
                f"Cannot roll back from {context.current_stage} forward to {stage}"
            )

        targets = context.resources_since(stage)
        report = RollbackReport(operation_id=context.operation_id, target_stage=stage)
        logger.info(
            f"Rolling back operation {context.operation_id} to {stage}: "
            f"{len(targets)} resource(s) to compensate"
        )

        for record in reversed(targets):
            error = await self._compensate(record, stage, context)
            if error is None:
                context.remove_resource(record.kind, record.local_key)
                report.compensated.append(record)
            else:
                context.add_error(error)
                report.failed.append(error)

        context.regress_to(stage)
        await context.checkpoint()

        if report.failed:
            logger.error(
                f"Rollback of {context.operation_id} to {stage} left "
                f"{len(report.failed)} resource(s) uncompensated"
            )
        return report

    async def _compensate(
        self,
        record: ResourceRecord,
        target_stage: str,
        context: ExecutionContext
    ) -> Optional[CategorizedError]:
        details = ErrorDetails(
            operation_id=context.operation_id,
            stage=context.current_stage,
            resource_kind=record.kind,
            resource_id=record.local_key,
            extra={"remote_id": record.descriptor.remote_id, "target_stage": target_stage}
        )

        compensator = self._compensators.get(record.kind)
        if compensator is None:
            logger.error(f"No compensator registered for resource kind {record.kind}")
            return CategorizedError.system(
                NO_COMPENSATOR,
                f"No compensator registered for {record.kind}:{record.local_key}",
                details
            )

        async def undo():
            return await compensator(record.local_key, record.descriptor)

        try:
            if self.queue is not None:
                await self.queue.enqueue(
                    undo,
                    urgent=True,
                    operation_id=context.operation_id,
                    label=f"Compensate {record.kind}:{record.local_key}"
                )
            else:
                await undo()
        except Exception as e:
            cause = e.last_error if isinstance(e, RequestFailedError) else e
            logger.error(f"Compensation failed for {record.kind}:{record.local_key}: {cause}")
            return CategorizedError.system(
                COMPENSATION_FAILED,
                f"Failed to compensate {record.kind}:{record.local_key}: {cause}",
                details,
                cause=cause
            )
        return None
