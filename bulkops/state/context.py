"""Execution context of a single bulk operation.

The context is the in-memory record of an operation: its current stage in
the stage graph, every remote resource it created (keyed per resource kind
by a local key), and the append-only error and warning history. Persisted
snapshots and compensating calls are delegated to the ``StateManager``.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field

from ..errors.taxonomy import CategorizedError, EngineFault
from .stages import DEFAULT_STAGE_GRAPH, StageGraph, stage_name

if TYPE_CHECKING:
    from .manager import RollbackReport, StateManager


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateError(EngineFault):
    """Base class for execution state failures."""
    pass


class InvalidTransitionError(StateError):
    """Raised when advancing to a stage that is not a successor."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot advance from {current} to {target}")
        self.current = current
        self.target = target


class SnapshotNotFoundError(StateError):
    """Raised when no persisted snapshot exists for a stage."""

    def __init__(self, operation_id: str, stage: str):
        super().__init__(f"No snapshot for operation {operation_id} at stage {stage}")
        self.operation_id = operation_id
        self.stage = stage


class ResourceDescriptor(BaseModel):
    """Remote resource created by an operation."""
    kind: str
    local_key: str
    remote_id: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


@dataclass
class ResourceRecord:
    """A recorded resource with its creation order and stage."""
    descriptor: ResourceDescriptor
    sequence: int
    stage: str

    @property
    def kind(self) -> str:
        return self.descriptor.kind

    @property
    def local_key(self) -> str:
        return self.descriptor.local_key

    def to_dict(self) -> Dict[str, Any]:
        return {
            "descriptor": self.descriptor.model_dump(mode="json"),
            "sequence": self.sequence,
            "stage": self.stage
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ResourceRecord':
        return cls(
            descriptor=ResourceDescriptor.model_validate(data["descriptor"]),
            sequence=data["sequence"],
            stage=data["stage"]
        )


@dataclass
class StageEntry:
    """One transition in the stage history."""
    stage: str
    reason: str
    watermark: int
    at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "reason": self.reason,
            "watermark": self.watermark,
            "at": self.at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'StageEntry':
        return cls(
            stage=data["stage"],
            reason=data["reason"],
            watermark=data["watermark"],
            at=datetime.fromisoformat(data["at"])
        )


class ExecutionContext:
    """Mutable state of one operation.

    Resource entries are only removed by ``rollback_to``; errors and
    warnings are append-only and survive ``restore_state``.
    """

    def __init__(
        self,
        state_manager: 'StateManager',
        operation_id: Optional[str] = None,
        stage_graph: StageGraph = DEFAULT_STAGE_GRAPH,
        operation_type: str = "bulk_operation"
    ):
        self._operation_id = operation_id or str(uuid.uuid4())
        self.operation_type = operation_type
        self.stage_graph = stage_graph
        self.state_manager = state_manager

        self._current_stage = stage_graph.first
        self._next_sequence = 1
        self._mappings: Dict[str, Dict[str, ResourceRecord]] = {}
        self._watermarks: Dict[str, int] = {self._current_stage: self._next_sequence}
        self._checkpointed: set = set()

        self.stage_history: List[StageEntry] = [
            StageEntry(stage=self._current_stage, reason="start", watermark=self._next_sequence)
        ]
        self.errors: List[CategorizedError] = []
        self.warnings: List[str] = []
        self.started_at = _utcnow()

    @property
    def operation_id(self) -> str:
        return self._operation_id

    @property
    def current_stage(self) -> str:
        return self._current_stage

    @property
    def last_stable_stage(self) -> Optional[str]:
        """Stage entry the operation can be partially rewound to.

        This is the current stage once its entry snapshot has been
        persisted. Rewinding to the first stage undoes everything, so the
        first stage never counts as a partial rewind point.
        """
        stage = self._current_stage
        if stage == self.stage_graph.first:
            return None
        return stage if stage in self._checkpointed else None

    @property
    def resource_count(self) -> int:
        return sum(len(records) for records in self._mappings.values())

    # ------------------------------------------------------------------
    # Resource mappings
    # ------------------------------------------------------------------

    def record_resource(
        self,
        kind: str,
        local_key: str,
        descriptor: Union[ResourceDescriptor, Mapping[str, Any], str, int, None] = None
    ) -> ResourceRecord:
        """Record a created remote resource.

        Re-recording the same (kind, local_key) replaces the entry and
        moves it to the current stage.

        Args:
            kind: Resource kind (selects the compensator on rollback)
            local_key: Caller-side key, unique within the kind
            descriptor: Descriptor, attribute mapping or bare remote id
        """
        if isinstance(descriptor, ResourceDescriptor):
            descriptor = descriptor.model_copy(update={"kind": kind, "local_key": local_key})
        elif descriptor is not None and not isinstance(descriptor, Mapping):
            descriptor = ResourceDescriptor(kind=kind, local_key=local_key, remote_id=str(descriptor))
        else:
            attributes = dict(descriptor or {})
            remote_id = attributes.pop("remote_id", None) or attributes.get("id")
            descriptor = ResourceDescriptor(
                kind=kind,
                local_key=local_key,
                remote_id=str(remote_id) if remote_id is not None else None,
                attributes=attributes
            )

        record = ResourceRecord(
            descriptor=descriptor,
            sequence=self._next_sequence,
            stage=self._current_stage
        )
        self._next_sequence += 1
        self._mappings.setdefault(kind, {})[local_key] = record
        logger.debug(f"[{self._operation_id}] Recorded {kind}:{local_key} -> {descriptor.remote_id}")
        return record

    def get_resource(self, kind: str, local_key: str) -> Optional[ResourceDescriptor]:
        record = self._mappings.get(kind, {}).get(local_key)
        return record.descriptor if record else None

    def resources(self, kind: Optional[str] = None) -> List[ResourceRecord]:
        """Recorded resources in creation order."""
        if kind is not None:
            records = list(self._mappings.get(kind, {}).values())
        else:
            records = [r for per_kind in self._mappings.values() for r in per_kind.values()]
        return sorted(records, key=lambda r: r.sequence)

    def resources_since(self, stage: str) -> List[ResourceRecord]:
        """Resources recorded at or after the entry of ``stage``."""
        stage = stage_name(stage)
        if stage not in self._watermarks:
            raise StateError(f"Stage {stage} was never entered by operation {self._operation_id}")
        watermark = self._watermarks[stage]
        return [r for r in self.resources() if r.sequence >= watermark]

    def resources_in_current_stage(self) -> List[ResourceRecord]:
        return self.resources_since(self._current_stage)

    def mapping_view(self) -> Dict[str, Dict[str, Optional[str]]]:
        """Plain {kind: {local_key: remote_id}} view of the mappings."""
        return {
            kind: {key: record.descriptor.remote_id for key, record in records.items()}
            for kind, records in self._mappings.items()
            if records
        }

    def remove_resource(self, kind: str, local_key: str) -> Optional[ResourceRecord]:
        """Drop an entry after its compensating call succeeded."""
        records = self._mappings.get(kind)
        if not records:
            return None
        record = records.pop(local_key, None)
        if not records:
            del self._mappings[kind]
        return record

    # ------------------------------------------------------------------
    # Errors and warnings
    # ------------------------------------------------------------------

    def add_error(self, error: CategorizedError) -> None:
        self.errors.append(error)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(f"[{self._operation_id}] {message}")

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    async def advance_stage(self, next_stage: str) -> None:
        """Move to a successor stage and checkpoint its entry.

        Raises:
            InvalidTransitionError: ``next_stage`` is not a successor of the
                current stage
        """
        target = stage_name(next_stage)
        if target not in self.stage_graph or not self.stage_graph.can_advance(self._current_stage, target):
            raise InvalidTransitionError(self._current_stage, target)

        self._current_stage = target
        self._watermarks[target] = self._next_sequence
        self.stage_history.append(
            StageEntry(stage=target, reason="advance", watermark=self._next_sequence)
        )
        logger.info(f"[{self._operation_id}] Advanced to stage {target}")

        await self.checkpoint()
        if self.stage_graph.is_terminal(target):
            await self.state_manager.archive(self)

    async def checkpoint(self) -> None:
        """Persist a snapshot of the current stage."""
        await self.state_manager.checkpoint(self)
        self._checkpointed.add(self._current_stage)

    async def rollback_to(self, stage: str) -> 'RollbackReport':
        """Compensate everything recorded since ``stage`` was entered."""
        return await self.state_manager.rollback_to(stage_name(stage), self)

    async def restore_state(self, stage: str) -> None:
        """Reload the latest snapshot taken in ``stage``."""
        await self.state_manager.restore_state(stage_name(stage), self)

    def regress_to(self, stage: str) -> None:
        """Set the current stage back to an entered earlier stage.

        Only called by the state manager once compensation has run.
        """
        stage = stage_name(stage)
        if stage not in self._watermarks:
            raise StateError(f"Cannot roll back to {stage}: stage was never entered")
        if self.stage_graph.precedes(self._current_stage, stage):
            raise InvalidTransitionError(self._current_stage, stage)

        target_index = self.stage_graph.index(stage)
        for entered in list(self._watermarks):
            if self.stage_graph.index(entered) > target_index:
                del self._watermarks[entered]
                self._checkpointed.discard(entered)

        self._current_stage = stage
        self.stage_history.append(
            StageEntry(stage=stage, reason="rollback", watermark=self._watermarks[stage])
        )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "operation_id": self._operation_id,
            "operation_type": self.operation_type,
            "current_stage": self._current_stage,
            "next_sequence": self._next_sequence,
            "watermarks": dict(self._watermarks),
            "resources": [record.to_dict() for record in self.resources()],
            "stage_history": [entry.to_dict() for entry in self.stage_history],
            "warnings": list(self.warnings),
            "taken_at": _utcnow().isoformat()
        }

    def apply_snapshot(self, snapshot: Mapping[str, Any]) -> None:
        """Replace in-memory state with a snapshot.

        Errors and warnings are kept. Resources recorded after the snapshot
        was taken are kept as well: their remote copies exist, and only
        ``rollback_to`` may drop a mapping.
        """
        if snapshot.get("operation_id") != self._operation_id:
            raise StateError(
                f"Snapshot belongs to operation {snapshot.get('operation_id')}, "
                f"not {self._operation_id}"
            )

        newer = [r for r in self.resources() if r.sequence >= snapshot["next_sequence"]]

        self._current_stage = snapshot["current_stage"]
        self._next_sequence = max(self._next_sequence, snapshot["next_sequence"])
        self._watermarks = dict(snapshot["watermarks"])
        self._checkpointed = {s for s in self._checkpointed if s in self._watermarks}
        self._checkpointed.add(self._current_stage)

        self._mappings = {}
        for data in snapshot.get("resources", []):
            record = ResourceRecord.from_dict(data)
            self._mappings.setdefault(record.kind, {})[record.local_key] = record
        for record in newer:
            self._mappings.setdefault(record.kind, {})[record.local_key] = record
        if newer:
            logger.info(
                f"[{self._operation_id}] Kept {len(newer)} resource(s) recorded after the "
                f"{self._current_stage} snapshot"
            )

        self.stage_history = [StageEntry.from_dict(e) for e in snapshot.get("stage_history", [])]
        self.stage_history.append(
            StageEntry(
                stage=self._current_stage,
                reason="restore",
                watermark=self._watermarks.get(self._current_stage, self._next_sequence)
            )
        )

    def __repr__(self) -> str:
        return (
            f"ExecutionContext(operation_id={self._operation_id!r}, "
            f"stage={self._current_stage!r}, resources={self.resource_count})"
        )
