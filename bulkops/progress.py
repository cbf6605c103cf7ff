"""Per-operation progress and activity tracking.

The tracker keeps a lightweight, in-process view of each running operation:
its status, a 0-100 progress percentage and a chronological activity log.
The request queue writes queued/processing/retry lines here and batch
submissions report aggregate progress through it.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


class OperationStatus(str, Enum):
    """Lifecycle status of a tracked operation."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class ActivityLevel(str, Enum):
    """Severity of an activity log line."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class ActivityLog:
    """A single activity line recorded against an operation."""
    level: ActivityLevel
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TrackedOperation:
    """Tracked state of one operation."""
    id: str
    type: str
    status: OperationStatus = OperationStatus.PENDING
    progress: float = 0.0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[ActivityLog] = field(default_factory=list)

    def logs_at(self, level: ActivityLevel) -> List[ActivityLog]:
        """Activity lines recorded at the given level."""
        return [log for log in self.logs if log.level == level]


class OperationTracker:
    """Tracks progress and activity of in-flight operations.

    Unknown operation ids are ignored by the mutating methods so that work
    submitted with an id the tracker never saw does not fail.
    """

    def __init__(self):
        self._operations: Dict[str, TrackedOperation] = {}
        self._listeners: Dict[str, List[Callable[[TrackedOperation], None]]] = {}

    def create_operation(
        self,
        operation_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        operation_id: Optional[str] = None
    ) -> str:
        """Register a new operation and return its id."""
        operation_id = operation_id or f"op_{uuid.uuid4().hex[:12]}"
        self._operations[operation_id] = TrackedOperation(
            id=operation_id,
            type=operation_type,
            metadata=dict(metadata or {})
        )
        self._notify(operation_id)
        return operation_id

    def get_operation(self, operation_id: str) -> Optional[TrackedOperation]:
        return self._operations.get(operation_id)

    def start_operation(self, operation_id: str) -> None:
        operation = self._operations.get(operation_id)
        if not operation:
            return
        operation.status = OperationStatus.RUNNING
        operation.progress = 0.0
        operation.started_at = datetime.now(timezone.utc)
        self.add_log(operation_id, ActivityLevel.INFO, "Operation started")

    def update_progress(self, operation_id: str, progress: float) -> None:
        """Set progress as a percentage, clamped to [0, 100]."""
        operation = self._operations.get(operation_id)
        if not operation:
            return
        operation.progress = min(max(progress, 0.0), 100.0)
        self._notify(operation_id)

    def complete_operation(self, operation_id: str) -> None:
        operation = self._operations.get(operation_id)
        if not operation:
            return
        operation.status = OperationStatus.COMPLETED
        operation.progress = 100.0
        operation.ended_at = datetime.now(timezone.utc)
        self.add_log(operation_id, ActivityLevel.INFO, "Operation completed")

    def fail_operation(self, operation_id: str, error: str) -> None:
        operation = self._operations.get(operation_id)
        if not operation:
            return
        operation.status = OperationStatus.FAILED
        operation.error = error
        operation.ended_at = datetime.now(timezone.utc)
        self.add_log(operation_id, ActivityLevel.ERROR, f"Operation failed: {error}")

    def cancel_operation(self, operation_id: str) -> None:
        operation = self._operations.get(operation_id)
        if not operation:
            return
        operation.status = OperationStatus.CANCELED
        operation.ended_at = datetime.now(timezone.utc)
        self.add_log(operation_id, ActivityLevel.INFO, "Operation canceled")

    def add_log(
        self,
        operation_id: str,
        level: ActivityLevel,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Append an activity line to an operation."""
        operation = self._operations.get(operation_id)
        if not operation:
            return
        operation.logs.append(ActivityLog(level=level, message=message, details=dict(details or {})))
        self._notify(operation_id)

    def subscribe(
        self,
        operation_id: str,
        callback: Callable[[TrackedOperation], None]
    ) -> Callable[[], None]:
        """Subscribe to changes of an operation; returns an unsubscribe function."""
        self._listeners.setdefault(operation_id, []).append(callback)

        def unsubscribe() -> None:
            listeners = self._listeners.get(operation_id, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def get_operations(self) -> List[TrackedOperation]:
        return list(self._operations.values())

    def _notify(self, operation_id: str) -> None:
        operation = self._operations.get(operation_id)
        if not operation:
            return
        for callback in list(self._listeners.get(operation_id, [])):
            try:
                callback(operation)
            except Exception as e:
                logger.error(f"Operation listener failed for {operation_id}: {e}")
