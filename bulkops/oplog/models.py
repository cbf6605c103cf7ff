"""Pydantic models for the operation audit trail."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _log_id() -> str:
    return f"log_{uuid.uuid4().hex[:16]}"


class LogLevel(str, Enum):
    """Severity of an audit log entry."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogCategory(str, Enum):
    """Kind of event an entry records."""
    OPERATION = "OPERATION"
    ERROR = "ERROR"
    RECOVERY = "RECOVERY"
    PERFORMANCE = "PERFORMANCE"


class MetricUnit(str, Enum):
    """Unit of a performance sample."""
    MS = "ms"
    SECONDS = "s"
    COUNT = "count"
    BYTES = "bytes"
    PERCENTAGE = "percentage"
    RATIO = "ratio"


class ContextSnapshot(BaseModel):
    """Summary of an execution context at the time of an event."""
    model_config = ConfigDict(frozen=True)

    resources: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Local keys of recorded resources per kind"
    )
    error_count: int = 0
    warning_count: int = 0
    extra: Dict[str, Any] = Field(default_factory=dict)


class LogMetadata(BaseModel):
    """Filterable metadata attached to every entry."""
    model_config = ConfigDict(frozen=True)

    operation_id: str
    stage: Optional[str] = None
    duration: Optional[float] = None
    resource_count: Optional[int] = None
    error_category: Optional[str] = None
    recovery_strategy: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class LogEntry(BaseModel):
    """One immutable audit event."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_log_id)
    timestamp: datetime = Field(default_factory=_utcnow)
    level: LogLevel
    category: LogCategory
    message: str
    context: ContextSnapshot = Field(default_factory=ContextSnapshot)
    metadata: LogMetadata


class AnalyticsEvent(BaseModel):
    """Event forwarded to the analytics sink."""
    event_name: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


class PerformanceMetric(BaseModel):
    """A single performance sample."""
    name: str
    value: float
    unit: MetricUnit = MetricUnit.COUNT
    tags: Dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


class RecoveryAction(BaseModel):
    """A recovery attempt as recorded in the audit trail."""
    type: str = Field(..., description="Handler that ran, e.g. 'retry' or 'rollback'")
    strategy: str
    duration: Optional[float] = Field(default=None, description="Seconds spent in the handler")
    details: Dict[str, Any] = Field(default_factory=dict)
