"""Error taxonomy for bulk operations.

This module defines the error types, categories and recovery strategies
used across the engine, the ``ApiError`` raised by remote API adapters,
and the immutable ``CategorizedError`` record consumed by the recovery
router.
"""

import traceback
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional


class ErrorType(str, Enum):
    """Classification of a single failure."""
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    SYSTEM = "SYSTEM"
    UNKNOWN = "UNKNOWN"


class ErrorCategory(str, Enum):
    """Coarse taxonomy grouping error types."""
    API_LIMIT = "API_LIMIT"      # Remote throttling
    TRANSPORT = "TRANSPORT"      # Network, timeouts, 5xx
    API_ERROR = "API_ERROR"      # Semantic rejections (auth, validation, missing)
    SYSTEM = "SYSTEM"            # Engine invariant violations, rollback failures
    UNKNOWN = "UNKNOWN"


class RecoveryStrategy(str, Enum):
    """Response class chosen for a categorized error."""
    IMMEDIATE_RETRY = "IMMEDIATE_RETRY"
    DELAYED_RETRY = "DELAYED_RETRY"
    PARTIAL_ROLLBACK = "PARTIAL_ROLLBACK"
    FULL_ROLLBACK = "FULL_ROLLBACK"
    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"

    @property
    def is_retry(self) -> bool:
        return self in (RecoveryStrategy.IMMEDIATE_RETRY, RecoveryStrategy.DELAYED_RETRY)

    @property
    def is_rollback(self) -> bool:
        return self in (RecoveryStrategy.PARTIAL_ROLLBACK, RecoveryStrategy.FULL_ROLLBACK)


RETRYABLE_TYPES = frozenset({
    ErrorType.RATE_LIMIT,
    ErrorType.NETWORK_ERROR,
    ErrorType.TIMEOUT,
    ErrorType.SERVER_ERROR,
})

TYPE_CATEGORIES: Dict[ErrorType, ErrorCategory] = {
    ErrorType.RATE_LIMIT: ErrorCategory.API_LIMIT,
    ErrorType.SERVER_ERROR: ErrorCategory.TRANSPORT,
    ErrorType.NETWORK_ERROR: ErrorCategory.TRANSPORT,
    ErrorType.TIMEOUT: ErrorCategory.TRANSPORT,
    ErrorType.AUTHENTICATION: ErrorCategory.API_ERROR,
    ErrorType.AUTHORIZATION: ErrorCategory.API_ERROR,
    ErrorType.NOT_FOUND: ErrorCategory.API_ERROR,
    ErrorType.VALIDATION: ErrorCategory.API_ERROR,
    ErrorType.SYSTEM: ErrorCategory.SYSTEM,
    ErrorType.UNKNOWN: ErrorCategory.UNKNOWN,
}


class EngineFault(Exception):
    """Internal invariant violation; always classified as SYSTEM."""
    pass


class ApiError(Exception):
    """Failure reported by a remote API adapter.

    An explicit ``error_type`` and ``retryable`` flag take precedence over
    status-code classification.
    """

    def __init__(
        self,
        message: str,
        *,
        error_type: Optional[ErrorType] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
        retryable: Optional[bool] = None,
        operation_id: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.code = code
        self.details = details
        self.retryable = retryable
        self.operation_id = operation_id

    def __repr__(self) -> str:
        return (
            f"ApiError({self.message!r}, error_type={self.error_type}, "
            f"status_code={self.status_code}, code={self.code!r})"
        )


@dataclass(frozen=True)
class ErrorDetails:
    """Typed context of a categorized error.

    ``extra`` holds category-specific detail that has no dedicated field.
    """
    operation_id: Optional[str] = None
    stage: Optional[str] = None
    attempt: int = 0
    last_stable_state: Optional[str] = None
    resource_kind: Optional[str] = None
    resource_id: Optional[str] = None
    status_code: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "stage": self.stage,
            "attempt": self.attempt,
            "last_stable_state": self.last_stable_state,
            "resource_kind": self.resource_kind,
            "resource_id": self.resource_id,
            "status_code": self.status_code,
            "extra": dict(self.extra)
        }


@dataclass(frozen=True)
class CategorizedError:
    """Immutable, actionable description of a failure.

    ``unit`` is the failed unit of work, when the failure came from one,
    so that retry handlers can re-submit it.
    """
    code: str
    error_type: ErrorType
    category: ErrorCategory
    retryable: bool
    recovery_strategy: RecoveryStrategy
    message: str
    context: ErrorDetails = field(default_factory=ErrorDetails)
    cause: Optional[BaseException] = field(default=None, compare=False)
    unit: Optional[Callable[[], Awaitable[Any]]] = field(default=None, compare=False, repr=False)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)

    @classmethod
    def system(
        cls,
        code: str,
        message: str,
        context: Optional[ErrorDetails] = None,
        cause: Optional[BaseException] = None
    ) -> 'CategorizedError':
        """Build a SYSTEM error, which always requires manual intervention."""
        return cls(
            code=code,
            error_type=ErrorType.SYSTEM,
            category=ErrorCategory.SYSTEM,
            retryable=False,
            recovery_strategy=RecoveryStrategy.MANUAL_INTERVENTION,
            message=message,
            context=context or ErrorDetails(),
            cause=cause
        )

    def with_strategy(self, strategy: RecoveryStrategy) -> 'CategorizedError':
        """Copy of this error routed to a different strategy."""
        return replace(self, recovery_strategy=strategy)

    @property
    def stack_trace(self) -> Optional[str]:
        if self.cause is None:
            return None
        return ''.join(traceback.format_exception(
            type(self.cause), self.cause, self.cause.__traceback__
        ))

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view for logging."""
        return {
            "code": self.code,
            "error_type": self.error_type.value,
            "category": self.category.value,
            "retryable": self.retryable,
            "recovery_strategy": self.recovery_strategy.value,
            "message": self.message,
            "context": self.context.to_dict(),
            "cause_type": type(self.cause).__name__ if self.cause else None,
            "occurred_at": self.occurred_at.isoformat()
        }
