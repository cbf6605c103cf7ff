"""Classification of failures into categorized, routable errors."""

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Tuple

from ..models.config import RecoveryConfig
from ..queue import BatchError, RequestFailedError
from .taxonomy import (
    RETRYABLE_TYPES,
    TYPE_CATEGORIES,
    ApiError,
    CategorizedError,
    EngineFault,
    ErrorDetails,
    ErrorType,
    RecoveryStrategy,
)

if TYPE_CHECKING:
    from ..state.context import ExecutionContext


logger = logging.getLogger(__name__)

STATUS_TYPES: Dict[int, ErrorType] = {
    429: ErrorType.RATE_LIMIT,
    401: ErrorType.AUTHENTICATION,
    403: ErrorType.AUTHORIZATION,
    404: ErrorType.NOT_FOUND,
    400: ErrorType.VALIDATION,
}

NETWORK_MARKERS = ("network", "connection", "offline")

FRIENDLY_MESSAGES: Dict[ErrorType, str] = {
    ErrorType.RATE_LIMIT: "Rate limit exceeded. Please try again later.",
    ErrorType.AUTHENTICATION: "Authentication failed. Please sign in again.",
    ErrorType.AUTHORIZATION: "You do not have permission to perform this action.",
    ErrorType.NOT_FOUND: "The requested resource was not found.",
    ErrorType.SERVER_ERROR: "A server error occurred. Our team has been notified.",
    ErrorType.NETWORK_ERROR: "Network error. Please check your internet connection.",
    ErrorType.TIMEOUT: "The request timed out. Please try again.",
    ErrorType.SYSTEM: "An internal error occurred. An operator has been notified.",
}


def status_code_of(error: BaseException) -> Optional[int]:
    """HTTP-style status of an error or its attached response, if any."""
    for source in (error, getattr(error, "response", None)):
        if source is None:
            continue
        for attr in ("status_code", "status"):
            value = getattr(source, attr, None)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
    return None


def unwrap_error(error: BaseException) -> Tuple[BaseException, Optional[int]]:
    """Strip queue wrappers, returning the underlying failure and retries made."""
    retries = None
    while True:
        if isinstance(error, RequestFailedError):
            retries = error.attempts - 1
            error = error.last_error
        elif isinstance(error, BatchError) and error.failures:
            error = error.failures[min(error.failures)]
        else:
            return error, retries


def error_type_of(error: BaseException) -> ErrorType:
    """Classify an exception; first match wins."""
    if isinstance(error, ApiError) and error.error_type is not None:
        return error.error_type
    if isinstance(error, EngineFault):
        return ErrorType.SYSTEM

    status = status_code_of(error)
    if status is not None:
        if status in STATUS_TYPES:
            return STATUS_TYPES[status]
        if status >= 500:
            return ErrorType.SERVER_ERROR

    message = str(error).lower()
    if isinstance(error, ConnectionError) or any(marker in message for marker in NETWORK_MARKERS):
        return ErrorType.NETWORK_ERROR
    if isinstance(error, TimeoutError) or "timeout" in message:
        return ErrorType.TIMEOUT

    return ErrorType.UNKNOWN


def extract_error_details(error: BaseException) -> Dict[str, Any]:
    """Pull message, code and details out of an error or its response payload.

    Returns:
        Dictionary with ``message``, ``code`` and ``details`` keys
    """
    message = str(error) or "An unknown error occurred"
    code = getattr(error, "code", None)
    details = getattr(error, "details", None)

    response = getattr(error, "response", None)
    data = getattr(response, "data", None) if response is not None else None
    if data is None and response is not None and callable(getattr(response, "json", None)):
        try:
            data = response.json()
        except ValueError as e:
            logger.debug(f"Error response body is not JSON: {e}")

    if isinstance(data, dict):
        nested = data.get("error") if isinstance(data.get("error"), dict) else {}
        message = nested.get("message") or data.get("message") or message
        code = nested.get("code") or data.get("code") or code
        if nested.get("details") is not None:
            details = nested["details"]
        elif data.get("details") is not None:
            details = data["details"]
        else:
            details = nested or data

    return {"message": message, "code": code, "details": details}


def user_friendly_message(error: BaseException) -> str:
    """Short message suitable for showing to an operator or end user."""
    error, _ = unwrap_error(error)
    error_type = error_type_of(error)
    message = extract_error_details(error)["message"]
    if error_type == ErrorType.VALIDATION:
        return f"Validation error: {message}"
    return FRIENDLY_MESSAGES.get(error_type, message or "An unknown error occurred.")


class ErrorClassifier:
    """Builds CategorizedErrors and picks their recovery strategy."""

    def __init__(self, config: Optional[RecoveryConfig] = None):
        self.config = config or RecoveryConfig()

    def is_retryable(self, error: BaseException) -> bool:
        """Whether a raw failure is worth retrying.

        Suitable as the request queue's ``retry_on`` predicate.
        """
        error, _ = unwrap_error(error)
        if isinstance(error, ApiError) and error.retryable is not None:
            return error.retryable
        return error_type_of(error) in RETRYABLE_TYPES

    def classify(
        self,
        error: BaseException,
        context: Optional['ExecutionContext'] = None,
        *,
        attempt: Optional[int] = None,
        code: Optional[str] = None,
        unit: Optional[Callable[[], Awaitable[Any]]] = None,
        resource_kind: Optional[str] = None,
        resource_id: Optional[str] = None,
        stage_has_resources: Optional[bool] = None
    ) -> CategorizedError:
        """Classify a failure and append the result to the context.

        Args:
            error: The failure, possibly wrapped by the request queue
            context: Execution context of the failing operation
            attempt: Retries already made (default: taken from the queue
                wrapper, else 0)
            code: Explicit error code
            unit: The failed unit of work, kept for retry handlers
            resource_kind: Kind of the resource being created
            resource_id: Local key of the resource being created
            stage_has_resources: Whether resources were created in the current
                stage before the failure (default: read from the context)

        Returns:
            The categorized error
        """
        cause, retries = unwrap_error(error)
        if attempt is None:
            attempt = retries or 0

        error_type = error_type_of(cause)
        retryable = self.is_retryable(cause) and error_type != ErrorType.SYSTEM
        extracted = extract_error_details(cause)

        strategy = self._choose_strategy(error_type, retryable, attempt, context, stage_has_resources)
        details = ErrorDetails(
            operation_id=context.operation_id if context else getattr(cause, "operation_id", None),
            stage=context.current_stage if context else None,
            attempt=attempt,
            last_stable_state=context.last_stable_stage if context else None,
            resource_kind=resource_kind,
            resource_id=resource_id,
            status_code=status_code_of(cause),
            extra={"details": extracted["details"]} if extracted["details"] is not None else {}
        )

        categorized = CategorizedError(
            code=code or extracted["code"] or error_type.value,
            error_type=error_type,
            category=TYPE_CATEGORIES[error_type],
            retryable=retryable,
            recovery_strategy=strategy,
            message=extracted["message"],
            context=details,
            cause=cause,
            unit=unit
        )

        logger.info(
            f"Classified {type(cause).__name__} as {error_type.value} "
            f"({categorized.category.value}), strategy {strategy.value}"
        )
        if context is not None:
            context.add_error(categorized)
        return categorized

    def _choose_strategy(
        self,
        error_type: ErrorType,
        retryable: bool,
        attempt: int,
        context: Optional['ExecutionContext'],
        stage_has_resources: Optional[bool] = None
    ) -> RecoveryStrategy:
        if retryable and attempt < self.config.retry_ceiling:
            return RecoveryStrategy.IMMEDIATE_RETRY if attempt == 0 else RecoveryStrategy.DELAYED_RETRY

        if error_type == ErrorType.SYSTEM or context is None:
            return RecoveryStrategy.MANUAL_INTERVENTION

        if stage_has_resources is None:
            stage_has_resources = bool(context.resources_in_current_stage())
        if stage_has_resources:
            if context.last_stable_stage is not None:
                return RecoveryStrategy.PARTIAL_ROLLBACK
            return RecoveryStrategy.FULL_ROLLBACK

        return RecoveryStrategy.MANUAL_INTERVENTION
