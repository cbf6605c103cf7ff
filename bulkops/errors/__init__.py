"""Error taxonomy and classification."""

from .taxonomy import (
    ErrorType,
    ErrorCategory,
    RecoveryStrategy,
    RETRYABLE_TYPES,
    TYPE_CATEGORIES,
    EngineFault,
    ApiError,
    ErrorDetails,
    CategorizedError
)
from .classifier import (
    ErrorClassifier,
    error_type_of,
    status_code_of,
    unwrap_error,
    extract_error_details,
    user_friendly_message
)

__all__ = [
    'ErrorType',
    'ErrorCategory',
    'RecoveryStrategy',
    'RETRYABLE_TYPES',
    'TYPE_CATEGORIES',
    'EngineFault',
    'ApiError',
    'ErrorDetails',
    'CategorizedError',
    'ErrorClassifier',
    'error_type_of',
    'status_code_of',
    'unwrap_error',
    'extract_error_details',
    'user_friendly_message'
]
