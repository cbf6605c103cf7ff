"""Request queue package for throttled remote calls."""

from .backoff import calculate_retry_delay, retry_delay_for
from .request_queue import (
    RequestQueue,
    WorkItem,
    QueueStats,
    QueuePriority,
    QueueError,
    QueueClosedError,
    QueueClearedError,
    RequestTimeoutError,
    RequestFailedError,
    BatchError
)

__all__ = [
    'RequestQueue',
    'WorkItem',
    'QueueStats',
    'QueuePriority',
    'QueueError',
    'QueueClosedError',
    'QueueClearedError',
    'RequestTimeoutError',
    'RequestFailedError',
    'BatchError',
    'calculate_retry_delay',
    'retry_delay_for'
]
