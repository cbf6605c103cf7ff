"""Resilient bulk-operation execution engine.

Drives large, multi-step campaigns against rate-limited remote APIs: a
throttled request queue with backoff retries, staged execution contexts
with snapshot and rollback support, categorized error recovery and a
structured operation audit trail.
"""

__version__ = "0.1.0"

from .models import EngineConfig, QueueConfig, RecoveryConfig, LoggerConfig
from .progress import OperationTracker
from .queue import RequestQueue
from .state import ExecutionContext, OperationStage, StageGraph, StateManager
from .errors import ApiError, CategorizedError, ErrorClassifier
from .recovery import RecoveryRouter
from .oplog import OperationLogger
from .runner import BulkOperationRunner, ResourceStep, StageReport

__all__ = [
    '__version__',
    'EngineConfig',
    'QueueConfig',
    'RecoveryConfig',
    'LoggerConfig',
    'OperationTracker',
    'RequestQueue',
    'ExecutionContext',
    'OperationStage',
    'StageGraph',
    'StateManager',
    'ApiError',
    'CategorizedError',
    'ErrorClassifier',
    'RecoveryRouter',
    'OperationLogger',
    'BulkOperationRunner',
    'ResourceStep',
    'StageReport'
]
