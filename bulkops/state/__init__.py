"""Execution state: stages, contexts, snapshots and rollback."""

from .stages import OperationStage, StageGraph, DEFAULT_STAGE_GRAPH, stage_name
from .store import KeyValueStore, InMemoryKeyValueStore, FileKeyValueStore
from .context import (
    ExecutionContext,
    ResourceDescriptor,
    ResourceRecord,
    StageEntry,
    StateError,
    InvalidTransitionError,
    SnapshotNotFoundError
)
from .manager import StateManager, RollbackReport, Compensator

__all__ = [
    'OperationStage',
    'StageGraph',
    'DEFAULT_STAGE_GRAPH',
    'stage_name',
    'KeyValueStore',
    'InMemoryKeyValueStore',
    'FileKeyValueStore',
    'ExecutionContext',
    'ResourceDescriptor',
    'ResourceRecord',
    'StageEntry',
    'StateError',
    'InvalidTransitionError',
    'SnapshotNotFoundError',
    'StateManager',
    'RollbackReport',
    'Compensator'
]
