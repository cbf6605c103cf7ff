"""Recovery routing and handlers."""

from .handlers import (
    Incident,
    RecoveryOutcome,
    OperatorChannel,
    IncidentTracker,
    LoggingOperatorChannel,
    InMemoryIncidentTracker,
    RecoveryHandler,
    RetryHandler,
    RollbackHandler,
    ManualInterventionHandler
)
from .router import RecoveryRouter, RecoveryError, UnknownRecoveryStrategyError

__all__ = [
    'Incident',
    'RecoveryOutcome',
    'OperatorChannel',
    'IncidentTracker',
    'LoggingOperatorChannel',
    'InMemoryIncidentTracker',
    'RecoveryHandler',
    'RetryHandler',
    'RollbackHandler',
    'ManualInterventionHandler',
    'RecoveryRouter',
    'RecoveryError',
    'UnknownRecoveryStrategyError'
]
