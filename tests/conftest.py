"""Shared test fixtures and configuration for bulkops tests."""

import logging
from typing import Dict, List, Tuple

import pytest
import pytest_asyncio

from bulkops.errors import ApiError
from bulkops.models.config import QueueConfig, RecoveryConfig
from bulkops.progress import OperationTracker
from bulkops.queue import RequestQueue
from bulkops.state import InMemoryKeyValueStore, StateManager


class FakeRemoteApi:
    """Scripted stand-in for a remote API.

    ``failures`` maps a local key to the exceptions the next create calls
    for that key raise, in order; ``broken_deletes`` lists local keys whose
    delete always fails.
    """

    def __init__(self):
        self.failures: Dict[str, List[Exception]] = {}
        self.broken_deletes: set = set()
        self.created: List[Tuple[str, str]] = []
        self.deleted: List[str] = []
        self.calls: Dict[str, int] = {}

    def fail(self, local_key: str, *errors: Exception) -> None:
        self.failures.setdefault(local_key, []).extend(errors)

    def creator(self, kind: str, local_key: str):
        async def create():
            self.calls[local_key] = self.calls.get(local_key, 0) + 1
            pending = self.failures.get(local_key)
            if pending:
                raise pending.pop(0)
            self.created.append((kind, local_key))
            return {"remote_id": f"remote-{kind}-{local_key}", "name": local_key}
        return create

    async def delete(self, local_key, descriptor):
        if local_key in self.broken_deletes:
            raise ApiError(f"Cannot delete {local_key}", status_code=500)
        self.deleted.append(local_key)


@pytest.fixture
def fast_queue_config():
    """Queue settings that keep retries and spacing in the millisecond range."""
    return QueueConfig(
        minimum_delay=0.0,
        initial_retry_delay=0.01,
        max_retry_delay=0.05,
        poll_interval=0.005
    )


@pytest.fixture
def recovery_config():
    return RecoveryConfig(retry_ceiling=3)


@pytest.fixture
def tracker():
    return OperationTracker()


@pytest_asyncio.fixture
async def queue(fast_queue_config, tracker):
    """Request queue closed after the test."""
    queue = RequestQueue(fast_queue_config, tracker=tracker)
    yield queue
    await queue.close()


@pytest.fixture
def fake_api():
    return FakeRemoteApi()


@pytest.fixture
def compensations():
    """Ordered record of compensating calls made by the state manager."""
    return []


@pytest.fixture
def state_manager(compensations):
    async def undo(local_key, descriptor):
        compensations.append((descriptor.kind, local_key))

    return StateManager(
        compensators={"campaign": undo, "ad_group": undo, "keyword": undo},
        store=InMemoryKeyValueStore()
    )


@pytest_asyncio.fixture
async def context(state_manager):
    """Execution context opened in the VALIDATION stage."""
    return await state_manager.open_context(operation_id="op-test")


@pytest.fixture(autouse=True)
def quiet_engine_logs(caplog):
    caplog.set_level(logging.DEBUG, logger="bulkops")
