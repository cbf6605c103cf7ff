"""Rate-limited, concurrency-bounded request queue with exponential backoff.

This module implements the outbound call queue used for every remote
mutation of a bulk operation. Units of work are dispatched by priority and
enqueue order while honouring a concurrency ceiling, a rolling
requests-per-minute window and a minimum spacing between dispatches.
Failed units are retried with jittered exponential backoff up to the
configured retry limit and then failed terminally.
"""

import asyncio
import itertools
import logging
import random
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Set

from ..models.config import QueueConfig
from ..progress import ActivityLevel, OperationTracker
from .backoff import retry_delay_for


logger = logging.getLogger(__name__)

UnitOfWork = Callable[[], Awaitable[Any]]
ProgressCallback = Callable[[float], None]

RATE_WINDOW_SECONDS = 60.0


class QueuePriority(IntEnum):
    """Dispatch weights; higher values are dispatched first."""
    NORMAL = 1
    URGENT = 2


class QueueError(Exception):
    """Base class for request queue failures."""
    pass


class QueueClosedError(QueueError):
    """Raised when submitting to a closed queue."""
    pass


class QueueClearedError(QueueError):
    """Raised for pending items discarded by clear_queue()."""

    def __init__(self, label: str):
        super().__init__(f"Request removed from queue: {label}")
        self.label = label


class RequestTimeoutError(QueueError):
    """Raised when an item is still queued after its timeout elapsed."""

    def __init__(self, label: str, timeout: float):
        super().__init__(f"Request timeout after {timeout:.2f}s: {label}")
        self.label = label
        self.timeout = timeout


class RequestFailedError(QueueError):
    """Raised when an item fails terminally.

    The last underlying failure is available as ``last_error`` and is also
    chained as ``__cause__``.
    """

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        super().__init__(f"Request failed after {attempts} attempt(s): {label}: {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        self.__cause__ = last_error


class BatchError(QueueError):
    """Raised by batch_enqueue() when one or more units failed terminally.

    ``results`` is index-aligned with the submitted units and holds either
    the unit's result or its exception; ``failures`` maps failed indices
    to their exceptions.
    """

    def __init__(self, label: str, results: List[Any], failures: Dict[int, BaseException]):
        super().__init__(f"{len(failures)}/{len(results)} requests failed in batch: {label}")
        self.label = label
        self.results = results
        self.failures = failures

    @property
    def succeeded(self) -> Dict[int, Any]:
        return {i: r for i, r in enumerate(self.results) if i not in self.failures}


@dataclass
class WorkItem:
    """A unit of work owned by the queue until completion or final failure."""
    id: str
    execute: UnitOfWork
    future: asyncio.Future
    priority: int = QueuePriority.NORMAL
    retry_count: int = 0
    enqueued_at: float = field(default_factory=time.monotonic)
    sequence: int = 0
    operation_id: Optional[str] = None
    label: Optional[str] = None
    on_progress: Optional[ProgressCallback] = None
    timeout_handle: Optional[asyncio.TimerHandle] = None

    def sort_key(self):
        """Descending priority, then FIFO by enqueue time."""
        return (-self.priority, self.enqueued_at, self.sequence)

    @property
    def display_label(self) -> str:
        return self.label or "Unnamed request"


@dataclass
class QueueStats:
    """Point-in-time snapshot of queue state."""
    queue_length: int
    active_requests: int
    pending_retries: int
    requests_in_last_minute: int
    estimated_time_to_completion: float
    retry_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue_length": self.queue_length,
            "active_requests": self.active_requests,
            "pending_retries": self.pending_retries,
            "requests_in_last_minute": self.requests_in_last_minute,
            "estimated_time_to_completion": self.estimated_time_to_completion,
            "retry_rate": self.retry_rate
        }


class RequestQueue:
    """Async request queue with rate limiting, concurrency control and retries.

    Features:
    - Priority dispatch (urgent before normal, FIFO within a tier)
    - Concurrency ceiling and rolling one-minute rate window
    - Minimum spacing between consecutive dispatches
    - Jittered exponential backoff retries with a hard retry limit
    - Per-item queue timeouts for items that have not started
    - Batch submission with monotonic completed/total progress
    - Pause/resume, clearing and statistics
    """

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        *,
        retry_on: Optional[Callable[[BaseException], bool]] = None,
        tracker: Optional[OperationTracker] = None,
        rng: Optional[random.Random] = None
    ):
        """Initialize the request queue.

        Args:
            config: Throttling and retry configuration
            retry_on: Predicate deciding whether a failure is retried (default: always)
            tracker: Optional operation tracker receiving per-operation activity
            rng: Random source used for retry jitter
        """
        self._config = config or QueueConfig()
        self._retry_on = retry_on
        self._tracker = tracker
        self._rng = rng

        self._queue: List[WorkItem] = []
        self._active_requests = 0
        self._request_history: Deque[float] = deque()
        self._last_dispatch: Optional[float] = None
        self._sequence = itertools.count(1)

        self._paused = False
        self._closed = False
        self._processing_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._pending_retries: Dict[asyncio.Task, WorkItem] = {}

        self._outcomes = {"success": 0, "failure": 0}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        unit: UnitOfWork,
        *,
        urgent: bool = False,
        timeout: Optional[float] = None,
        operation_id: Optional[str] = None,
        label: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> Any:
        """Submit a unit of work and wait for its result.

        The unit must be safe to execute more than once. It runs at most
        ``retry_limit + 1`` times.

        Args:
            unit: Zero-argument coroutine function performing the remote call
            urgent: Dispatch ahead of normal-priority items
            timeout: Seconds the item may wait in the queue before it is
                removed and failed; does not cancel a started call
            operation_id: Operation the unit belongs to, for activity tracking
            label: Human readable label
            on_progress: Called with 0.0 at dispatch and 1.0 on completion

        Returns:
            The unit's result.

        Raises:
            RequestTimeoutError: The item did not start within ``timeout``
            RequestFailedError: The unit failed terminally
            QueueClearedError: The item was discarded by clear_queue()
            QueueClosedError: The queue has been closed
        """
        if self._closed:
            raise QueueClosedError("Queue has been closed")

        loop = asyncio.get_running_loop()
        item = WorkItem(
            id=uuid.uuid4().hex[:9],
            execute=unit,
            future=loop.create_future(),
            priority=QueuePriority.URGENT if urgent else QueuePriority.NORMAL,
            sequence=next(self._sequence),
            operation_id=operation_id,
            label=label,
            on_progress=on_progress
        )

        self._track(
            operation_id,
            ActivityLevel.INFO,
            f"Queued request: {item.display_label}",
            {"request_id": item.id, "queue_length": len(self._queue)}
        )

        self._queue.append(item)
        if timeout is not None:
            item.timeout_handle = loop.call_later(timeout, self._expire, item, timeout)

        self._ensure_processing()
        return await item.future

    async def batch_enqueue(
        self,
        units: Sequence[UnitOfWork],
        *,
        concurrency: Optional[int] = None,
        batch_label: Optional[str] = None,
        operation_id: Optional[str] = None,
        urgent: bool = False,
        timeout: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
        return_exceptions: bool = False
    ) -> List[Any]:
        """Submit units in chunks and return index-aligned results.

        Chunks of ``concurrency`` units are submitted together and awaited
        before the next chunk starts. A failed unit never aborts its
        siblings or later chunks.

        Args:
            units: Units of work
            concurrency: Chunk size (default: max_concurrent_requests)
            batch_label: Label prefix for the items
            operation_id: Operation for activity tracking and progress
            urgent: Submit every unit as urgent
            timeout: Per-item queue timeout
            on_progress: Called with completed/total after each unit settles
            return_exceptions: Place exceptions in the result list instead
                of raising BatchError

        Returns:
            Results in input order.

        Raises:
            BatchError: One or more units failed and return_exceptions is False
        """
        units = list(units)
        total = len(units)
        if total == 0:
            return []

        if concurrency is None:
            concurrency = self._config.max_concurrent_requests
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        label = batch_label or "Batch"
        self._track(
            operation_id,
            ActivityLevel.INFO,
            f"Starting batch of {total} requests: {label}",
            {"batch_size": total, "concurrency": concurrency}
        )

        results: List[Any] = [None] * total
        failures: Dict[int, BaseException] = {}
        completed = 0

        def settle() -> None:
            nonlocal completed
            completed += 1
            fraction = completed / total
            if on_progress:
                try:
                    on_progress(fraction)
                except Exception as e:
                    logger.error(f"Batch progress callback failed: {e}")
            if self._tracker and operation_id:
                self._tracker.update_progress(operation_id, fraction * 100)

        async def run_one(index: int, unit: UnitOfWork):
            try:
                value = await self.enqueue(
                    unit,
                    urgent=urgent,
                    timeout=timeout,
                    operation_id=operation_id,
                    label=f"{label} {index + 1}/{total}"
                )
                return True, value
            except Exception as e:
                return False, e
            finally:
                settle()

        for start in range(0, total, concurrency):
            chunk = units[start:start + concurrency]
            outcomes = await asyncio.gather(
                *(run_one(start + offset, unit) for offset, unit in enumerate(chunk))
            )
            for offset, (ok, value) in enumerate(outcomes):
                results[start + offset] = value
                if not ok:
                    failures[start + offset] = value

            done = min(start + concurrency, total)
            self._track(
                operation_id,
                ActivityLevel.INFO,
                f"Completed {done}/{total} requests",
                {"progress": done / total * 100}
            )

        self._track(
            operation_id,
            ActivityLevel.INFO if not failures else ActivityLevel.WARNING,
            f"Completed batch of {total} requests: {label}",
            {"succeeded": total - len(failures), "failed": len(failures)}
        )

        if failures and not return_exceptions:
            raise BatchError(label, results, failures)
        return results

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def pause(self) -> None:
        """Stop dispatching new items; in-flight items complete normally."""
        self._paused = True
        logger.info("Request queue paused")

    def resume(self) -> None:
        """Restart the dispatch loop."""
        self._paused = False
        logger.info("Request queue resumed")
        self._ensure_processing()

    @property
    def is_paused(self) -> bool:
        return self._paused

    def clear_queue(self) -> int:
        """Discard pending items and pending retries.

        Every discarded item is failed with QueueClearedError.

        Returns:
            Number of discarded items.
        """
        cleared = self._queue
        self._queue = []

        for task, item in list(self._pending_retries.items()):
            task.cancel()
            cleared.append(item)
        self._pending_retries.clear()

        for item in cleared:
            if item.timeout_handle:
                item.timeout_handle.cancel()
            self._track(item.operation_id, ActivityLevel.WARNING, f"Request cleared: {item.display_label}")
            if not item.future.done():
                item.future.set_exception(QueueClearedError(item.display_label))

        if cleared:
            logger.info(f"Cleared {len(cleared)} pending requests")
        return len(cleared)

    def reset_stats(self) -> None:
        """Reset success/failure accounting used for the retry rate."""
        self._outcomes = {"success": 0, "failure": 0}

    def get_config(self) -> QueueConfig:
        return self._config.model_copy()

    def update_config(self, **changes: Any) -> QueueConfig:
        """Apply a partial configuration update.

        Raises:
            pydantic.ValidationError: If the merged configuration is invalid
        """
        self._config = QueueConfig(**{**self._config.model_dump(), **changes})
        logger.info(f"Request queue configuration updated: {sorted(changes)}")
        return self.get_config()

    async def close(self) -> None:
        """Discard pending work and stop background tasks."""
        self._closed = True
        self.clear_queue()

        tasks = [t for t in (self._processing_task, self._sweep_task) if t]
        tasks.extend(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._processing_task = None
        self._sweep_task = None
        logger.info("Request queue closed")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> QueueStats:
        """Snapshot of queue length, activity, rate window and retry rate."""
        self._purge_history(time.monotonic())

        remaining = len(self._queue) + self._active_requests + len(self._pending_retries)
        throughput = self._effective_throughput()
        eta = remaining / throughput if remaining and throughput > 0 else 0.0

        attempts = self._outcomes["success"] + self._outcomes["failure"]
        retry_rate = self._outcomes["failure"] / attempts if attempts else 0.0

        return QueueStats(
            queue_length=len(self._queue),
            active_requests=self._active_requests,
            pending_retries=len(self._pending_retries),
            requests_in_last_minute=len(self._request_history),
            estimated_time_to_completion=eta,
            retry_rate=retry_rate
        )

    def _effective_throughput(self) -> float:
        """Dispatches per second allowed by the rate window and spacing."""
        per_second = self._config.max_requests_per_minute / RATE_WINDOW_SECONDS
        if self._config.minimum_delay > 0:
            per_second = min(per_second, 1.0 / self._config.minimum_delay)
        return per_second

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    def _ensure_processing(self) -> None:
        if self._closed or self._paused:
            return
        if self._processing_task is None or self._processing_task.done():
            self._processing_task = asyncio.create_task(self._process_queue())
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _process_queue(self) -> None:
        """Dispatch queued items until the queue drains or is paused."""
        try:
            while self._queue and not self._paused:
                wait = self._admission_delay(time.monotonic())
                if wait > 0:
                    await asyncio.sleep(wait)
                    continue

                self._queue.sort(key=WorkItem.sort_key)
                item = self._queue.pop(0)
                if item.future.done():
                    # Submitter gave up (cancelled) before dispatch
                    continue

                self._dispatch(item)

                if self._config.minimum_delay > 0:
                    await asyncio.sleep(self._config.minimum_delay)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error processing request queue: {e}")

    def _admission_delay(self, now: float) -> float:
        """Return 0 when an item may be dispatched, else how long to wait."""
        self._purge_history(now)
        config = self._config

        if self._active_requests >= config.max_concurrent_requests:
            return config.poll_interval
        if len(self._request_history) >= config.max_requests_per_minute:
            return config.poll_interval
        if self._last_dispatch is not None:
            remaining = config.minimum_delay - (now - self._last_dispatch)
            if remaining > 0:
                return min(remaining, config.poll_interval)
        return 0.0

    def _dispatch(self, item: WorkItem) -> None:
        if item.timeout_handle:
            item.timeout_handle.cancel()
            item.timeout_handle = None

        now = time.monotonic()
        self._active_requests += 1
        self._request_history.append(now)
        self._last_dispatch = now

        self._track(
            item.operation_id,
            ActivityLevel.INFO,
            f"Processing request: {item.display_label}",
            {
                "request_id": item.id,
                "attempt": item.retry_count + 1,
                "active_requests": self._active_requests,
                "queue_length": len(self._queue)
            }
        )
        self._report_progress(item, 0.0)

        task = asyncio.create_task(self._run_item(item))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_item(self, item: WorkItem) -> None:
        try:
            result = await item.execute()
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as exc:
            self._outcomes["failure"] += 1
            self._handle_failure(item, exc)
        else:
            self._outcomes["success"] += 1
            self._track(
                item.operation_id,
                ActivityLevel.INFO,
                f"Request completed: {item.display_label}",
                {"request_id": item.id, "attempts": item.retry_count + 1}
            )
            self._report_progress(item, 1.0)
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._active_requests -= 1

    def _handle_failure(self, item: WorkItem, exc: Exception) -> None:
        if item.future.done():
            return

        limit = self._config.retry_limit
        retryable = self._retry_on is None or self._retry_on(exc)

        if retryable and item.retry_count < limit:
            delay = retry_delay_for(self._config, item.retry_count, self._rng)
            self._track(
                item.operation_id,
                ActivityLevel.WARNING,
                f"Request failed, retrying in {delay:.2f}s "
                f"(attempt {item.retry_count + 1}/{limit + 1}): {item.display_label}",
                {"request_id": item.id, "error": str(exc)}
            )
            logger.debug(f"Retrying {item.display_label} in {delay:.2f}s after: {exc}")
            task = asyncio.create_task(self._requeue_after(item, delay))
            self._pending_retries[task] = item
            task.add_done_callback(lambda t: self._pending_retries.pop(t, None))
            return

        attempts = item.retry_count + 1
        self._track(
            item.operation_id,
            ActivityLevel.ERROR,
            f"Request failed after {attempts} attempt(s): {item.display_label}",
            {"request_id": item.id, "error": str(exc), "retryable": retryable}
        )
        logger.error(f"Request {item.display_label} failed after {attempts} attempt(s): {exc}")
        self._report_progress(item, 1.0)
        item.future.set_exception(RequestFailedError(item.display_label, attempts, exc))

    async def _requeue_after(self, item: WorkItem, delay: float) -> None:
        await asyncio.sleep(delay)
        if item.future.done():
            return
        item.retry_count += 1
        item.enqueued_at = time.monotonic()
        item.sequence = next(self._sequence)
        self._queue.append(item)
        self._ensure_processing()

    def _expire(self, item: WorkItem, timeout: float) -> None:
        """Timer callback removing an item that has not started in time."""
        item.timeout_handle = None
        if item not in self._queue:
            return
        self._queue.remove(item)
        self._track(
            item.operation_id,
            ActivityLevel.ERROR,
            f"Request timed out: {item.display_label}",
            {"request_id": item.id, "timeout": timeout}
        )
        logger.warning(f"Request {item.display_label} timed out in queue after {timeout:.2f}s")
        if not item.future.done():
            item.future.set_exception(RequestTimeoutError(item.display_label, timeout))

    # ------------------------------------------------------------------
    # Rate window
    # ------------------------------------------------------------------

    def _purge_history(self, now: float) -> None:
        while self._request_history and now - self._request_history[0] >= RATE_WINDOW_SECONDS:
            self._request_history.popleft()

    async def _sweep_loop(self) -> None:
        """Purge the rolling dispatch window periodically."""
        while True:
            try:
                await asyncio.sleep(self._config.history_sweep_interval)
                self._purge_history(time.monotonic())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in request history sweep: {e}")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _report_progress(self, item: WorkItem, fraction: float) -> None:
        if not item.on_progress:
            return
        try:
            item.on_progress(fraction)
        except Exception as e:
            logger.error(f"Progress callback failed for {item.display_label}: {e}")

    def _track(
        self,
        operation_id: Optional[str],
        level: ActivityLevel,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        logger.debug(message)
        if self._tracker and operation_id:
            self._tracker.add_log(operation_id, level, message, details)
