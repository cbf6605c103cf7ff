"""Persistence layers for log entries and analytics sinks."""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

import aiofiles

from .models import AnalyticsEvent, LogEntry


logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class LogPersistenceLayer(ABC):
    """Append-only store of log entries grouped by operation."""

    @abstractmethod
    async def store(self, entry: LogEntry) -> None:
        """Append an entry."""
        pass

    @abstractmethod
    async def entries_for(self, operation_id: str) -> List[LogEntry]:
        """Return an operation's entries in the order they were stored."""
        pass

    @abstractmethod
    async def list_operations(self) -> List[str]:
        """Return ids of operations with stored entries."""
        pass


class InMemoryLogStore(LogPersistenceLayer):
    """Process-local log store."""

    def __init__(self, max_entries_per_operation: int = 10000):
        self.max_entries_per_operation = max_entries_per_operation
        self._entries: Dict[str, List[LogEntry]] = {}
        self.dropped = 0

    async def store(self, entry: LogEntry) -> None:
        entries = self._entries.setdefault(entry.metadata.operation_id, [])
        if len(entries) >= self.max_entries_per_operation:
            self.dropped += 1
            logger.warning(
                f"Log entry cap reached for operation {entry.metadata.operation_id}, "
                f"dropping entry {entry.id}"
            )
            return
        entries.append(entry)

    async def entries_for(self, operation_id: str) -> List[LogEntry]:
        return list(self._entries.get(operation_id, []))

    async def list_operations(self) -> List[str]:
        return sorted(self._entries)


class FileLogStore(LogPersistenceLayer):
    """JSON-lines file per operation under a base directory."""

    def __init__(
        self,
        log_dir: Union[str, Path],
        retention_days: int = 30,
        max_entries_per_operation: int = 10000
    ):
        """Initialize file-based log storage.

        Args:
            log_dir: Directory holding one ``<operation_id>.jsonl`` file per operation
            retention_days: Age after which purge_expired() deletes a timeline
            max_entries_per_operation: Entries beyond this count are dropped
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.retention_days = retention_days
        self.max_entries_per_operation = max_entries_per_operation
        self._lock = asyncio.Lock()
        self._counts: Dict[str, int] = {}
        self.dropped = 0

    def _path_for(self, operation_id: str) -> Path:
        return self.log_dir / f"{_UNSAFE_NAME_CHARS.sub('_', operation_id)}.jsonl"

    async def _count(self, operation_id: str, path: Path) -> int:
        if operation_id not in self._counts:
            count = 0
            if path.exists():
                async with aiofiles.open(path, 'r') as f:
                    async for line in f:
                        if line.strip():
                            count += 1
            self._counts[operation_id] = count
        return self._counts[operation_id]

    async def store(self, entry: LogEntry) -> None:
        operation_id = entry.metadata.operation_id
        path = self._path_for(operation_id)
        async with self._lock:
            if await self._count(operation_id, path) >= self.max_entries_per_operation:
                self.dropped += 1
                logger.warning(f"Log entry cap reached for operation {operation_id}, dropping entry {entry.id}")
                return
            async with aiofiles.open(path, 'a') as f:
                await f.write(entry.model_dump_json() + "\n")
            self._counts[operation_id] += 1

    async def entries_for(self, operation_id: str) -> List[LogEntry]:
        path = self._path_for(operation_id)
        entries = []
        async with self._lock:
            if not path.exists():
                return []
            async with aiofiles.open(path, 'r') as f:
                async for line in f:
                    if not line.strip():
                        continue
                    try:
                        entries.append(LogEntry.model_validate_json(line))
                    except ValueError as e:
                        logger.warning(f"Skipping malformed log line in {path}: {e}")
        return entries

    async def list_operations(self) -> List[str]:
        return sorted(path.stem for path in self.log_dir.glob("*.jsonl"))

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete timelines not written to within the retention window.

        Returns:
            Number of deleted timelines
        """
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=self.retention_days)
        removed = 0
        async with self._lock:
            for path in self.log_dir.glob("*.jsonl"):
                modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
                if modified < cutoff:
                    path.unlink()
                    self._counts.pop(path.stem, None)
                    removed += 1
        if removed:
            logger.info(f"Purged {removed} expired operation timeline(s) from {self.log_dir}")
        return removed


class AnalyticsSink(ABC):
    """Fire-and-forget destination for analytics events."""

    @abstractmethod
    async def track(self, event: AnalyticsEvent) -> None:
        pass


class InMemoryAnalyticsSink(AnalyticsSink):
    """Keeps tracked events in a list."""

    def __init__(self):
        self.events: List[AnalyticsEvent] = []

    async def track(self, event: AnalyticsEvent) -> None:
        self.events.append(event)

    def named(self, event_name: str) -> List[AnalyticsEvent]:
        return [e for e in self.events if e.event_name == event_name]


class NullAnalyticsSink(AnalyticsSink):
    """Discards events."""

    async def track(self, event: AnalyticsEvent) -> None:
        return None
