"""Key-value stores for execution state snapshots.

The engine treats persistence as an opaque record store. Two
implementations are provided: an in-memory store for tests and single
process runs, and a JSON file store for development deployments.
"""

import asyncio
import copy
import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles


logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class KeyValueStore(ABC):
    """Abstract async key-value store holding JSON-serializable records."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the record stored under key, or None."""
        pass

    @abstractmethod
    async def put(self, key: str, value: Dict[str, Any]) -> None:
        """Store value under key, replacing any previous record."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key; returns True if a record was removed."""
        pass

    @abstractmethod
    async def keys(self, prefix: str = "") -> List[str]:
        """List keys starting with prefix."""
        pass


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store; values are deep-copied on the way in and out."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class FileKeyValueStore(KeyValueStore):
    """JSON file per key under a base directory."""

    def __init__(self, storage_path: Union[str, Path] = "./data/snapshots"):
        """Initialize file-based storage.

        Args:
            storage_path: Directory for storing snapshot files
        """
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        logger.info(f"FileKeyValueStore initialized with storage_path={storage_path}")

    def _path_for(self, key: str) -> Path:
        return self.storage_path / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path_for(key)
        async with self._lock:
            if not path.exists():
                return None
            try:
                async with aiofiles.open(path, 'r') as f:
                    content = await f.read()
            except FileNotFoundError:
                return None
        try:
            record = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning(f"Corrupt snapshot file {path}: {e}")
            return None
        return record.get("value")

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        path = self._path_for(key)
        payload = json.dumps({"key": key, "value": value}, indent=2, default=str)
        async with self._lock:
            tmp_path = path.with_suffix(".json.tmp")
            async with aiofiles.open(tmp_path, 'w') as f:
                await f.write(payload)
            tmp_path.replace(path)

    async def delete(self, key: str) -> bool:
        path = self._path_for(key)
        async with self._lock:
            if not path.exists():
                return False
            path.unlink()
            return True

    async def keys(self, prefix: str = "") -> List[str]:
        found = []
        async with self._lock:
            for path in self.storage_path.glob("*.json"):
                try:
                    async with aiofiles.open(path, 'r') as f:
                        record = json.loads(await f.read())
                except (json.JSONDecodeError, FileNotFoundError) as e:
                    logger.warning(f"Skipping unreadable snapshot file {path}: {e}")
                    continue
                key = record.get("key", "")
                if key.startswith(prefix):
                    found.append(key)
        return sorted(found)
