"""
Key-value persistence for small JSON records.

Values are anything ``json.dumps`` accepts. The file-backed store keeps the
whole map in memory and rewrites the file on every mutation.
"""

import asyncio
import copy
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from offlaine.utils.logging import logger


class KeyValueStore(ABC):
    """Async key-value collaborator."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None if absent."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store a JSON-serialisable value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]:
        """List keys starting with prefix."""


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store, used for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        # Round-trip through JSON so callers cannot store what the file store would reject
        self._data[key] = json.loads(json.dumps(value))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]


class JsonFileKeyValueStore(KeyValueStore):
    """
    Single JSON file holding every key.

    Writes go to a temporary file which then replaces the original, so a
    crash mid-write never leaves a truncated state file behind.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return

        try:
            data = json.loads(self.path.read_text())
            if isinstance(data, dict):
                self._data = data
                logger.info(f"Loaded {len(self._data)} keys from {self.path}")
            else:
                logger.error(f"Ignoring malformed state file {self.path}")
        except Exception as e:
            logger.error(f"Failed to load state file {self.path}: {e}")
            self._data = {}

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, indent=2))
        os.replace(tmp_path, self.path)

    async def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._data[key] = json.loads(json.dumps(value))
            await asyncio.to_thread(self._write)

    async def delete(self, key: str) -> None:
        async with self._lock:
            if key in self._data:
                del self._data[key]
                await asyncio.to_thread(self._write)

    async def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]
