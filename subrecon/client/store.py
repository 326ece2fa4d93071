"""
Client key-value stores.

The fallback chain persists a handful of small string values (timestamps,
counters, last-known status). Any store implementing ``KeyValueStore``
works; three are provided:

- ``MemoryStore``: process-local, for tests and short-lived tools
- ``JsonFileStore``: a single JSON file, for devices and CLIs
- ``RedisStore``: a Redis database, for server-side clients
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Async string key-value store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


class MemoryStore(KeyValueStore):
    def __init__(self):
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """
    Whole-file JSON store.

    Writes go to a temporary file that replaces the original, so a crash
    never leaves a half-written store behind.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, str]:
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable client store %s, starting empty: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
        return data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            data[key] = value
            await asyncio.to_thread(self._dump, data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            if data.pop(key, None) is not None:
                await asyncio.to_thread(self._dump, data)


class RedisStore(KeyValueStore):
    """Store backed by a ``redis.asyncio`` client created with ``decode_responses=True``."""

    def __init__(self, client: Redis, prefix: str = "client:"):
        self.client = client
        self.prefix = prefix

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(f"{self.prefix}{key}")

    async def set(self, key: str, value: str) -> None:
        await self.client.set(f"{self.prefix}{key}", value)

    async def delete(self, key: str) -> None:
        await self.client.delete(f"{self.prefix}{key}")
