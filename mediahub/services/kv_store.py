"""Key-value store backends for metadata records, search indexes and cache entries."""
from __future__ import annotations

import logging
import time
from functools import lru_cache
from typing import Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..config import get_settings
from ..errors import DependencyError

logger = logging.getLogger(__name__)


class KeyValueStoreError(DependencyError):
    """Raised when the key-value backend cannot complete an operation."""


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None:
        """Return the stored string for ``key`` or ``None``."""

    async def put(self, key: str, value: str, *, ttl: int | None = None) -> None:
        """Store ``value`` under ``key``, expiring after ``ttl`` seconds when given."""

    async def delete(self, key: str) -> None:
        """Remove ``key``; deleting a missing key is not an error."""

    async def list(self, prefix: str = "") -> list[str]:
        """Return every live key starting with ``prefix``."""


class InMemoryKeyValueStore:
    """Process-local store used for development, tests and single-node deployments."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def put(self, key: str, value: str, *, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list(self, prefix: str = "") -> list[str]:
        return sorted(key for key in list(self._data) if key.startswith(prefix) and self._live(key) is not None)


class RedisKeyValueStore:
    """Redis-backed store shared between processes."""

    def __init__(self, client: Redis) -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(key)
        except RedisError as exc:
            logger.exception("Redis GET failed for %s", key)
            raise KeyValueStoreError(f"Unable to read {key} from the key-value store") from exc

    async def put(self, key: str, value: str, *, ttl: int | None = None) -> None:
        try:
            await self._redis.set(key, value, ex=ttl or None)
        except RedisError as exc:
            logger.exception("Redis SET failed for %s", key)
            raise KeyValueStoreError(f"Unable to write {key} to the key-value store") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as exc:
            logger.exception("Redis DEL failed for %s", key)
            raise KeyValueStoreError(f"Unable to delete {key} from the key-value store") from exc

    async def list(self, prefix: str = "") -> list[str]:
        try:
            keys = [key async for key in self._redis.scan_iter(match=f"{prefix}*")]
        except RedisError as exc:
            logger.exception("Redis SCAN failed for prefix %s", prefix)
            raise KeyValueStoreError(f"Unable to list keys with prefix {prefix}") from exc
        return sorted(keys)


@lru_cache(maxsize=1)
def get_kv_store() -> KeyValueStore:
    """Return the configured key-value store as a process-wide singleton."""

    settings = get_settings()
    if settings.kv_backend.strip().lower() == "redis":
        return RedisKeyValueStore.from_url(settings.redis_url)
    return InMemoryKeyValueStore()


__all__ = [
    "KeyValueStore",
    "KeyValueStoreError",
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "get_kv_store",
]
