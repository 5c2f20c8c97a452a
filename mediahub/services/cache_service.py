"""Advisory cache layered over the key-value store.

Reads and writes never fail the caller: a backend error is logged and treated
as a miss. Deletions and pattern invalidations raise :class:`CacheError` so
multi-step operations can record them in their own results.
"""
from __future__ import annotations

import json
import logging
import time
from fnmatch import fnmatchcase
from functools import lru_cache
from typing import Any, Awaitable, Callable, TypeVar

from ..config import get_settings
from ..errors import DependencyError
from .kv_store import KeyValueStore, get_kv_store

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheError(DependencyError):
    """Raised when a cache entry cannot be removed."""


class CacheTTL:
    SHORT = 60
    MEDIUM = 300
    LONG = 1800
    MEDIA = 3600
    METADATA = 3600


class CacheKeys:
    """Key builders shared by every service that touches the cache."""

    @staticmethod
    def media(asset_id: str) -> str:
        return f"media:{asset_id}"

    @staticmethod
    def metadata(asset_id: str) -> str:
        return f"metadata:{asset_id}"

    @staticmethod
    def image_url(storage_key: str, expiry: int) -> str:
        return f"image_url:{storage_key}:{expiry}"

    @staticmethod
    def search(*parts: Any) -> str:
        return "search:" + ":".join("" if part is None else str(part) for part in parts)


class CacheService:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        namespace: str = "cache:",
        default_ttl: int = CacheTTL.MEDIUM,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._namespace = namespace
        self._default_ttl = default_ttl
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._store.get(self._key(key))
        except Exception as exc:
            logger.warning("Cache get failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            entry = json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            return None
        if not isinstance(entry, dict) or "data" not in entry:
            return None
        expires = entry.get("expires")
        if expires is not None and self._clock() >= float(expires):
            return None
        return entry["data"]

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ttl = ttl or self._default_ttl
        entry = {"data": value, "expires": self._clock() + ttl}
        try:
            await self._store.put(self._key(key), json.dumps(entry, default=str), ttl=ttl)
        except Exception as exc:
            logger.warning("Cache set failed for %s: %s", key, exc)

    async def get_or_set(self, key: str, loader: Callable[[], Awaitable[T]], ttl: int | None = None) -> T:
        """Return the cached value for ``key`` or load, cache and return it.

        Loader exceptions propagate; ``None`` results are not cached.
        """

        cached = await self.get(key)
        if cached is not None:
            return cached
        fresh = await loader()
        if fresh is not None:
            await self.set(key, fresh, ttl)
        return fresh

    async def delete(self, key: str) -> None:
        try:
            await self._store.delete(self._key(key))
        except Exception as exc:
            raise CacheError(f"Failed to delete cache entry {key}") from exc

    async def invalidate_pattern(self, pattern: str) -> int:
        """Delete every entry whose key matches the glob ``pattern``."""

        if "*" not in pattern and "?" not in pattern:
            await self.delete(pattern)
            return 1

        try:
            keys = await self._store.list(self._namespace)
            matched = [key for key in keys if fnmatchcase(key[len(self._namespace):], pattern)]
            for key in matched:
                await self._store.delete(key)
        except Exception as exc:
            raise CacheError(f"Failed to invalidate cache pattern {pattern}") from exc

        if matched:
            logger.debug("Invalidated %d cache entries for %s", len(matched), pattern)
        return len(matched)


@lru_cache(maxsize=1)
def get_cache_service() -> CacheService:
    settings = get_settings()
    return CacheService(get_kv_store(), default_ttl=settings.cache_default_ttl)


__all__ = ["CacheService", "CacheError", "CacheKeys", "CacheTTL", "get_cache_service"]
