"""Per-actor, per-action fixed-window rate limiting for write-heavy operations."""
from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
from typing import Callable, Dict, Protocol, Tuple

from ..config import get_settings
from .kv_store import KeyValueStore, get_kv_store

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_time: float

    def retry_after(self, now: float | None = None) -> int:
        """Whole seconds until the window resets (at least 1)."""

        current = time.time() if now is None else now
        return max(1, math.ceil(self.reset_time - current))


@dataclass
class RateLimitWindow:
    count: int
    reset_time: float


class RateLimiter(Protocol):
    async def check_rate_limit(
        self,
        actor_id: str,
        action: str,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> RateLimitDecision:
        """Count one attempt and return whether it is admitted."""

    async def sweep_expired(self) -> int:
        """Drop expired windows and return how many were removed."""


def _validate(limit: int, window_seconds: float) -> None:
    if limit <= 0:
        raise ValueError("limit must be positive")
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")


class InMemoryRateLimiter:
    """Process-local windows keyed by ``(actor_id, action)``."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = Lock()
        self._windows: Dict[Tuple[str, str], RateLimitWindow] = {}

    def __len__(self) -> int:
        return len(self._windows)

    async def check_rate_limit(
        self,
        actor_id: str,
        action: str,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> RateLimitDecision:
        _validate(limit, window_seconds)
        now = self._clock()
        key = (actor_id, action)

        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_time:
                window = RateLimitWindow(count=0, reset_time=now + window_seconds)
                self._windows[key] = window

            if window.count >= limit:
                return RateLimitDecision(allowed=False, limit=limit, remaining=0, reset_time=window.reset_time)

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=limit - window.count,
                reset_time=window.reset_time,
            )

    async def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if window.reset_time <= now]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug("Removed %d expired rate-limit windows", len(expired))
        return len(expired)


class KeyValueRateLimiter:
    """Windows stored as ``ratelimit:{actor}:{action}`` entries in the shared store.

    The read-increment-write is not atomic across processes, so a burst of
    concurrent requests may overshoot the limit slightly.
    """

    prefix = "ratelimit:"

    def __init__(self, store: KeyValueStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    def _key(self, actor_id: str, action: str) -> str:
        return f"{self.prefix}{actor_id}:{action}"

    async def check_rate_limit(
        self,
        actor_id: str,
        action: str,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> RateLimitDecision:
        _validate(limit, window_seconds)
        now = self._clock()
        key = self._key(actor_id, action)

        window: RateLimitWindow | None = None
        raw = await self._store.get(key)
        if raw:
            try:
                payload = json.loads(raw)
                window = RateLimitWindow(count=int(payload["count"]), reset_time=float(payload["reset_time"]))
            except (ValueError, KeyError, TypeError):
                logger.warning("Discarding malformed rate-limit window %s", key)
        if window is None or now >= window.reset_time:
            window = RateLimitWindow(count=0, reset_time=now + window_seconds)

        if window.count >= limit:
            return RateLimitDecision(allowed=False, limit=limit, remaining=0, reset_time=window.reset_time)

        window.count += 1
        ttl = max(1, math.ceil(window.reset_time - now))
        await self._store.put(key, json.dumps({"count": window.count, "reset_time": window.reset_time}), ttl=ttl)
        return RateLimitDecision(
            allowed=True,
            limit=limit,
            remaining=limit - window.count,
            reset_time=window.reset_time,
        )

    async def sweep_expired(self) -> int:
        # Entries carry a store-level TTL.
        return 0


@lru_cache(maxsize=1)
def get_rate_limiter() -> RateLimiter:
    settings = get_settings()
    if settings.kv_backend.strip().lower() == "redis":
        return KeyValueRateLimiter(get_kv_store())
    return InMemoryRateLimiter()


__all__ = [
    "RateLimitDecision",
    "RateLimitWindow",
    "RateLimiter",
    "InMemoryRateLimiter",
    "KeyValueRateLimiter",
    "get_rate_limiter",
    "DEFAULT_LIMIT",
    "DEFAULT_WINDOW_SECONDS",
]
