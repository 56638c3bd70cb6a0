"""Shared counter stores with atomic increment-with-expiry.

The rate limiter only ever mutates a counter through ``increment``; there
is no get-then-set path. ``peek`` exists for observability.
"""

from __future__ import annotations

import math
import time
from threading import Lock
from typing import NamedTuple, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from tenant_gate.errors import CounterStoreError

# INCR and expiry run server-side in one script, so a window key is never
# left without a TTL. A key found without one (PTTL -1) is re-armed.
INCREMENT_WITH_EXPIRY_LUA = """
local current = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if current == 1 or ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""


class WindowCount(NamedTuple):
    """Counter value right after an increment, and when its window resets."""

    count: int
    reset_in: int


class CounterStore(Protocol):
    """Key-value service offering atomic increment-and-get with expiry."""

    async def increment(self, key: str, ttl_seconds: int) -> WindowCount:
        """Atomically add 1 to ``key``; start a ``ttl_seconds`` window on create.

        Raises:
            CounterStoreError: the store is unreachable or failed.
        """
        ...

    async def peek(self, key: str) -> int:
        """Current value of ``key`` (0 when absent), without mutating it."""
        ...

    async def close(self) -> None: ...


class RedisCounterStore:
    """Counter store backed by Redis, safe across processes and hosts."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client
        self._increment = client.register_script(INCREMENT_WITH_EXPIRY_LUA)

    @classmethod
    def from_url(cls, url: str) -> RedisCounterStore:
        return cls(redis.from_url(url, decode_responses=True))

    async def increment(self, key: str, ttl_seconds: int) -> WindowCount:
        try:
            count, ttl_ms = await self._increment(
                keys=[key], args=[ttl_seconds * 1000]
            )
        except (RedisError, OSError) as exc:
            raise CounterStoreError(f"Counter increment failed: {exc}") from exc
        return WindowCount(
            count=int(count), reset_in=max(math.ceil(int(ttl_ms) / 1000), 1)
        )

    async def peek(self, key: str) -> int:
        try:
            value = await self._client.get(key)
        except (RedisError, OSError) as exc:
            raise CounterStoreError(f"Counter read failed: {exc}") from exc
        return int(value) if value is not None else 0

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryCounterStore:
    """Fixed-window counters held in process memory.

    Thread-safe via Lock. Single-instance only: every worker process has
    its own counters, so use RedisCounterStore for multi-instance deployments.
    """

    def __init__(self) -> None:
        # key -> (count, window expiry on the monotonic clock)
        self._windows: dict[str, tuple[int, float]] = {}
        self._lock = Lock()

    async def increment(self, key: str, ttl_seconds: int) -> WindowCount:
        now = time.monotonic()
        with self._lock:
            count, expires_at = self._windows.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + ttl_seconds
            count += 1
            self._windows[key] = (count, expires_at)
        return WindowCount(
            count=count, reset_in=max(math.ceil(expires_at - now), 1)
        )

    async def peek(self, key: str) -> int:
        now = time.monotonic()
        with self._lock:
            count, expires_at = self._windows.get(key, (0, 0.0))
        return count if expires_at > now else 0

    def cleanup(self) -> int:
        """Remove all expired windows. Call periodically.

        Returns:
            Number of keys cleaned up.
        """
        now = time.monotonic()
        with self._lock:
            expired = [k for k, (_, exp) in self._windows.items() if exp <= now]
            for key in expired:
                del self._windows[key]
        return len(expired)

    async def close(self) -> None:
        with self._lock:
            self._windows.clear()
