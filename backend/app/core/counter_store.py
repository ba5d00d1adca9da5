"""Shared counter store used by login rate limiting and IP blocking.

Two backends implement the same set of individually atomic operations:

- ``RedisCounterStore``: shared between all workers, the production backend.
- ``MemoryCounterStore``: in-process, used when no Redis URL is configured
  (single-instance deployments) and in tests. TTLs are evaluated against an
  injectable clock.

Compositions of several operations are never atomic; callers that need a
write and an index update to land together use ``put``/``remove`` with an
``index`` argument, which run as one transaction.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Seconds of store time between full sweeps of expired keys in the memory backend
MEMORY_SWEEP_INTERVAL_SECONDS = 60.0


class CounterStoreError(Exception):
    """The counter store could not complete an operation."""

    pass


class CounterStore(ABC):
    """Interface of the shared counter store."""

    @abstractmethod
    async def prune(self, key: str, max_score: float) -> None:
        """Remove sorted-set members scored at or below ``max_score``."""

    @abstractmethod
    async def count(self, key: str) -> int:
        """Return the sorted-set cardinality (0 for a missing key)."""

    @abstractmethod
    async def append(self, key: str, member: str, score: float, ttl: int) -> None:
        """Add a scored member and refresh the key's expiry to ``ttl`` seconds."""

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        """Delete keys. Missing keys are ignored."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return True if the key exists and has not expired."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return a string value or None."""

    @abstractmethod
    async def get_many(self, keys: list[str]) -> list[str | None]:
        """Return string values for ``keys`` in order, None where missing."""

    @abstractmethod
    async def put(
        self,
        key: str,
        value: str,
        ttl: int | None = None,
        index: str | None = None,
        member: str | None = None,
    ) -> None:
        """Set a value (expiring after ``ttl`` seconds when given).

        When ``index`` is given, ``member`` is added to that set in the same
        transaction.
        """

    @abstractmethod
    async def remove(self, key: str, index: str | None = None, member: str | None = None) -> None:
        """Delete a value and, when ``index`` is given, drop ``member`` from it atomically."""

    @abstractmethod
    async def members(self, index: str) -> set[str]:
        """Return the members of an index set."""

    @abstractmethod
    async def discard(self, index: str, *members: str) -> None:
        """Remove members from an index set."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the store is reachable."""

    async def close(self) -> None:
        """Release any held connections."""


@asynccontextmanager
async def _translate_errors(operation: str) -> AsyncIterator[None]:
    """Re-raise driver and socket failures as CounterStoreError."""
    try:
        yield
    except (RedisError, OSError) as e:
        raise CounterStoreError(f"Counter store {operation} failed: {e}") from e


class RedisCounterStore(CounterStore):
    """Counter store backed by Redis sorted sets, strings and sets."""

    def __init__(self, client: Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 5.0) -> "RedisCounterStore":
        """Create a store with its own connection pool."""
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    async def prune(self, key: str, max_score: float) -> None:
        async with _translate_errors("prune"):
            await self._redis.zremrangebyscore(key, 0, max_score)

    async def count(self, key: str) -> int:
        async with _translate_errors("count"):
            return int(await self._redis.zcard(key))

    async def append(self, key: str, member: str, score: float, ttl: int) -> None:
        async with _translate_errors("append"):
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.zadd(key, {member: score})
                pipe.expire(key, ttl)
                await pipe.execute()

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        async with _translate_errors("delete"):
            await self._redis.delete(*keys)

    async def exists(self, key: str) -> bool:
        async with _translate_errors("exists"):
            return bool(await self._redis.exists(key))

    async def get(self, key: str) -> str | None:
        async with _translate_errors("get"):
            return await self._redis.get(key)

    async def get_many(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        async with _translate_errors("get_many"):
            return list(await self._redis.mget(keys))

    async def put(
        self,
        key: str,
        value: str,
        ttl: int | None = None,
        index: str | None = None,
        member: str | None = None,
    ) -> None:
        async with _translate_errors("put"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(key, value, ex=ttl)
                if index is not None:
                    pipe.sadd(index, member if member is not None else key)
                await pipe.execute()

    async def remove(self, key: str, index: str | None = None, member: str | None = None) -> None:
        async with _translate_errors("remove"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if index is not None:
                    pipe.srem(index, member if member is not None else key)
                await pipe.execute()

    async def members(self, index: str) -> set[str]:
        async with _translate_errors("members"):
            return set(await self._redis.smembers(index))

    async def discard(self, index: str, *members: str) -> None:
        if not members:
            return
        async with _translate_errors("discard"):
            await self._redis.srem(index, *members)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError) as e:
            logger.debug(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._redis.aclose()


class MemoryCounterStore(CounterStore):
    """In-process counter store.

    Not shared between workers. Every operation runs under one asyncio lock,
    so each is atomic on its own, matching the Redis backend.

    Expired keys are dropped when touched, and writes also trigger a full
    sweep at most once per ``sweep_interval`` so keys that are never read
    again (an IP or username that does not come back) do not accumulate.
    """

    def __init__(self, clock: Clock = time.time, sweep_interval: float = MEMORY_SWEEP_INTERVAL_SECONDS):
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval
        self._lock = asyncio.Lock()
        self._sorted: dict[str, dict[str, float]] = {}
        self._values: dict[str, str] = {}
        self._sets: dict[str, set[str]] = {}
        self._expires: dict[str, float] = {}

    def _evict_if_expired(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._drop(key)

    def _drop(self, key: str) -> None:
        self._sorted.pop(key, None)
        self._values.pop(key, None)
        self._sets.pop(key, None)
        self._expires.pop(key, None)

    def _sweep(self, now: float) -> int:
        expired = [key for key, deadline in self._expires.items() if now >= deadline]
        for key in expired:
            self._drop(key)
        return len(expired)

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        removed = self._sweep(now)
        if removed:
            logger.debug(f"Counter store sweep removed {removed} expired keys")

    async def sweep_expired(self) -> int:
        """Drop every key whose TTL has passed. Returns how many were removed."""
        async with self._lock:
            return self._sweep(self._clock())

    def _set_ttl(self, key: str, ttl: int | None) -> None:
        if ttl is None:
            self._expires.pop(key, None)
        else:
            self._expires[key] = self._clock() + ttl

    async def prune(self, key: str, max_score: float) -> None:
        async with self._lock:
            self._evict_if_expired(key)
            entries = self._sorted.get(key)
            if not entries:
                return
            for member in [m for m, score in entries.items() if score <= max_score]:
                del entries[member]
            if not entries:
                self._drop(key)

    async def count(self, key: str) -> int:
        async with self._lock:
            self._evict_if_expired(key)
            return len(self._sorted.get(key, {}))

    async def append(self, key: str, member: str, score: float, ttl: int) -> None:
        async with self._lock:
            self._maybe_sweep()
            self._evict_if_expired(key)
            self._sorted.setdefault(key, {})[member] = score
            self._set_ttl(key, ttl)

    async def delete(self, *keys: str) -> None:
        async with self._lock:
            for key in keys:
                self._drop(key)

    async def exists(self, key: str) -> bool:
        async with self._lock:
            self._evict_if_expired(key)
            return key in self._values or key in self._sorted or key in self._sets

    async def get(self, key: str) -> str | None:
        async with self._lock:
            self._evict_if_expired(key)
            return self._values.get(key)

    async def get_many(self, keys: list[str]) -> list[str | None]:
        async with self._lock:
            for key in keys:
                self._evict_if_expired(key)
            return [self._values.get(key) for key in keys]

    async def put(
        self,
        key: str,
        value: str,
        ttl: int | None = None,
        index: str | None = None,
        member: str | None = None,
    ) -> None:
        async with self._lock:
            self._maybe_sweep()
            self._values[key] = value
            self._set_ttl(key, ttl)
            if index is not None:
                self._sets.setdefault(index, set()).add(member if member is not None else key)

    async def remove(self, key: str, index: str | None = None, member: str | None = None) -> None:
        async with self._lock:
            self._drop(key)
            if index is not None:
                self._discard(index, [member if member is not None else key])

    async def members(self, index: str) -> set[str]:
        async with self._lock:
            self._evict_if_expired(index)
            return set(self._sets.get(index, set()))

    async def discard(self, index: str, *members: str) -> None:
        async with self._lock:
            self._discard(index, members)

    def _discard(self, index: str, members: Iterable[str]) -> None:
        existing = self._sets.get(index)
        if existing is None:
            return
        existing.difference_update(members)
        if not existing:
            self._drop(index)

    async def ping(self) -> bool:
        return True


async def memory_sweep_loop(store: MemoryCounterStore, interval: float = 3600) -> None:
    """Periodically drop expired keys from the memory store, even when no writes arrive."""
    while True:
        try:
            await asyncio.sleep(interval)
            removed = await store.sweep_expired()
            if removed > 0:
                logger.debug(f"Counter store cleanup: removed {removed} expired keys")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning(f"Counter store cleanup error: {e}")
