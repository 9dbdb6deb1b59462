"""Cache and counter backends.

Two backends behind the same async protocols:
  - In-memory (default, for dev/testing and single-process use)
  - Redis (shared across processes and restarts)

Each primitive is atomic on its own; the gateway never needs a lock spanning
more than one call.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import redis.asyncio as aioredis

from genai_gateway.core.config import Settings

logger = logging.getLogger(__name__)


class CacheStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: int, tags: list[str] | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def flush_tag(self, tag: str) -> int: ...

    async def flush_all(self) -> int: ...


class CounterStore(Protocol):
    async def get(self, key: str) -> int: ...

    async def incr(self, key: str, amount: int, ttl: int) -> int:
        """Increment-or-initialize; ``ttl`` applies only when the key is created."""
        ...

    async def delete(self, key: str) -> None: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

# Expired keys are swept on write at most this often (clock seconds)
SWEEP_INTERVAL = 30.0


@dataclass
class _Entry:
    value: str | int
    expires_at: float  # clock() seconds; 0 means never


class _ExpiringDict:
    """Key → _Entry map with lazy expiry plus a periodic sweep on write.

    Callers hold their own lock around every method.
    """

    def __init__(self, clock: Callable[[], float]):
        self._clock = clock
        self._data: dict[str, _Entry] = {}
        self._next_sweep = 0.0

    def expired(self, entry: _Entry) -> bool:
        return bool(entry.expires_at) and entry.expires_at <= self._clock()

    def live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None or not self.expired(entry):
            return entry
        self.on_remove(key)
        del self._data[key]
        return None

    def put(self, key: str, entry: _Entry) -> None:
        self.maybe_sweep()
        self._data[key] = entry

    def pop(self, key: str) -> _Entry | None:
        entry = self._data.pop(key, None)
        if entry is not None:
            self.on_remove(key)
        return entry

    def maybe_sweep(self) -> int:
        now = self._clock()
        if now < self._next_sweep:
            return 0
        self._next_sweep = now + SWEEP_INTERVAL
        stale = [k for k, e in self._data.items() if self.expired(e)]
        for key in stale:
            self.pop(key)
        if stale:
            logger.debug("Swept %d expired in-memory keys", len(stale))
        return len(stale)

    def on_remove(self, key: str) -> None:
        pass

    def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[str]:
        return list(self._data)

    def __len__(self) -> int:
        return len(self._data)


class _TaggedDict(_ExpiringDict):
    """``_ExpiringDict`` that keeps a tag → keys index in step with removals."""

    def __init__(self, clock: Callable[[], float]):
        super().__init__(clock)
        self.tags: dict[str, set[str]] = {}
        self._key_tags: dict[str, set[str]] = {}

    def tag(self, key: str, tags: list[str]) -> None:
        for tag in tags:
            self.tags.setdefault(tag, set()).add(key)
            self._key_tags.setdefault(key, set()).add(tag)

    def on_remove(self, key: str) -> None:
        for tag in self._key_tags.pop(key, set()):
            members = self.tags.get(tag)
            if members is None:
                continue
            members.discard(key)
            if not members:
                del self.tags[tag]

    def clear(self) -> None:
        super().clear()
        self.tags.clear()
        self._key_tags.clear()


class MemoryCacheStore:
    """Dict-backed cache with TTL and tag index."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries = _TaggedDict(clock)
        self._clock = clock
        self._lock = threading.Lock()

    async def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.live(key)
            return entry.value if entry else None

    async def set(self, key: str, value: str, ttl: int, tags: list[str] | None = None) -> None:
        with self._lock:
            # Overwrite drops the old entry's tags
            self._entries.pop(key)
            expires_at = self._clock() + ttl if ttl > 0 else 0.0
            self._entries.put(key, _Entry(value=value, expires_at=expires_at))
            self._entries.tag(key, tags or [])

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key)

    async def flush_tag(self, tag: str) -> int:
        with self._lock:
            keys = list(self._entries.tags.get(tag, ()))
            return sum(1 for key in keys if self._entries.pop(key) is not None)

    async def flush_all(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def tag_count(self) -> int:
        """Number of tags with at least one stored key."""
        with self._lock:
            return len(self._entries.tags)

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for key in self._entries.keys() if self._entries.live(key) is not None)


class MemoryCounterStore:
    """Dict-backed counters with TTL set on first increment."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries = _ExpiringDict(clock)
        self._clock = clock
        self._lock = threading.Lock()

    async def get(self, key: str) -> int:
        with self._lock:
            entry = self._entries.live(key)
            return int(entry.value) if entry else 0

    async def incr(self, key: str, amount: int, ttl: int) -> int:
        with self._lock:
            entry = self._entries.live(key)
            if entry is None:
                expires_at = self._clock() + ttl if ttl > 0 else 0.0
                entry = _Entry(value=0, expires_at=expires_at)
                self._entries.put(key, entry)
            entry.value = int(entry.value) + amount
            return entry.value

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key)

    def __len__(self) -> int:
        """Keys currently held, expired ones not yet swept included."""
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


class RedisCacheStore:
    """Redis cache; tags are sets of member keys under ``{prefix}:tag:{tag}``."""

    def __init__(self, client: aioredis.Redis, prefix: str = "genai_cache"):
        self._redis = client
        self._prefix = prefix

    def _tag_key(self, tag: str) -> str:
        return f"{self._prefix}:tag:{tag}"

    async def get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def set(self, key: str, value: str, ttl: int, tags: list[str] | None = None) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            if ttl > 0:
                pipe.set(key, value, ex=ttl)
            else:
                pipe.set(key, value)
            for tag in tags or []:
                tag_key = self._tag_key(tag)
                pipe.sadd(tag_key, key)
                # A tag set lives at least as long as its longest-lived member
                if ttl > 0:
                    pipe.expire(tag_key, ttl, nx=True)
                    pipe.expire(tag_key, ttl, gt=True)
                else:
                    pipe.persist(tag_key)
            await pipe.execute()

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def flush_tag(self, tag: str) -> int:
        tag_key = self._tag_key(tag)
        members = await self._redis.smembers(tag_key)
        removed = 0
        if members:
            removed = await self._redis.delete(*members)
        await self._redis.delete(tag_key)
        return int(removed)

    async def flush_all(self) -> int:
        removed = 0
        async for key in self._redis.scan_iter(match=f"{self._prefix}:*"):
            removed += await self._redis.delete(key)
        return removed


class RedisCounterStore:
    """Redis counters: INCRBY plus EXPIRE NX in one MULTI."""

    def __init__(self, client: aioredis.Redis):
        self._redis = client

    async def get(self, key: str) -> int:
        value = await self._redis.get(key)
        return int(value) if value else 0

    async def incr(self, key: str, amount: int, ttl: int) -> int:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incrby(key, amount)
            if ttl > 0:
                pipe.expire(key, ttl, nx=True)
            results = await pipe.execute()
        return int(results[0])

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)


def create_stores(cfg: Settings) -> tuple[CacheStore, CounterStore]:
    """Build the cache and counter stores for the configured backend."""
    if cfg.redis_url:
        client = aioredis.from_url(cfg.redis_url, decode_responses=True)
        logger.info("Using Redis cache/counter backend")
        return RedisCacheStore(client, prefix=cfg.cache_prefix), RedisCounterStore(client)
    logger.info("Using in-memory cache/counter backend")
    return MemoryCacheStore(), MemoryCounterStore()
