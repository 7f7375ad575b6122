"""
Cache Service
=============

Key/value cache used as a look-aside in front of the task store.

Two backends share one contract (``CacheClient``):

    InMemoryCache   process-local dict, reader/writer locked
    RedisCache      redis.asyncio client, every call bounded by a timeout

Contract:
    - values are JSON-encoded
    - ``get`` returns ``None`` on a miss; a miss is never an error
    - ``ttl=0`` means no expiration
    - backend failures raise ``CacheError``
    - ``delete_pattern`` uses Redis glob semantics on both backends
    - tags are secondary sets of keys; invalidating a tag deletes every
      key in the set and the set itself
"""

import asyncio
import json
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Optional, Protocol

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from taskapi.config import Settings
from taskapi.core.exceptions import CacheError
from taskapi.utils.helpers import Clock, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300  # 5 minutes
TAG_PREFIX = "tag:"

# Global Redis client instance
_redis_client: Optional[Redis] = None


# =============================================================================
# Redis connection lifecycle
# =============================================================================

async def init_redis(settings: Settings) -> Redis:
    """
    Initialize the Redis connection pool and verify it with a PING.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.REDIS_POOL_SIZE,
            socket_keepalive=True,
            socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis connection established (%s)", settings.REDIS_HOST)

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


# =============================================================================
# Contract
# =============================================================================

class CacheClient(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: int = DEFAULT_TTL) -> None: ...

    async def set_with_tags(
        self, key: str, value: Any, ttl: int, *tags: str
    ) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_pattern(self, pattern: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def invalidate_by_tags(self, *tags: str) -> None: ...

    async def clear(self) -> None: ...

    async def close(self) -> None: ...


def _serialize(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError) as exc:
        raise CacheError(f"cannot encode cache value: {exc}") from exc


def _deserialize(key: str, raw: Any) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise CacheError(f"corrupt cache entry {key}: {exc}") from exc


def _check_ttl(ttl: int) -> None:
    if ttl < 0:
        raise CacheError(f"ttl must be >= 0, got {ttl}")


def tag_key(tag: str) -> str:
    return f"{TAG_PREFIX}{tag}"


# =============================================================================
# Glob matching (Redis semantics)
# =============================================================================

def compile_glob(pattern: str) -> "re.Pattern[str]":
    """
    Translate a Redis-style glob into a compiled regex.

    Supports ``*``, ``?``, ``[abc]``, ``[^abc]``, ``[a-z]`` and ``\\``
    escapes, matching the rules Redis applies to ``SCAN MATCH`` / ``KEYS``.
    An unterminated ``[`` is matched literally.
    """
    out = []
    i, n = 0, len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "\\" and i + 1 < n:
            i += 1
            out.append(re.escape(pattern[i]))
        elif ch == "[":
            end = i + 1
            if end < n and pattern[end] == "^":
                end += 1
            # a ']' right after '[' or '[^' is a literal member
            if end < n and pattern[end] == "]":
                end += 1
            while end < n and pattern[end] != "]":
                if pattern[end] == "\\":
                    end += 1
                end += 1
            if end >= n:
                out.append(re.escape(ch))
            else:
                out.append(_translate_class(pattern[i + 1:end]))
                i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z", re.DOTALL)


def _translate_class(body: str) -> str:
    negate = body.startswith("^")
    if negate:
        body = body[1:]

    members = []
    i, n = 0, len(body)
    while i < n:
        ch = body[i]
        if ch == "\\" and i + 1 < n:
            i += 1
            members.append(re.escape(body[i]))
        elif i + 2 < n and body[i + 1] == "-":
            start, stop = ch, body[i + 2]
            if start > stop:
                start, stop = stop, start
            members.append(f"{re.escape(start)}-{re.escape(stop)}")
            i += 2
        else:
            members.append(re.escape(ch))
        i += 1

    if not members:
        # Redis: "[]" never matches, "[^]" matches any single char
        return "." if negate else "(?!)"
    return "[" + ("^" if negate else "") + "".join(members) + "]"


# =============================================================================
# In-memory backend
# =============================================================================

class ReadWriteLock:
    """
    asyncio reader/writer lock.

    Any number of readers may hold the lock together; a writer holds it
    alone. Readers are admitted whenever no writer is active.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._writer and self._readers == 0
            )
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class _CacheItem:
    value: bytes
    expires_at: Optional[datetime]

    def expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


class InMemoryCache:
    """
    Process-local cache.

    Entries are stored as ``key -> (json bytes, expiration)``. Expired
    entries are evicted lazily: a reader that finds one drops its read
    lock, takes the write lock and re-checks before deleting.

    A key leaves every tag set it belongs to whenever it is removed, and
    empty tag sets are dropped.
    """

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._data: dict[str, _CacheItem] = {}
        self._tags: dict[str, set[str]] = {}
        self._key_tags: dict[str, set[str]] = {}
        self._lock = ReadWriteLock()

    def _expiration(self, ttl: int) -> Optional[datetime]:
        if ttl > 0:
            return self._clock() + timedelta(seconds=ttl)
        return None

    def _remove(self, key: str) -> None:
        # caller holds the write lock
        self._data.pop(key, None)
        for tag in self._key_tags.pop(key, set()):
            members = self._tags.get(tag)
            if members is None:
                continue
            members.discard(key)
            if not members:
                del self._tags[tag]

    async def _evict_if_expired(self, key: str, item: _CacheItem) -> None:
        async with self._lock.write():
            current = self._data.get(key)
            if current is item and current.expired(self._clock()):
                self._remove(key)

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock.read():
            item = self._data.get(key)
            expired = item is not None and item.expired(self._clock())

        if item is None:
            return None
        if expired:
            await self._evict_if_expired(key, item)
            return None
        return _deserialize(key, item.value)

    async def set(self, key: str, value: Any, ttl: int = DEFAULT_TTL) -> None:
        _check_ttl(ttl)
        item = _CacheItem(_serialize(value).encode("utf-8"), self._expiration(ttl))
        async with self._lock.write():
            self._data[key] = item

    async def set_with_tags(
        self, key: str, value: Any, ttl: int, *tags: str
    ) -> None:
        _check_ttl(ttl)
        item = _CacheItem(_serialize(value).encode("utf-8"), self._expiration(ttl))
        async with self._lock.write():
            self._data[key] = item
            for tag in tags:
                self._tags.setdefault(tag, set()).add(key)
                self._key_tags.setdefault(key, set()).add(tag)

    async def delete(self, key: str) -> None:
        async with self._lock.write():
            self._remove(key)

    async def delete_pattern(self, pattern: str) -> int:
        matcher = compile_glob(pattern)
        async with self._lock.write():
            doomed = [k for k in self._data if matcher.match(k)]
            for k in doomed:
                self._remove(k)
        return len(doomed)

    async def exists(self, key: str) -> bool:
        async with self._lock.read():
            item = self._data.get(key)
            expired = item is not None and item.expired(self._clock())

        if item is None:
            return False
        if expired:
            await self._evict_if_expired(key, item)
            return False
        return True

    async def invalidate_by_tags(self, *tags: str) -> None:
        async with self._lock.write():
            for tag in tags:
                for key in list(self._tags.get(tag, ())):
                    self._remove(key)
                self._tags.pop(tag, None)

    async def clear(self) -> None:
        async with self._lock.write():
            self._data = {}
            self._tags = {}
            self._key_tags = {}

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self._data)


# =============================================================================
# Redis backend
# =============================================================================

class RedisCache:
    """
    Redis-backed cache.

    Key naming is owned by the caller (see ``cache_keys``); tag sets live
    under ``tag:<tag>``. The connection itself is owned by
    ``init_redis`` / ``close_redis``.
    """

    def __init__(self, client: Redis, operation_timeout: float = 1.0):
        self.client = client
        self.operation_timeout = operation_timeout

    async def _call(self, awaitable: Any) -> Any:
        return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)

    async def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        A timed-out read is reported as a miss so the caller falls
        through to the store.
        """
        try:
            raw = await self._call(self.client.get(key))
        except asyncio.TimeoutError:
            logger.warning("Cache get timed out for key %s", key)
            return None
        except RedisError as exc:
            raise CacheError(f"cache get failed for {key}: {exc}") from exc

        if raw is None:
            return None
        return _deserialize(key, raw)

    async def set(self, key: str, value: Any, ttl: int = DEFAULT_TTL) -> None:
        _check_ttl(ttl)
        serialized = _serialize(value)
        try:
            await self._call(self.client.set(key, serialized, ex=ttl or None))
        except (RedisError, asyncio.TimeoutError) as exc:
            raise CacheError(f"cache set failed for {key}: {exc}") from exc

    async def set_with_tags(
        self, key: str, value: Any, ttl: int, *tags: str
    ) -> None:
        _check_ttl(ttl)
        serialized = _serialize(value)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(key, serialized, ex=ttl or None)
            for tag in tags:
                pipe.sadd(tag_key(tag), key)
                if ttl:
                    pipe.expire(tag_key(tag), ttl)
            await self._call(pipe.execute())
        except (RedisError, asyncio.TimeoutError) as exc:
            raise CacheError(f"cache set_with_tags failed for {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._call(self.client.delete(key))
        except (RedisError, asyncio.TimeoutError) as exc:
            raise CacheError(f"cache delete failed for {key}: {exc}") from exc

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching a pattern.

        Args:
            pattern: Pattern with wildcards (e.g., "tasks_page_*")

        Returns:
            Number of keys deleted
        """
        try:
            return await self._call(self._delete_pattern(pattern))
        except (RedisError, asyncio.TimeoutError) as exc:
            raise CacheError(f"cache delete_pattern failed for {pattern}: {exc}") from exc

    async def _delete_pattern(self, pattern: str) -> int:
        deleted = 0
        batch: list[str] = []
        async for key in self.client.scan_iter(match=pattern, count=100):
            batch.append(key)
            if len(batch) >= 100:
                deleted += await self.client.delete(*batch)
                batch = []
        if batch:
            deleted += await self.client.delete(*batch)
        return deleted

    async def exists(self, key: str) -> bool:
        try:
            return await self._call(self.client.exists(key)) > 0
        except (RedisError, asyncio.TimeoutError) as exc:
            logger.warning("Cache exists error for key %s: %s", key, exc)
            return False

    async def invalidate_by_tags(self, *tags: str) -> None:
        try:
            for tag in tags:
                members = await self._call(self.client.smembers(tag_key(tag)))
                pipe = self.client.pipeline(transaction=True)
                if members:
                    pipe.delete(*members)
                pipe.delete(tag_key(tag))
                await self._call(pipe.execute())
        except (RedisError, asyncio.TimeoutError) as exc:
            raise CacheError(f"cache invalidate_by_tags failed for {tags}: {exc}") from exc

    async def clear(self) -> None:
        """Empty the whole Redis database (use with caution)."""
        try:
            await self._call(self.client.flushdb())
        except (RedisError, asyncio.TimeoutError) as exc:
            raise CacheError(f"cache clear failed: {exc}") from exc

    async def close(self) -> None:
        return None


def create_cache(
    settings: Settings,
    redis_client: Optional[Redis] = None,
    clock: Clock = utc_now,
) -> CacheClient:
    """Pick the cache backend configured by ``CACHE_BACKEND``."""
    if settings.CACHE_BACKEND == "redis":
        if redis_client is not None:
            return RedisCache(redis_client, settings.CACHE_OPERATION_TIMEOUT)
        logger.warning("Redis unavailable, falling back to in-memory cache")
    return InMemoryCache(clock)
