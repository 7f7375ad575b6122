"""
Cache Client Tests
==================

In-memory backend tested directly; Redis backend tested against mocked
clients.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from taskapi.config import Settings
from taskapi.core.exceptions import CacheError
from taskapi.services.cache import (
    InMemoryCache,
    ReadWriteLock,
    RedisCache,
    compile_glob,
    create_cache,
    tag_key,
)


# ---------------------------------------------------------------------------
# Glob matcher
# ---------------------------------------------------------------------------

class TestCompileGlob:
    """Redis glob semantics"""

    @pytest.mark.parametrize(
        "pattern,key,expected",
        [
            ("tasks_page_*", "tasks_page_1_limit_10_order_desc", True),
            ("tasks_page_*", "tasks_id_1", False),
            ("h?llo", "hello", True),
            ("h?llo", "heello", False),
            ("h[ae]llo", "hallo", True),
            ("h[ae]llo", "hillo", False),
            ("h[^e]llo", "hallo", True),
            ("h[^e]llo", "hello", False),
            ("h[a-b]llo", "hbllo", True),
            ("h[a-b]llo", "hcllo", False),
            ("h\\*llo", "h*llo", True),
            ("h\\*llo", "hello", False),
            ("*", "", True),
            ("a[bc", "a[bc", True),
            ("tasks.*", "tasksX", False),
        ],
    )
    def test_patterns(self, pattern, key, expected):
        assert bool(compile_glob(pattern).match(key)) is expected

    def test_match_is_anchored_at_end(self):
        assert not compile_glob("task").match("tasks")


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class TestInMemoryCache:
    """Tests for InMemoryCache"""

    @pytest.mark.asyncio
    async def test_set_get_round_trip(self, cache):
        await cache.set("k", {"a": [1, 2]}, ttl=60)
        assert await cache.get("k") == {"a": [1, 2]}

    @pytest.mark.asyncio
    async def test_miss_returns_none(self, cache):
        assert await cache.get("missing") is None
        assert await cache.exists("missing") is False

    @pytest.mark.asyncio
    async def test_entries_expire(self, cache, clock):
        await cache.set("k", "v", ttl=10)
        clock.advance(10)
        assert await cache.get("k") == "v"

        clock.advance(1)
        assert await cache.get("k") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_zero_ttl_never_expires(self, cache, clock):
        await cache.set("k", "v", ttl=0)
        clock.advance(days=365)
        assert await cache.exists("k") is True

    @pytest.mark.asyncio
    async def test_negative_ttl_rejected(self, cache):
        with pytest.raises(CacheError):
            await cache.set("k", "v", ttl=-1)

    @pytest.mark.asyncio
    async def test_unserializable_value_rejected(self, cache):
        with pytest.raises(CacheError):
            await cache.set("k", {1, 2})

    @pytest.mark.asyncio
    async def test_delete_pattern(self, cache):
        await cache.set("tasks_page_1_limit_10_order_desc", 1)
        await cache.set("tasks_page_2_limit_10_order_desc", 2)
        await cache.set("tasks_id_1", 3)

        assert await cache.delete_pattern("tasks_page_*") == 2
        assert await cache.exists("tasks_id_1") is True
        assert await cache.exists("tasks_page_1_limit_10_order_desc") is False

    @pytest.mark.asyncio
    async def test_invalidate_by_tags(self, cache):
        await cache.set_with_tags("a", 1, 60, "tasks:list")
        await cache.set_with_tags("b", 2, 60, "tasks:list", "task:1")
        await cache.set_with_tags("c", 3, 60, "task:2")

        await cache.invalidate_by_tags("tasks:list")

        assert await cache.exists("a") is False
        assert await cache.exists("b") is False
        assert await cache.exists("c") is True
        assert cache._tags == {"task:2": {"c"}}

    @pytest.mark.asyncio
    async def test_delete_leaves_tag_sets(self, cache):
        await cache.set_with_tags("tasks_id_1", 1, 60, "task:1", "tasks:list")
        await cache.set_with_tags("tasks_id_2", 2, 60, "task:2", "tasks:list")

        await cache.delete("tasks_id_1")

        assert "task:1" not in cache._tags
        assert cache._tags["tasks:list"] == {"tasks_id_2"}

    @pytest.mark.asyncio
    async def test_delete_pattern_leaves_tag_sets(self, cache):
        await cache.set_with_tags("tasks_page_1", 1, 60, "tasks:list")
        await cache.set_with_tags("tasks_page_2", 2, 60, "tasks:list")

        await cache.delete_pattern("tasks_page_*")

        assert cache._tags == {}

    @pytest.mark.asyncio
    async def test_expired_entry_leaves_tag_sets(self, cache, clock):
        await cache.set_with_tags("tasks_id_7", 7, 10, "task:7")
        clock.advance(11)

        assert await cache.get("tasks_id_7") is None
        assert cache._tags == {}

    @pytest.mark.asyncio
    async def test_clear(self, cache):
        await cache.set_with_tags("a", 1, 60, "t")
        await cache.clear()
        assert len(cache) == 0
        await cache.invalidate_by_tags("t")

    @pytest.mark.asyncio
    async def test_concurrent_access(self, cache):
        async def writer(i):
            await cache.set(f"k{i}", i)

        async def reader(i):
            return await cache.get(f"k{i}")

        await asyncio.gather(*(writer(i) for i in range(50)))
        values = await asyncio.gather(*(reader(i) for i in range(50)))
        assert values == list(range(50))


class TestReadWriteLock:
    """Tests for ReadWriteLock"""

    @pytest.mark.asyncio
    async def test_readers_share(self):
        lock = ReadWriteLock()
        async with lock.read():
            # a second reader must not block
            await asyncio.wait_for(self._read_once(lock), timeout=1)

    @pytest.mark.asyncio
    async def test_writer_waits_for_readers(self):
        lock = ReadWriteLock()
        order = []

        async def write():
            async with lock.write():
                order.append("write")

        async with lock.read():
            task = asyncio.create_task(write())
            await asyncio.sleep(0)
            order.append("read done")
        await task

        assert order == ["read done", "write"]

    @staticmethod
    async def _read_once(lock):
        async with lock.read():
            return True


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

def _redis_client():
    client = MagicMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    client.pipeline = MagicMock(return_value=pipe)
    return client, pipe


class TestRedisCache:
    """Tests for RedisCache with a mocked client"""

    @pytest.mark.asyncio
    async def test_get_decodes_json(self):
        client, _ = _redis_client()
        client.get = AsyncMock(return_value='{"id": 1}')
        assert await RedisCache(client).get("k") == {"id": 1}

    @pytest.mark.asyncio
    async def test_get_miss(self):
        client, _ = _redis_client()
        client.get = AsyncMock(return_value=None)
        assert await RedisCache(client).get("k") is None

    @pytest.mark.asyncio
    async def test_get_timeout_is_a_miss(self):
        client, _ = _redis_client()

        async def slow_get(key):
            await asyncio.sleep(1)

        client.get = slow_get
        assert await RedisCache(client, operation_timeout=0.01).get("k") is None

    @pytest.mark.asyncio
    async def test_get_connection_error_raises(self):
        client, _ = _redis_client()
        client.get = AsyncMock(side_effect=RedisConnectionError("down"))
        with pytest.raises(CacheError):
            await RedisCache(client).get("k")

    @pytest.mark.asyncio
    async def test_set_uses_expiry(self):
        client, _ = _redis_client()
        client.set = AsyncMock(return_value=True)
        await RedisCache(client).set("k", [1], ttl=30)
        client.set.assert_awaited_once_with("k", "[1]", ex=30)

    @pytest.mark.asyncio
    async def test_set_without_ttl_has_no_expiry(self):
        client, _ = _redis_client()
        client.set = AsyncMock(return_value=True)
        await RedisCache(client).set("k", 1, ttl=0)
        client.set.assert_awaited_once_with("k", "1", ex=None)

    @pytest.mark.asyncio
    async def test_set_with_tags_pipeline(self):
        client, pipe = _redis_client()
        await RedisCache(client).set_with_tags("k", "v", 60, "tasks:list")

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with("k", '"v"', ex=60)
        pipe.sadd.assert_called_once_with(tag_key("tasks:list"), "k")
        pipe.expire.assert_called_once_with("tag:tasks:list", 60)
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delete_pattern_scans_and_deletes(self):
        client, _ = _redis_client()

        async def scan_iter(match=None, count=None):
            for key in ("tasks_page_1", "tasks_page_2"):
                yield key

        client.scan_iter = scan_iter
        client.delete = AsyncMock(return_value=2)

        assert await RedisCache(client).delete_pattern("tasks_page_*") == 2
        client.delete.assert_awaited_once_with("tasks_page_1", "tasks_page_2")

    @pytest.mark.asyncio
    async def test_invalidate_by_tags(self):
        client, pipe = _redis_client()
        client.smembers = AsyncMock(return_value={"a"})

        await RedisCache(client).invalidate_by_tags("tasks:list")

        client.smembers.assert_awaited_once_with("tag:tasks:list")
        pipe.delete.assert_any_call("a")
        pipe.delete.assert_any_call("tag:tasks:list")

    @pytest.mark.asyncio
    async def test_exists_swallows_errors(self):
        client, _ = _redis_client()
        client.exists = AsyncMock(side_effect=RedisConnectionError("down"))
        assert await RedisCache(client).exists("k") is False

    @pytest.mark.asyncio
    async def test_delete_error_raises(self):
        client, _ = _redis_client()
        client.delete = AsyncMock(side_effect=RedisConnectionError("down"))
        with pytest.raises(CacheError):
            await RedisCache(client).delete("k")


class TestCreateCache:
    """Tests for create_cache"""

    def _settings(self, backend):
        return Settings(_env_file=None, POSTGRES_PASSWORD="x", CACHE_BACKEND=backend)

    def test_memory_backend(self):
        assert isinstance(create_cache(self._settings("memory")), InMemoryCache)

    def test_redis_backend(self):
        client, _ = _redis_client()
        assert isinstance(create_cache(self._settings("redis"), client), RedisCache)

    def test_redis_without_client_falls_back(self):
        assert isinstance(create_cache(self._settings("redis")), InMemoryCache)
