"""Tests for the storage abstraction layer."""

import time
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ratecache.core.cache import (
    COMPARE_AND_SET_SCRIPT,
    CacheBackend,
    InMemoryCache,
    RedisCache,
    _CacheEntry,
    create_cache,
)
from ratecache.exceptions import StorageUnavailableError


class TestCacheEntry:
    """Tests for the internal _CacheEntry class."""

    def test_cache_entry_no_expiry(self):
        entry = _CacheEntry(value=b"test", expires_at=None)
        assert not entry.is_expired()

    def test_cache_entry_expired(self):
        entry = _CacheEntry(value=b"test", expires_at=time.time() - 1)
        assert entry.is_expired()

    def test_cache_entry_uses_given_now(self):
        entry = _CacheEntry(value=b"test", expires_at=100.0)
        assert not entry.is_expired(99.9)
        assert entry.is_expired(100.0)


class TestInMemoryCache:
    """Tests for the InMemoryCache implementation."""

    @pytest.mark.asyncio
    async def test_set_and_get(self):
        cache = InMemoryCache()
        await cache.set("key1", b"value1", ttl=60)
        assert await cache.get("key1") == b"value1"

    @pytest.mark.asyncio
    async def test_get_nonexistent_key(self):
        cache = InMemoryCache()
        assert await cache.get("nonexistent") is None

    @pytest.mark.asyncio
    async def test_delete(self):
        cache = InMemoryCache()
        await cache.set("key1", b"value1", ttl=60)
        await cache.delete("key1")
        assert await cache.get("key1") is None

    @pytest.mark.asyncio
    async def test_delete_nonexistent_key(self):
        cache = InMemoryCache()
        await cache.delete("nonexistent")  # Should not raise

    @pytest.mark.asyncio
    async def test_exists(self):
        cache = InMemoryCache()
        await cache.set("key1", b"value1", ttl=60)
        assert await cache.exists("key1") is True
        assert await cache.exists("key2") is False

    @pytest.mark.asyncio
    async def test_ttl_expiry_with_clock(self, clock):
        cache = InMemoryCache(clock=clock)
        await cache.set("key1", b"value1", ttl=10)

        clock.advance(9)
        assert await cache.get("key1") == b"value1"

        clock.advance(1)
        assert await cache.get("key1") is None
        assert await cache.exists("key1") is False

    @pytest.mark.asyncio
    async def test_zero_ttl_never_expires(self, clock):
        cache = InMemoryCache(clock=clock)
        await cache.set("key1", b"value1", ttl=0)
        clock.advance(10**6)
        assert await cache.get("key1") == b"value1"

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        cache = InMemoryCache(max_entries=2)
        await cache.set("a", b"1", ttl=60)
        await cache.set("b", b"2", ttl=60)
        # Touch "a" so "b" becomes least recently used
        await cache.get("a")
        await cache.set("c", b"3", ttl=60)

        assert await cache.get("a") == b"1"
        assert await cache.get("b") is None
        assert await cache.get("c") == b"3"
        assert len(cache) == 2

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, clock):
        cache = InMemoryCache(clock=clock)
        await cache.set("short", b"1", ttl=1)
        await cache.set("long", b"2", ttl=100)
        clock.advance(5)

        removed = await cache.cleanup_expired()

        assert removed == 1
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_compare_and_set_on_absent_key(self):
        cache = InMemoryCache()

        assert await cache.compare_and_set("key", None, b"first", ttl=60) is True
        assert await cache.compare_and_set("key", None, b"second", ttl=60) is False
        assert await cache.get("key") == b"first"

    @pytest.mark.asyncio
    async def test_compare_and_set_requires_current_value(self):
        cache = InMemoryCache()
        await cache.set("key", b"v1", ttl=60)

        assert await cache.compare_and_set("key", b"stale", b"v2", ttl=60) is False
        assert await cache.compare_and_set("key", b"v1", b"v2", ttl=60) is True
        assert await cache.get("key") == b"v2"

    @pytest.mark.asyncio
    async def test_compare_and_set_treats_expired_as_absent(self, clock):
        cache = InMemoryCache(clock=clock)
        await cache.set("key", b"old", ttl=1)
        clock.advance(2)

        assert await cache.compare_and_set("key", b"old", b"new", ttl=60) is False
        assert await cache.compare_and_set("key", None, b"new", ttl=60) is True

    @pytest.mark.asyncio
    async def test_clear(self):
        cache = InMemoryCache()
        await cache.set("key1", b"value1", ttl=60)
        await cache.set("key2", b"value2", ttl=60)
        await cache.clear()
        assert len(cache) == 0

    def test_empty_cache_is_a_backend(self):
        assert isinstance(InMemoryCache(), CacheBackend)


class TestRedisCache:
    """Tests for the RedisCache implementation (client mocked)."""

    @pytest.fixture
    def redis_client(self):
        client = AsyncMock()
        client.get.return_value = b"value"
        client.exists.return_value = 1
        return client

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisCache()

    @pytest.mark.asyncio
    async def test_get(self, redis_client):
        cache = RedisCache(client=redis_client)
        assert await cache.get("key") == b"value"
        redis_client.get.assert_awaited_once_with("key")

    @pytest.mark.asyncio
    async def test_set_uses_setex(self, redis_client):
        cache = RedisCache(client=redis_client)
        await cache.set("key", b"value", ttl=30)
        redis_client.setex.assert_awaited_once_with("key", 30, b"value")

    @pytest.mark.asyncio
    async def test_set_without_ttl(self, redis_client):
        cache = RedisCache(client=redis_client)
        await cache.set("key", b"value", ttl=0)
        redis_client.set.assert_awaited_once_with("key", b"value")

    @pytest.mark.asyncio
    async def test_exists(self, redis_client):
        cache = RedisCache(client=redis_client)
        assert await cache.exists("key") is True

    @pytest.mark.asyncio
    async def test_compare_and_set_runs_one_script(self, redis_client):
        redis_client.eval.return_value = 1
        cache = RedisCache(client=redis_client)

        assert await cache.compare_and_set("key", b"old", b"new", ttl=30) is True
        redis_client.eval.assert_awaited_once_with(
            COMPARE_AND_SET_SCRIPT, 1, "key", "1", b"old", b"new", 30
        )

    @pytest.mark.asyncio
    async def test_compare_and_set_expecting_absent_key(self, redis_client):
        redis_client.eval.return_value = 0
        cache = RedisCache(client=redis_client)

        assert await cache.compare_and_set("key", None, b"new", ttl=30) is False
        args = redis_client.eval.await_args.args
        assert args[3:5] == ("0", b"")

    @pytest.mark.asyncio
    async def test_compare_and_set_errors_become_storage_unavailable(self, redis_client):
        redis_client.eval.side_effect = RedisConnectionError("connection refused")
        cache = RedisCache(client=redis_client)

        with pytest.raises(StorageUnavailableError):
            await cache.compare_and_set("key", None, b"new", ttl=30)

    @pytest.mark.asyncio
    async def test_redis_errors_become_storage_unavailable(self, redis_client):
        redis_client.get.side_effect = RedisConnectionError("connection refused")
        cache = RedisCache(client=redis_client)

        with pytest.raises(StorageUnavailableError) as exc_info:
            await cache.get("key")

        assert isinstance(exc_info.value.__cause__, RedisConnectionError)
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_close(self, redis_client):
        cache = RedisCache(client=redis_client)
        await cache.close()
        redis_client.aclose.assert_awaited_once()


class TestCreateCache:
    """Tests for the backend factory."""

    def test_memory_backend(self):
        assert isinstance(create_cache("memory"), InMemoryCache)

    def test_redis_backend(self):
        cache = create_cache("redis", redis_url="redis://localhost:6379/0")
        assert isinstance(cache, RedisCache)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_cache("memcached")
