"""Storage abstraction layer shared by the rate limiter and the query cache.

Provides a pluggable key-value backend with in-memory and Redis
implementations. Both the limiter's window/ban state and the two query
cache tiers are expressed purely in terms of ``CacheBackend``.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable
import asyncio
import time

from redis.exceptions import RedisError

from ratecache.exceptions import StorageUnavailableError

# Atomic compare-and-set. ARGV[1] is '1' when a current value is expected
# (ARGV[2]) and '0' when the key must be absent.
COMPARE_AND_SET_SCRIPT = """
    local current = redis.call('GET', KEYS[1])
    if ARGV[1] == '1' then
        if current ~= ARGV[2] then
            return 0
        end
    elseif current then
        return 0
    end

    local ttl = tonumber(ARGV[4])
    if ttl > 0 then
        redis.call('SET', KEYS[1], ARGV[3], 'EX', ttl)
    else
        redis.call('SET', KEYS[1], ARGV[3])
    end
    return 1
"""


@dataclass
class _CacheEntry:
    """Internal cache entry with TTL tracking."""

    value: bytes
    expires_at: float | None = None

    def is_expired(self, now: float | None = None) -> bool:
        """Check if the entry has expired."""
        if self.expires_at is None:
            return False
        return (time.time() if now is None else now) >= self.expires_at


class CacheBackend(ABC):
    """Abstract base class for storage backends.

    All backend implementations must inherit from this class and implement
    the abstract methods. Implementations signal an unreachable store by
    raising ``StorageUnavailableError``.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Retrieve a value.

        Args:
            key: The cache key to look up.

        Returns:
            The cached value as bytes, or None if not found or expired.
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: int) -> None:
        """Store a value.

        Args:
            key: The cache key.
            value: The value to store (as bytes).
            ttl: Time-to-live in seconds. Zero or negative means no expiry.
        """
        pass

    @abstractmethod
    async def compare_and_set(
        self, key: str, expected: bytes | None, value: bytes, ttl: int
    ) -> bool:
        """Store a value only if the current value is still ``expected``.

        The comparison and the write happen as one atomic step, also across
        processes sharing the backend.

        Args:
            key: The cache key.
            expected: The value read earlier, or None if the key was absent.
            value: The new value.
            ttl: Time-to-live in seconds. Zero or negative means no expiry.

        Returns:
            True if the value was written, False if another writer got there first.
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a value. Missing keys are ignored."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a key exists and is not expired."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Clear all entries."""
        pass


class InMemoryCache(CacheBackend):
    """In-memory cache implementation with TTL support.

    Stores all data in an OrderedDict and expires entries lazily based on
    TTL. When ``max_entries`` is set the least recently used entries are
    evicted once the bound is exceeded.

    Note: This cache is not distributed and data is lost when the
    process restarts.
    """

    def __init__(
        self,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the in-memory cache.

        Args:
            max_entries: Optional LRU bound on the number of stored keys.
            clock: Time source, injectable for tests.
        """
        self._data: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()
        self._max_entries = max_entries
        self._clock = clock

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return entry.value

    def _store(self, key: str, value: bytes, ttl: int) -> None:
        expires_at = self._clock() + ttl if ttl > 0 else None
        self._data[key] = _CacheEntry(value=value, expires_at=expires_at)
        self._data.move_to_end(key)
        if self._max_entries is not None:
            while len(self._data) > self._max_entries:
                self._data.popitem(last=False)

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        async with self._lock:
            self._store(key, value, ttl)

    async def compare_and_set(
        self, key: str, expected: bytes | None, value: bytes, ttl: int
    ) -> bool:
        async with self._lock:
            entry = self._data.get(key)
            current = None
            if entry is not None and not entry.is_expired(self._clock()):
                current = entry.value
            if current != expected:
                return False
            self._store(key, value, ttl)
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def exists(self, key: str) -> bool:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._data[key]
                return False
            return True

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()

    async def cleanup_expired(self) -> int:
        """Remove all expired entries from the cache.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._data.items() if entry.is_expired(now)
            ]
            for key in expired_keys:
                del self._data[key]
            return len(expired_keys)

    def __len__(self) -> int:
        return len(self._data)


class RedisCache(CacheBackend):
    """Redis-based storage implementation.

    Every ``RedisError`` (connection refused, timeout, ...) is re-raised as
    ``StorageUnavailableError`` so callers can apply their fail-open or
    fail-closed policy without depending on redis-py.

    Example:
        >>> cache = RedisCache("redis://localhost:6379/0")
        >>> await cache.set("key", b"value", ttl=300)
    """

    def __init__(self, redis_url: str | None = None, client: Any = None) -> None:
        """Initialize the Redis cache.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            client: Pre-built ``redis.asyncio.Redis`` client, mainly for tests.
        """
        if redis_url is None and client is None:
            raise ValueError("RedisCache requires a redis_url or a client")
        self._redis_url = redis_url
        self._redis: Any = client

    async def _get_client(self) -> Any:
        """Get or create the Redis client connection."""
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def get(self, key: str) -> bytes | None:
        client = await self._get_client()
        try:
            return await client.get(key)
        except RedisError as e:
            raise StorageUnavailableError(f"Redis get failed: {e}") from e

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        client = await self._get_client()
        try:
            if ttl > 0:
                await client.setex(key, ttl, value)
            else:
                await client.set(key, value)
        except RedisError as e:
            raise StorageUnavailableError(f"Redis set failed: {e}") from e

    async def compare_and_set(
        self, key: str, expected: bytes | None, value: bytes, ttl: int
    ) -> bool:
        client = await self._get_client()
        try:
            result = await client.eval(
                COMPARE_AND_SET_SCRIPT,
                1,  # Number of keys
                key,  # KEYS[1]
                "0" if expected is None else "1",  # ARGV[1]
                b"" if expected is None else expected,  # ARGV[2]
                value,  # ARGV[3]
                max(0, ttl),  # ARGV[4]
            )
        except RedisError as e:
            raise StorageUnavailableError(f"Redis compare-and-set failed: {e}") from e
        return bool(int(result))

    async def delete(self, key: str) -> None:
        client = await self._get_client()
        try:
            await client.delete(key)
        except RedisError as e:
            raise StorageUnavailableError(f"Redis delete failed: {e}") from e

    async def exists(self, key: str) -> bool:
        client = await self._get_client()
        try:
            return await client.exists(key) > 0
        except RedisError as e:
            raise StorageUnavailableError(f"Redis exists failed: {e}") from e

    async def clear(self) -> None:
        """Clear all entries from the cache.

        WARNING: This uses FLUSHDB which clears the entire Redis database.
        Be careful when using a shared Redis instance.
        """
        client = await self._get_client()
        try:
            await client.flushdb()
        except RedisError as e:
            raise StorageUnavailableError(f"Redis flush failed: {e}") from e

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_cache(
    backend: str | None = None,
    redis_url: str | None = None,
    max_entries: int | None = None,
) -> CacheBackend:
    """Create a storage backend based on configuration.

    Args:
        backend: 'memory', 'redis', or None to follow settings.redis_enabled.
        redis_url: Redis connection URL. Defaults to settings.redis_url.
        max_entries: LRU bound for the in-memory backend.

    Returns:
        A new CacheBackend instance (InMemoryCache or RedisCache).
    """
    from ratecache.core.config import settings

    if backend == "redis":
        use_redis = True
    elif backend == "memory":
        use_redis = False
    elif backend is None:
        use_redis = settings.redis_enabled
    else:
        raise ValueError(f"Unknown cache backend: {backend!r}")

    if use_redis:
        return RedisCache(redis_url or settings.redis_url)
    return InMemoryCache(max_entries=max_entries)
