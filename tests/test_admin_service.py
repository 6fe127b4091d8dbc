"""Tests for AdminService without the HTTP layer."""

import pytest

from ratecache.core.cache import InMemoryCache
from ratecache.core.identity import ClientIdentity
from ratecache.services.admin import AdminService
from ratecache.services.rate_limit import RateLimitPolicy, SlidingWindowRateLimiter


@pytest.fixture
def limiter(clock):
    return SlidingWindowRateLimiter(InMemoryCache(clock=clock), clock=clock)


@pytest.mark.asyncio
async def test_stats_without_query_cache(limiter):
    policy = RateLimitPolicy(scope="api", max_requests=5, burst_capacity=5)
    await limiter.admit(ClientIdentity.for_user("1"), policy)
    service = AdminService(limiter)

    stats = await service.get_stats()

    assert stats["total_clients"] == 1
    assert stats["slow_queries"] == 0
    assert "cache" not in stats


@pytest.mark.asyncio
async def test_invalidate_without_query_cache(limiter):
    service = AdminService(limiter)

    assert await service.invalidate_tags("entity:1") == {"success": False, "invalidated": 0}


@pytest.mark.asyncio
async def test_ban_reports_expiry(limiter, clock):
    service = AdminService(limiter)

    result = await service.ban("user:9", duration=60)

    assert result["banned_until"] == int(clock()) + 60
    assert (await service.unban("user:9"))["was_banned"] is True
