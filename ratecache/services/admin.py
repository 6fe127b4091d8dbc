"""Administrative operations over the limiter and the query cache.

The authorization check itself belongs to whatever wraps this service
(see ``ratecache.api.admin``).
"""

from typing import Any, Dict, Optional

from ratecache.core.logging import get_logger
from ratecache.core.metrics import MetricsCollector
from ratecache.services.query_cache import QueryCache
from ratecache.services.rate_limit import PolicyRegistry, SlidingWindowRateLimiter

logger = get_logger(__name__)


class AdminService:
    """Privileged operations: unban, manual ban, abuse reset, stats."""

    def __init__(
        self,
        limiter: SlidingWindowRateLimiter,
        query_cache: Optional[QueryCache] = None,
        registry: Optional[PolicyRegistry] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.limiter = limiter
        self.query_cache = query_cache
        self.registry = registry
        self.metrics = metrics

    async def unban(self, client_key: str) -> Dict[str, Any]:
        was_banned = await self.limiter.unban(client_key)
        return {
            "success": True,
            "client_key": client_key,
            "was_banned": was_banned,
            "message": "Client unbanned successfully",
        }

    async def ban(self, client_key: str, duration: Optional[int] = None) -> Dict[str, Any]:
        banned_until = await self.limiter.ban(client_key, duration)
        return {"success": True, "client_key": client_key, "banned_until": banned_until}

    async def clear_abuse(self, client_key: str) -> Dict[str, Any]:
        await self.limiter.clear_abuse(client_key)
        return {"success": True, "client_key": client_key}

    async def invalidate_tags(self, *tags: str) -> Dict[str, Any]:
        if self.query_cache is None:
            return {"success": False, "invalidated": 0}
        invalidated = await self.query_cache.invalidate_tags(*tags)
        return {"success": True, "invalidated": invalidated}

    async def get_stats(self, slow_query_limit: int = 50) -> Dict[str, Any]:
        """Combined limiter and cache statistics.

        Returns:
            Dictionary with total_clients, banned_clients, slow_queries and
            the full cache report
        """
        stats = await self.limiter.get_stats()
        if self.registry is not None:
            stats["rate_limits"] = [p.to_dict() for p in self.registry.policies()]

        if self.query_cache is not None:
            report = self.query_cache.get_performance_report(limit=slow_query_limit)
            stats["slow_queries"] = report["slow_query_count"]
            stats["cache"] = report
        else:
            stats["slow_queries"] = 0

        if self.metrics is not None:
            stats["metrics"] = await self.metrics.get_summary()
        return stats
