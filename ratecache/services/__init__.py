"""Services package for ratecache.

This package provides:
- Sliding window rate limiting with bans
- Two-tier query caching with cursor pagination
- Administrative operations over both
"""

from ratecache.services.admin import AdminService
from ratecache.services.query_cache import QueryCache
from ratecache.services.rate_limit import (
    PolicyRegistry,
    RateLimitPolicy,
    RateLimitResult,
    RouteMatcher,
    SlidingWindowRateLimiter,
    default_registry,
)

__all__ = [
    "AdminService",
    "QueryCache",
    "PolicyRegistry",
    "RateLimitPolicy",
    "RateLimitResult",
    "RouteMatcher",
    "SlidingWindowRateLimiter",
    "default_registry",
]
