"""Sliding window rate limiting.

Re-exports the limiter, its models and the policy registry.
"""

from ratecache.services.rate_limit.limiter import SlidingWindowRateLimiter
from ratecache.services.rate_limit.models import (
    ClientWindowState,
    RateLimitPolicy,
    RateLimitResult,
)
from ratecache.services.rate_limit.policies import (
    PolicyRegistry,
    RouteMatcher,
    default_registry,
)

__all__ = [
    "SlidingWindowRateLimiter",
    "ClientWindowState",
    "RateLimitPolicy",
    "RateLimitResult",
    "PolicyRegistry",
    "RouteMatcher",
    "default_registry",
]
