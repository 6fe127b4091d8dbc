"""HTTP adapters: rate limiting middleware and admin authentication."""

from ratecache.middleware.auth import require_admin
from ratecache.middleware.rate_limit import (
    RateLimitMiddleware,
    build_request_context,
    get_rate_limit_result,
    require_rate_limit,
)

__all__ = [
    "RateLimitMiddleware",
    "build_request_context",
    "get_rate_limit_result",
    "require_admin",
    "require_rate_limit",
]
