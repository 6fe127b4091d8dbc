"""Core utilities shared by the rate limiter and the query cache."""

from ratecache.core.cache import (
    CacheBackend,
    InMemoryCache,
    RedisCache,
    create_cache,
)
from ratecache.core.config import Settings, settings
from ratecache.core.identity import (
    ClientIdentity,
    IdentityStrategy,
    RequestContext,
    resolve_client_ip,
    resolve_identity,
)
from ratecache.core.logging import get_logger, setup_logging
from ratecache.core.metrics import MetricsCollector

__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
    "create_cache",
    "Settings",
    "settings",
    "ClientIdentity",
    "IdentityStrategy",
    "RequestContext",
    "resolve_client_ip",
    "resolve_identity",
    "get_logger",
    "setup_logging",
    "MetricsCollector",
]
