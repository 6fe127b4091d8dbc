from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ratecache.api.admin import router as admin_router
from ratecache.core.cache import CacheBackend, InMemoryCache, create_cache
from ratecache.core.config import settings
from ratecache.core.logging import get_logger, setup_logging
from ratecache.core.metrics import MetricsCollector
from ratecache.exceptions import ClientBannedError, RateCacheError, RateLimitedError
from ratecache.middleware.rate_limit import RateLimitMiddleware
from ratecache.services.admin import AdminService
from ratecache.services.query_cache import QueryCache
from ratecache.services.rate_limit import (
    PolicyRegistry,
    SlidingWindowRateLimiter,
    default_registry,
)


def create_app(
    limiter: Optional[SlidingWindowRateLimiter] = None,
    query_cache: Optional[QueryCache] = None,
    registry: Optional[PolicyRegistry] = None,
    metrics: Optional[MetricsCollector] = None,
    storage: Optional[CacheBackend] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Anything not passed in is built from settings. The limiter and the
    durable cache tier share one storage backend. With the in-memory
    backend, which is LRU bounded, the query cache keeps its tag indexes
    in a separate unbounded store so an eviction cannot hide entries from
    invalidation. The admin API is exempt from rate limiting so a banned
    operator can still unban.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    metrics = metrics if metrics is not None else MetricsCollector()
    if storage is None and (limiter is None or query_cache is None):
        storage = create_cache(max_entries=settings.max_tracked_clients * 4)
    if limiter is None:
        limiter = SlidingWindowRateLimiter(storage, metrics=metrics)
    if query_cache is None:
        index = InMemoryCache() if isinstance(storage, InMemoryCache) else None
        query_cache = QueryCache(durable=storage, index=index, metrics=metrics)
    if registry is None:
        registry = default_registry()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Close the shared storage connection (Redis) on shutdown."""
        logger.info(
            "Application startup complete",
            extra={"policies": [p.scope for p in registry.policies()]},
        )
        yield
        if storage is not None and hasattr(storage, "close"):
            await storage.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="ratecache",
        description="Sliding window rate limiting and two-tier query caching",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.metrics = metrics
    app.state.storage = storage
    app.state.limiter = limiter
    app.state.query_cache = query_cache
    app.state.registry = registry
    app.state.admin_service = AdminService(
        limiter, query_cache=query_cache, registry=registry, metrics=metrics
    )

    app.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        registry=registry,
        exempt_paths=("/health", "/admin"),
    )

    app.include_router(admin_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with storage connectivity."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}
        if storage is None:
            return health_status

        try:
            test_key = "_health_check_test"
            await storage.set(test_key, b"ping", ttl=5)
            value = await storage.get(test_key)
            await storage.delete(test_key)

            cache_type = "redis" if storage.__class__.__name__ == "RedisCache" else "memory"
            if value == b"ping":
                health_status["components"]["storage"] = {"status": "ok", "type": cache_type}
            else:
                health_status["status"] = "degraded"
                health_status["components"]["storage"] = {
                    "status": "error",
                    "error": "Unexpected value",
                }
        except RateCacheError as e:
            health_status["status"] = "degraded"
            health_status["components"]["storage"] = {
                "status": "error",
                "error": e.message[:100],
            }
        return health_status

    @app.exception_handler(RateCacheError)
    async def ratecache_error_handler(request: Request, exc: RateCacheError) -> JSONResponse:
        """Render library errors raised inside route handlers."""
        headers = None
        if isinstance(exc, (RateLimitedError, ClientBannedError)):
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__}: {exc.message}", exc_info=exc.__cause__)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers=headers,
        )

    return app


# Create the application instance
app = create_app()
