"""Rate limiting middleware.

Bridges Starlette requests to the rate limiter: builds a RequestContext,
resolves the policy and client identity, and turns the decision into a
response status plus quota headers.
"""

from typing import Iterable, Optional

from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ratecache.core.identity import RequestContext, resolve_identity
from ratecache.core.logging import get_log_context, get_logger
from ratecache.exceptions import ErrorKind
from ratecache.services.rate_limit import (
    PolicyRegistry,
    RateLimitPolicy,
    RateLimitResult,
    SlidingWindowRateLimiter,
)

logger = get_logger(__name__)

DENY_STATUS = {
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.BANNED: 403,
    ErrorKind.STORAGE_UNAVAILABLE: 503,
}

DENY_MESSAGES = {
    ErrorKind.RATE_LIMITED: "Rate limit exceeded. Please try again later.",
    ErrorKind.BANNED: "Client banned",
    ErrorKind.STORAGE_UNAVAILABLE: "Rate limiting temporarily unavailable.",
}


def build_request_context(request: Request) -> RequestContext:
    """Build the limiter's view of a request.

    The user id is read from ``request.state.user_id``, which an upstream
    authentication layer is expected to set.
    """
    user_id = getattr(request.state, "user_id", None)
    return RequestContext(
        route=request.url.path,
        method=request.method,
        user_id=str(user_id) if user_id is not None else None,
        remote_addr=request.client.host if request.client else None,
        headers=request.headers,
    )


def deny_response(result: RateLimitResult) -> JSONResponse:
    """Render a denial. Only the reason and the retry hint are exposed."""
    reason = result.reason or ErrorKind.RATE_LIMITED
    return JSONResponse(
        status_code=DENY_STATUS.get(reason, 429),
        content={
            "error": reason.value,
            "message": DENY_MESSAGES.get(reason, DENY_MESSAGES[ErrorKind.RATE_LIMITED]),
            "retry_after": result.retry_after,
        },
        headers=result.headers(),
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    Limits are applied per policy resolved from the route; clients are
    identified per the policy's identity strategy. ``exempt_paths`` are
    path prefixes: "/admin" skips "/admin" and everything below it.
    """

    def __init__(
        self,
        app,
        limiter: SlidingWindowRateLimiter,
        registry: PolicyRegistry,
        exempt_paths: Iterable[str] = ("/health",),
    ):
        super().__init__(app)
        self.limiter = limiter
        self.registry = registry
        self.exempt_paths = tuple(path.rstrip("/") for path in exempt_paths)

    def is_exempt(self, path: str) -> bool:
        return any(
            path == prefix or path.startswith(prefix + "/")
            for prefix in self.exempt_paths
        )

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if self.is_exempt(request.url.path):
            return await call_next(request)

        ctx = build_request_context(request)
        policy = self.registry.resolve(ctx)
        identity = resolve_identity(ctx, policy.identity_strategy)
        result = await self.limiter.admit(identity, policy, route=ctx.route)

        if not result.allowed:
            logger.info(
                f"Request denied: {result.reason.value}",
                extra=get_log_context(
                    client_key=identity.key,
                    policy=policy.scope,
                    route=ctx.route,
                    method=ctx.method,
                ),
            )
            return deny_response(result)

        response = await call_next(request)

        for name, value in result.headers().items():
            response.headers[name] = value

        return response


def require_rate_limit(limiter: SlidingWindowRateLimiter, policy: RateLimitPolicy):
    """Build a FastAPI dependency that applies one policy to one route.

    Useful for per-action limits (e.g. 10 creates per minute) on top of
    the middleware's route-class limits.

    Example:
        >>> create_limit = RateLimitPolicy("create_product", 10, 10)
        >>> @app.post("/products", dependencies=[Depends(require_rate_limit(limiter, create_limit))])
        ... async def create_product(): ...
    """

    async def dependency(request: Request) -> RateLimitResult:
        ctx = build_request_context(request)
        identity = resolve_identity(ctx, policy.identity_strategy)
        result = await limiter.admit(identity, policy, route=ctx.route)
        request.state.rate_limit = result
        if not result.allowed:
            reason = result.reason or ErrorKind.RATE_LIMITED
            raise HTTPException(
                status_code=DENY_STATUS.get(reason, 429),
                detail={
                    "error": reason.value,
                    "message": DENY_MESSAGES.get(reason, DENY_MESSAGES[ErrorKind.RATE_LIMITED]),
                    "retry_after": result.retry_after,
                },
                headers=result.headers(),
            )
        return result

    return dependency


def get_rate_limit_result(request: Request) -> Optional[RateLimitResult]:
    """Decision attached by ``require_rate_limit``, if any."""
    return getattr(request.state, "rate_limit", None)
