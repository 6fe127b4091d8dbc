"""Admin endpoints for the rate limiter and the query cache.

All routes require the admin bearer token. The services are taken from
``app.state`` (see ``ratecache.main.create_app``).
"""

from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from ratecache.core.logging import get_logger
from ratecache.middleware.auth import require_admin
from ratecache.services.admin import AdminService

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


class InvalidateRequest(BaseModel):
    """Body of a tag invalidation request."""

    tags: List[str] = Field(min_length=1)


def get_admin_service(request: Request) -> AdminService:
    return request.app.state.admin_service


@router.get("/stats")
async def admin_stats(
    slow_query_limit: int = Query(50, ge=1, le=1000),
    admin=Depends(require_admin),
    service: AdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    """Limiter, cache and metrics statistics (admin only)."""
    return await service.get_stats(slow_query_limit=slow_query_limit)


@router.post("/clients/{client_key}/unban")
async def unban_client(
    client_key: str,
    admin=Depends(require_admin),
    service: AdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    logger.info(f"Admin unban requested for {client_key}")
    return await service.unban(client_key)


@router.post("/clients/{client_key}/ban")
async def ban_client(
    client_key: str,
    duration: Optional[int] = Query(None, ge=1),
    admin=Depends(require_admin),
    service: AdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    logger.info(f"Admin ban requested for {client_key}")
    return await service.ban(client_key, duration)


@router.delete("/clients/{client_key}/abuse")
async def clear_client_abuse(
    client_key: str,
    admin=Depends(require_admin),
    service: AdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    return await service.clear_abuse(client_key)


@router.post("/cache/invalidate")
async def invalidate_cache(
    body: InvalidateRequest,
    admin=Depends(require_admin),
    service: AdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    """Drop every cached query registered under the given tags."""
    return await service.invalidate_tags(*body.tags)


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(
    request: Request,
    admin=Depends(require_admin),
) -> PlainTextResponse:
    """Prometheus-compatible metrics endpoint (admin only)."""
    collector = request.app.state.metrics
    content = await collector.get_prometheus_metrics()
    return PlainTextResponse(
        content=content, media_type="text/plain; version=0.0.4; charset=utf-8"
    )
