"""HTTP routers."""

from ratecache.api.admin import router as admin_router

__all__ = ["admin_router"]
