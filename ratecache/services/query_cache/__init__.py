"""Two-tier query cache with cursor pagination.

Re-exports the cache service, its models and the cursor helpers.
"""

from ratecache.services.query_cache.cursor import (
    Cursor,
    decode_cursor,
    encode_cursor,
    select_page,
)
from ratecache.services.query_cache.keys import derive_cache_key, normalize_query
from ratecache.services.query_cache.models import (
    CachedResult,
    CacheEntry,
    Page,
    QueryMetrics,
)
from ratecache.services.query_cache.service import QueryCache, extract_items

__all__ = [
    "QueryCache",
    "extract_items",
    "CachedResult",
    "CacheEntry",
    "Page",
    "QueryMetrics",
    "Cursor",
    "encode_cursor",
    "decode_cursor",
    "select_page",
    "derive_cache_key",
    "normalize_query",
]
