"""Two-tier query cache with single-flight misses and tag invalidation.

Provides:
- A fast tier (process memory) in front of a durable tier (any CacheBackend)
- Promotion of durable hits into the fast tier
- At most one in-flight computation per key (single-flight)
- Tag-based invalidation, with entity tags derived from the result items
- Per-key hit/miss/latency metrics and slow query reporting
- Keyset (cursor) pagination on top of ``fetch``
"""

import asyncio
import json
import math
import time
import uuid
import zlib
from collections import OrderedDict
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
)

from ratecache.core.cache import CacheBackend, InMemoryCache
from ratecache.core.config import settings
from ratecache.core.logging import get_log_context, get_logger
from ratecache.core.metrics import MetricsCollector
from ratecache.exceptions import (
    CacheSerializationError,
    QueryComputeError,
    StorageUnavailableError,
)
from ratecache.services.query_cache.cursor import (
    NEXT,
    PREV,
    cursor_filter,
    decode_cursor,
    encode_cursor,
    item_field,
)
from ratecache.services.query_cache.keys import derive_cache_key, normalize_query
from ratecache.services.query_cache.models import (
    CachedResult,
    CacheEntry,
    Page,
    QueryMetrics,
)

logger = get_logger(__name__)

QueryExecutor = Callable[[Dict[str, Any]], Awaitable[Any]]
Primer = Callable[[Any], Awaitable[None]]
Generation = Tuple[int, Optional[bytes]]


def _positive_ttl(name: str, value: Optional[int], default: int) -> int:
    value = default if value is None else value
    if value < 1:
        raise ValueError(f"{name} must be at least 1 second, got {value}")
    return value


def extract_items(payload: Any) -> List[Any]:
    """Return the result items of a payload (a list, or ``payload["items"]``)."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("items"), list):
        return payload["items"]
    return []


class QueryCache:
    """Cache an expensive read behind a fast and a durable tier.

    Cache key format: {namespace}:{sha256 of normalized query + tenant}
    Tag index format: {namespace}:tag:{tag}
    Invalidation generation: {namespace}:generation

    Every invalidation replaces the generation token before it reads any
    tag index. A computation that sees the token change between its start
    and the end of its write deletes what it wrote, so a result computed
    before a mutation is never served after it.
    """

    MAX_TRACKED_KEYS = 10000
    LOCK_SHARDS = 32

    def __init__(
        self,
        durable: CacheBackend,
        fast: Optional[CacheBackend] = None,
        index: Optional[CacheBackend] = None,
        namespace: Optional[str] = None,
        tenant: Optional[str] = None,
        default_ttl: Optional[int] = None,
        slow_query_threshold: Optional[float] = None,
        ignored_fields: Optional[Iterable[str]] = None,
        primers: Sequence[Primer] = (),
        id_field: str = "id",
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        """Initialize the query cache.

        Args:
            durable: Durable tier (e.g. RedisCache)
            fast: Fast tier, defaults to a bounded InMemoryCache
            index: Holds tag indexes and the invalidation generation, defaults
                to the durable tier; must not evict entries before their TTL
            namespace: Key prefix
            tenant: Discriminator mixed into every key
            default_ttl: TTL used when ``fetch`` gets none
            slow_query_threshold: Compute time in seconds flagged as slow
            ignored_fields: Call-site-only query fields stripped before hashing
            primers: Callbacks that bulk-load related records for a payload
            id_field: Item field used for entity tags
            clock: Time source, injectable for tests
            metrics: Optional shared metrics collector
        """
        self._durable = durable
        self._fast = fast if fast is not None else InMemoryCache(
            max_entries=settings.cache_fast_tier_max_entries, clock=clock
        )
        self._index = index if index is not None else durable
        self.namespace = settings.cache_namespace if namespace is None else namespace
        self.tenant = settings.cache_tenant if tenant is None else tenant
        self.default_ttl = _positive_ttl("default_ttl", default_ttl, settings.cache_default_ttl)
        if slow_query_threshold is None:
            slow_query_threshold = settings.slow_query_threshold_seconds
        if slow_query_threshold < 0:
            raise ValueError("slow_query_threshold must not be negative")
        self.slow_query_threshold = slow_query_threshold
        self._ignored_fields = tuple(
            settings.cache_ignored_fields if ignored_fields is None else ignored_fields
        )
        self._primers = list(primers)
        self.id_field = id_field
        self._clock = clock
        self._metrics = metrics

        self._generation = 0
        self._inflight: Dict[str, asyncio.Future] = {}
        self._tag_locks = [asyncio.Lock() for _ in range(self.LOCK_SHARDS)]
        self._query_metrics: OrderedDict[str, QueryMetrics] = OrderedDict()

    # ------------------------------------------------------------------
    # Keys and metrics
    # ------------------------------------------------------------------

    def derive_key(self, query: Dict[str, Any]) -> str:
        """Derive the cache key for a query descriptor."""
        return derive_cache_key(
            query,
            namespace=self.namespace,
            tenant=self.tenant,
            ignored_fields=self._ignored_fields,
        )

    def _tag_key(self, tag: str) -> str:
        return f"{self.namespace}:tag:{tag}"

    @property
    def _generation_key(self) -> str:
        return f"{self.namespace}:generation"

    def _tag_lock(self, tag: str) -> asyncio.Lock:
        return self._tag_locks[zlib.crc32(tag.encode()) % len(self._tag_locks)]

    def _metric(self, key: str) -> QueryMetrics:
        metric = self._query_metrics.get(key)
        if metric is None:
            metric = QueryMetrics()
            self._query_metrics[key] = metric
            while len(self._query_metrics) > self.MAX_TRACKED_KEYS:
                self._query_metrics.popitem(last=False)
        else:
            self._query_metrics.move_to_end(key)
        metric.last_access = self._clock()
        return metric

    async def _count(self, outcome: str) -> None:
        if self._metrics is not None:
            await self._metrics.increment("query_cache_requests_total", outcome=outcome)

    def get_metrics(self, key: str) -> Optional[QueryMetrics]:
        return self._query_metrics.get(key)

    # ------------------------------------------------------------------
    # Tier access
    # ------------------------------------------------------------------

    async def _safe_get(self, tier: CacheBackend, key: str) -> Optional[bytes]:
        try:
            return await tier.get(key)
        except StorageUnavailableError as e:
            logger.warning(
                f"Cache read failed, treating as miss: {e.message}",
                extra=get_log_context(cache_key=key),
            )
            return None

    async def _safe_set(self, tier: CacheBackend, key: str, value: bytes, ttl: int) -> None:
        try:
            await tier.set(key, value, ttl)
        except StorageUnavailableError as e:
            logger.warning(
                f"Cache write skipped: {e.message}",
                extra=get_log_context(cache_key=key),
            )

    async def _safe_delete(self, tier: CacheBackend, key: str) -> None:
        try:
            await tier.delete(key)
        except StorageUnavailableError as e:
            logger.warning(
                f"Cache delete failed: {e.message}",
                extra=get_log_context(cache_key=key),
            )

    async def _read(self, key: str) -> Optional[CacheEntry]:
        """Fast tier first, then durable tier with promotion."""
        now = self._clock()

        raw = await self._safe_get(self._fast, key)
        if raw is not None:
            entry = CacheEntry.from_bytes(raw)
            if entry is not None and not entry.is_expired(now):
                await self._count("hit_fast")
                return entry
            await self._safe_delete(self._fast, key)

        raw = await self._safe_get(self._durable, key)
        if raw is None:
            return None
        entry = CacheEntry.from_bytes(raw)
        if entry is None or entry.is_expired(now):
            return None

        remaining = max(1, math.ceil(entry.expires_at - now))
        await self._safe_set(self._fast, key, raw, remaining)
        await self._count("hit_durable")
        return entry

    async def _write(self, entry: CacheEntry, raw: bytes, ttl: int) -> None:
        await self._safe_set(self._fast, entry.key, raw, ttl)
        await self._safe_set(self._durable, entry.key, raw, ttl)
        for tag in entry.tags:
            await self._register_tag(tag, entry.key, entry.expires_at)

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def _entry_tags(self, payload: Any, tags: Iterable[str]) -> List[str]:
        result = list(dict.fromkeys(tags))
        for item in extract_items(payload):
            try:
                item_id = item_field(item, self.id_field)
            except (KeyError, AttributeError):
                continue
            tag = f"entity:{item_id}"
            if tag not in result:
                result.append(tag)
        return result

    async def _generation_snapshot(self) -> Generation:
        return self._generation, await self._safe_get(self._index, self._generation_key)

    async def _bump_generation(self) -> None:
        self._generation += 1
        await self._safe_set(
            self._index, self._generation_key, uuid.uuid4().hex.encode("utf-8"), 0
        )

    async def _load_tag_index(self, tag: str) -> Dict[str, float]:
        raw = await self._safe_get(self._index, self._tag_key(tag))
        if raw is None:
            return {}
        try:
            data = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    async def _register_tag(self, tag: str, key: str, expires_at: float) -> None:
        async with self._tag_lock(tag):
            now = self._clock()
            index = {
                k: exp for k, exp in (await self._load_tag_index(tag)).items() if exp > now
            }
            index[key] = expires_at
            # The index must outlive its longest-lived entry
            ttl = max(1, math.ceil(max(index.values()) - now))
            await self._safe_set(
                self._index,
                self._tag_key(tag),
                json.dumps(index).encode("utf-8"),
                ttl,
            )

    async def invalidate_tags(self, *tags: str) -> int:
        """Drop every entry registered under any of the tags.

        Returns:
            Number of distinct cache keys invalidated
        """
        await self._bump_generation()
        keys: set[str] = set()
        for tag in tags:
            async with self._tag_lock(tag):
                keys.update((await self._load_tag_index(tag)).keys())
                await self._safe_delete(self._index, self._tag_key(tag))

        for key in keys:
            await self._safe_delete(self._fast, key)
            await self._safe_delete(self._durable, key)

        if keys:
            logger.info(f"Invalidated {len(keys)} cache entries for tags {list(tags)}")
        return len(keys)

    async def invalidate_entities(
        self, *entity_ids: Any, collection: Optional[str] = None
    ) -> int:
        """Mutation hook: drop entries covering the given entities.

        Pass ``collection`` for inserts, which can appear in any list query
        over that collection; entries tagged ``collection:<name>`` go too.
        """
        tags = [f"entity:{entity_id}" for entity_id in entity_ids]
        if collection:
            tags.append(f"collection:{collection}")
        return await self.invalidate_tags(*tags)

    async def invalidate(self, query: Dict[str, Any]) -> None:
        """Drop the entry for one query descriptor."""
        key = self.derive_key(query)
        await self._bump_generation()
        await self._safe_delete(self._fast, key)
        await self._safe_delete(self._durable, key)

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def _prime(self, payload: Any, extra: Sequence[Primer]) -> None:
        for primer in (*self._primers, *extra):
            await primer(payload)

    async def _compute(
        self,
        key: str,
        normalized: Dict[str, Any],
        compute: QueryExecutor,
        ttl: int,
        tags: Iterable[str],
    ) -> CacheEntry:
        metric = self._metric(key)
        generation = await self._generation_snapshot()
        start = time.perf_counter()
        try:
            payload = await compute(dict(normalized))
        except Exception as e:
            metric.errors += 1
            logger.warning(
                f"Query execution failed: {e}",
                extra=get_log_context(cache_key=key),
            )
            raise QueryComputeError(key) from e
        compute_time = time.perf_counter() - start

        now = self._clock()
        try:
            raw = CacheEntry(
                key=key,
                payload=payload,
                computed_at=now,
                expires_at=now + ttl,
                compute_time=compute_time,
                tags=self._entry_tags(payload, tags),
            ).to_bytes()
        except (TypeError, ValueError) as e:
            metric.errors += 1
            logger.warning(
                f"Query result is not JSON serializable: {e}",
                extra=get_log_context(cache_key=key),
            )
            raise CacheSerializationError(key) from e
        # Misses return the stored form, as hits do
        entry = CacheEntry.from_bytes(raw)

        await self._write(entry, raw, ttl)
        if await self._generation_snapshot() != generation:
            await self._safe_delete(self._fast, key)
            await self._safe_delete(self._durable, key)
            logger.info(
                "Discarded a result computed across an invalidation",
                extra=get_log_context(cache_key=key),
            )

        metric.misses += 1
        metric.total_compute_time += compute_time
        metric.last_compute_time = compute_time
        metric.result_count = len(extract_items(payload))
        await self._count("miss")
        if self._metrics is not None:
            await self._metrics.observe("query_compute_seconds", compute_time)

        if compute_time > self.slow_query_threshold:
            logger.warning(
                f"Slow query detected: {compute_time * 1000:.1f}ms",
                extra=get_log_context(
                    cache_key=key, duration_ms=round(compute_time * 1000, 2)
                ),
            )
            if self._metrics is not None:
                await self._metrics.increment("query_slow_total")
        return entry

    async def _compute_single_flight(
        self,
        key: str,
        normalized: Dict[str, Any],
        compute: QueryExecutor,
        ttl: int,
        tags: Iterable[str],
        recheck: bool,
    ) -> CacheEntry:
        inflight = self._inflight.get(key)
        if inflight is not None:
            self._metric(key).coalesced += 1
            await self._count("coalesced")
            return await asyncio.shield(inflight)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            entry = None
            if recheck:
                # Another caller may have populated the key while we were reading
                entry = await self._read(key)
            if entry is None:
                entry = await self._compute(key, normalized, compute, ttl, tags)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unobserved failure is not reported twice
            future.exception()
            raise
        else:
            future.set_result(entry)
            return entry
        finally:
            self._inflight.pop(key, None)

    async def fetch(
        self,
        query: Dict[str, Any],
        compute: QueryExecutor,
        ttl: Optional[int] = None,
        tags: Iterable[str] = (),
        force_refresh: bool = False,
        primers: Sequence[Primer] = (),
    ) -> CachedResult:
        """Return a query result, computing and caching it on a miss.

        Args:
            query: Query descriptor (JSON-compatible mapping)
            compute: Executes the query; receives the normalized descriptor
            ttl: Entry lifetime in seconds, defaults to ``default_ttl``
            tags: Extra invalidation tags (e.g. ``collection:posts``)
            force_refresh: Skip cached reads and recompute
            primers: Per-call related-record loaders, run after the configured ones

        Returns:
            CachedResult with the payload and where it came from

        Raises:
            QueryComputeError: The compute callback raised; nothing was cached
            CacheSerializationError: The result is not JSON serializable
        """
        key = self.derive_key(query)
        ttl = _positive_ttl("ttl", ttl, self.default_ttl)

        if not force_refresh:
            entry = await self._read(key)
            if entry is not None:
                self._metric(key).hits += 1
                await self._prime(entry.payload, primers)
                return CachedResult(
                    payload=entry.payload,
                    from_cache=True,
                    compute_time=entry.compute_time,
                    key=key,
                )

        normalized = normalize_query(query, self._ignored_fields)
        entry = await self._compute_single_flight(
            key, normalized, compute, ttl, tags, recheck=not force_refresh
        )
        await self._prime(entry.payload, primers)
        return CachedResult(
            payload=entry.payload,
            from_cache=False,
            compute_time=entry.compute_time,
            key=key,
        )

    async def fetch_page(
        self,
        query: Dict[str, Any],
        compute: QueryExecutor,
        cursor: Optional[str] = None,
        limit: int = 10,
        direction: str = NEXT,
        order_field: str = "date",
        id_field: Optional[str] = None,
        ttl: Optional[int] = None,
        tags: Iterable[str] = (),
    ) -> Page:
        """Fetch one page using keyset pagination.

        The decoded cursor becomes a ``cursor`` filter on the query
        (``<`` for next, ``>`` for prev) and ``limit`` is added before the
        query goes through ``fetch``. A malformed cursor is ignored and the
        first page is returned.

        Args:
            query: Query descriptor
            compute: Executes the query; must honour ``cursor`` and ``limit``
            cursor: Opaque cursor from a previous page
            limit: Page size
            direction: "next" or "prev"
            order_field: Primary ordering field of the items
            id_field: Tie-break field, defaults to the cache's id field
            ttl: Entry lifetime in seconds
            tags: Extra invalidation tags

        Returns:
            Page with items and fresh cursors
        """
        if direction not in (NEXT, PREV):
            raise ValueError(f"direction must be '{NEXT}' or '{PREV}', got {direction!r}")
        if limit < 1:
            raise ValueError("limit must be at least 1")
        id_field = id_field or self.id_field

        decoded = decode_cursor(cursor) if cursor else None
        if cursor and decoded is None:
            logger.debug("Ignoring malformed cursor, starting from the first page")

        page_query = dict(query)
        page_query["limit"] = limit
        if decoded is not None:
            page_query["cursor"] = cursor_filter(decoded, direction)

        result = await self.fetch(page_query, compute, ttl=ttl, tags=tags)
        items = extract_items(result.payload)

        next_cursor = prev_cursor = None
        if items:
            first, last = items[0], items[-1]
            next_cursor = encode_cursor(
                item_field(last, order_field), item_field(last, id_field)
            )
            prev_cursor = encode_cursor(
                item_field(first, order_field), item_field(first, id_field)
            )

        return Page(
            items=items,
            has_next=len(items) == limit,
            has_previous=decoded is not None,
            next_cursor=next_cursor,
            prev_cursor=prev_cursor,
            from_cache=result.from_cache,
            key=result.key,
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_performance_report(self, limit: int = 50) -> Dict[str, Any]:
        """Summarize tracked queries.

        Args:
            limit: Maximum number of slow queries to include

        Returns:
            Totals, average compute time, hit ratio and the slowest queries
        """
        report: Dict[str, Any] = {
            "total_queries": len(self._query_metrics),
            "slow_queries": {},
            "slow_query_count": 0,
            "average_time": 0,
            "cache_hit_ratio": 0,
            "hits": 0,
            "misses": 0,
        }
        if not self._query_metrics:
            return report

        hits = sum(m.hits + m.coalesced for m in self._query_metrics.values())
        misses = sum(m.misses for m in self._query_metrics.values())
        total_time = sum(m.total_compute_time for m in self._query_metrics.values())

        slow = [
            (key, m)
            for key, m in self._query_metrics.items()
            if m.last_compute_time > self.slow_query_threshold
        ]
        slow.sort(key=lambda pair: pair[1].last_compute_time, reverse=True)

        report["hits"] = hits
        report["misses"] = misses
        report["average_time"] = total_time / misses if misses else 0
        report["cache_hit_ratio"] = round(hits / (hits + misses), 4) if hits + misses else 0
        report["slow_query_count"] = len(slow)
        report["slow_queries"] = {key: m.to_dict() for key, m in slow[:limit]}
        return report
