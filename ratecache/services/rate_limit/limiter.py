"""Sliding window rate limiter with burst detection and progressive bans.

State lives entirely in an injected ``CacheBackend`` so the same limiter
works against process memory or a shared Redis.
"""

import asyncio
import json
import time
import zlib
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

from ratecache.core.cache import CacheBackend
from ratecache.core.config import settings
from ratecache.core.identity import ClientIdentity
from ratecache.core.logging import get_log_context, get_logger
from ratecache.core.metrics import MetricsCollector
from ratecache.exceptions import ErrorKind, StorageUnavailableError
from ratecache.services.rate_limit.models import (
    ClientWindowState,
    RateLimitPolicy,
    RateLimitResult,
)

logger = get_logger(__name__)


def _at_least_one(name: str, value: Optional[int], default: int) -> int:
    value = default if value is None else value
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {value}")
    return value


class SlidingWindowRateLimiter:
    """Per-client sliding window limiter.

    Each admitted request appends its timestamp to the client's window for
    the policy scope. A request is denied when the window is full; a
    request that finds both the burst and the max ceiling exhausted counts
    as abuse, and repeated abuse turns into a timed ban.

    The window and the abuse counter are updated with a read, check and
    compare-and-set cycle that retries when another writer changed the
    record in between, so limiters in several processes sharing one
    backend can never both take the last slot. Within a process a sharded
    lock keeps requests for the same client from retrying against each
    other.

    Cache key format:
        ratelimit:window:{scope}:{client_key}
        ratelimit:abuse:{client_key}
        ratelimit:ban:{client_key}
    """

    KEY_PREFIX = "ratelimit"
    DEFAULT_LOCK_SHARDS = 64
    MAX_UPDATE_ATTEMPTS = 16

    def __init__(
        self,
        storage: CacheBackend,
        ban_threshold: Optional[int] = None,
        ban_duration: Optional[int] = None,
        abuse_ttl: Optional[int] = None,
        window_state_ttl: Optional[int] = None,
        fail_closed: Optional[bool] = None,
        max_tracked_clients: Optional[int] = None,
        lock_shards: int = DEFAULT_LOCK_SHARDS,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        """Initialize the limiter.

        Args:
            storage: Backend holding window, abuse and ban records
            ban_threshold: Burst violations that trigger a ban
            ban_duration: Ban length in seconds
            abuse_ttl: Lifetime of the abuse counter record
            window_state_ttl: Minimum lifetime of a window record
            fail_closed: Deny instead of allow when storage is unavailable
            max_tracked_clients: LRU bound for the in-process client registry
            lock_shards: Number of per-key lock shards
            clock: Time source, injectable for tests
            metrics: Optional shared metrics collector
        """
        self._storage = storage
        self.ban_threshold = _at_least_one(
            "ban_threshold", ban_threshold, settings.ban_threshold
        )
        self.ban_duration = _at_least_one(
            "ban_duration", ban_duration, settings.ban_duration_seconds
        )
        self.abuse_ttl = _at_least_one("abuse_ttl", abuse_ttl, settings.abuse_ttl_seconds)
        self.window_state_ttl = _at_least_one(
            "window_state_ttl", window_state_ttl, settings.window_state_ttl_seconds
        )
        self.fail_closed = (
            settings.rate_limit_fail_closed if fail_closed is None else fail_closed
        )
        self._max_tracked_clients = _at_least_one(
            "max_tracked_clients", max_tracked_clients, settings.max_tracked_clients
        )
        self._locks = [asyncio.Lock() for _ in range(max(1, lock_shards))]
        self._clock = clock
        self._metrics = metrics

        # Per-process views used for stats only; storage is the source of truth
        self._clients: OrderedDict[str, int] = OrderedDict()
        self._banned: OrderedDict[str, int] = OrderedDict()
        self._max_window = 0

    def _lock_for(self, client_key: str) -> asyncio.Lock:
        return self._locks[zlib.crc32(client_key.encode()) % len(self._locks)]

    def _window_key(self, client_key: str, scope: str) -> str:
        return f"{self.KEY_PREFIX}:window:{scope}:{client_key}"

    def _abuse_key(self, client_key: str) -> str:
        return f"{self.KEY_PREFIX}:abuse:{client_key}"

    def _ban_key(self, client_key: str) -> str:
        return f"{self.KEY_PREFIX}:ban:{client_key}"

    def _now(self) -> int:
        return int(self._clock())

    @staticmethod
    def _decode_json(key: str, raw: Optional[bytes]) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            # Invalid stored data, treat as absent
            logger.debug(f"Discarding unreadable rate limit record: {key}")
            return None

    async def _load_json(self, key: str) -> Any:
        return self._decode_json(key, await self._storage.get(key))

    @staticmethod
    def _window_from(data: Any) -> ClientWindowState:
        if not isinstance(data, dict):
            return ClientWindowState()
        return ClientWindowState.from_window_dict(data)

    @staticmethod
    def _abuse_count_from(data: Any) -> int:
        return int(data) if isinstance(data, int) else 0

    async def _load_window(self, client_key: str, scope: str) -> ClientWindowState:
        return self._window_from(await self._load_json(self._window_key(client_key, scope)))

    async def _load_abuse_count(self, client_key: str) -> int:
        return self._abuse_count_from(await self._load_json(self._abuse_key(client_key)))

    async def _load_ban(self, client_key: str) -> Optional[int]:
        data = await self._load_json(self._ban_key(client_key))
        if isinstance(data, dict) and "banned_until" in data:
            return int(data["banned_until"])
        return None

    def _remember_ban(self, client_key: str, banned_until: int, now: int) -> None:
        for key, until in list(self._banned.items()):
            if until <= now:
                del self._banned[key]
        self._banned[client_key] = banned_until
        self._banned.move_to_end(client_key)
        while len(self._banned) > self._max_tracked_clients:
            self._banned.popitem(last=False)

    async def _store_ban(
        self, client_key: str, banned_until: int, duration: int, now: int
    ) -> None:
        data = json.dumps({"banned_until": banned_until}).encode("utf-8")
        await self._storage.set(self._ban_key(client_key), data, duration)
        self._remember_ban(client_key, banned_until, now)

    async def _clear_ban(self, client_key: str) -> None:
        await self._storage.delete(self._ban_key(client_key))
        self._banned.pop(client_key, None)

    async def _increment_abuse(self, client_key: str) -> Optional[int]:
        """Atomically add one burst violation to the abuse counter.

        Returns:
            The new count, or None if concurrent writers kept winning
        """
        key = self._abuse_key(client_key)
        for _ in range(self.MAX_UPDATE_ATTEMPTS):
            raw = await self._storage.get(key)
            abuse_count = self._abuse_count_from(self._decode_json(key, raw)) + 1
            data = json.dumps(abuse_count).encode("utf-8")
            if await self._storage.compare_and_set(key, raw, data, self.abuse_ttl):
                return abuse_count
        return None

    async def _track_abuse(self, client_key: str, now: int) -> int:
        """Increment the abuse counter and ban once it reaches the threshold.

        Returns:
            The new abuse count
        """
        abuse_count = await self._increment_abuse(client_key)
        if abuse_count is None:
            logger.warning(
                "Burst violation not recorded, abuse counter kept changing",
                extra=get_log_context(client_key=client_key),
            )
            return await self._load_abuse_count(client_key)
        if abuse_count >= self.ban_threshold:
            await self._store_ban(
                client_key, now + self.ban_duration, self.ban_duration, now
            )
            logger.warning(
                f"Client banned for {self.ban_duration}s after {abuse_count} burst violations",
                extra=get_log_context(client_key=client_key),
            )
            if self._metrics is not None:
                await self._metrics.increment("ratelimit_bans_total")
        return abuse_count

    def _remember_client(self, client_key: str, now: int) -> None:
        self._clients[client_key] = now
        self._clients.move_to_end(client_key)
        while len(self._clients) > self._max_tracked_clients:
            self._clients.popitem(last=False)

    def _result(
        self,
        client_key: str,
        policy: RateLimitPolicy,
        now: int,
        count: int,
        allowed: bool,
        reason: Optional[ErrorKind] = None,
        retry_after: Optional[int] = None,
    ) -> RateLimitResult:
        return RateLimitResult(
            allowed=allowed,
            limit=policy.max_requests,
            remaining=max(0, policy.max_requests - count),
            reset_time=now + policy.window_seconds,
            retry_after=retry_after,
            reason=reason,
            policy=policy.scope,
            client_key=client_key,
        )

    async def admit(
        self,
        identity: ClientIdentity,
        policy: RateLimitPolicy,
        route: Optional[str] = None,
    ) -> RateLimitResult:
        """Check a request against a policy and record it when allowed.

        Args:
            identity: The resolved client
            policy: The policy for the request's route
            route: Optional route, recorded in the client's endpoint history

        Returns:
            RateLimitResult with the decision and quota header values
        """
        now = self._now()
        self._max_window = max(self._max_window, policy.window_seconds)
        try:
            async with self._lock_for(identity.key):
                result = await self._admit_locked(identity.key, policy, now, route)
        except StorageUnavailableError as e:
            result = self._handle_storage_failure(identity.key, policy, now, e)

        if self._metrics is not None:
            outcome = "allow" if result.allowed else result.reason.value
            await self._metrics.increment(
                "ratelimit_decisions_total", outcome=outcome, policy=policy.scope
            )
        return result

    async def _admit_locked(
        self,
        client_key: str,
        policy: RateLimitPolicy,
        now: int,
        route: Optional[str],
    ) -> RateLimitResult:
        window_key = self._window_key(client_key, policy.scope)
        for _ in range(self.MAX_UPDATE_ATTEMPTS):
            raw = await self._storage.get(window_key)
            state = self._window_from(self._decode_json(window_key, raw))
            result = await self._evaluate(client_key, policy, now, state)
            if result is not None:
                return result

            state.timestamps.append(now)
            if not state.first_seen:
                state.first_seen = now
            state.last_seen = now
            if route:
                state.endpoints[route] = now
            ttl = max(self.window_state_ttl, policy.window_seconds * 2)
            data = json.dumps(state.window_to_dict()).encode("utf-8")
            if await self._storage.compare_and_set(window_key, raw, data, ttl):
                return self._result(
                    client_key, policy, now, len(state.timestamps), allowed=True
                )
            logger.debug(
                "Window changed concurrently, re-evaluating",
                extra=get_log_context(client_key=client_key, policy=policy.scope),
            )

        logger.warning(
            f"Request denied after {self.MAX_UPDATE_ATTEMPTS} concurrent window updates",
            extra=get_log_context(client_key=client_key, policy=policy.scope),
        )
        return self._result(
            client_key, policy, now, policy.max_requests, allowed=False,
            reason=ErrorKind.RATE_LIMITED, retry_after=1,
        )

    async def _evaluate(
        self,
        client_key: str,
        policy: RateLimitPolicy,
        now: int,
        state: ClientWindowState,
    ) -> Optional[RateLimitResult]:
        """Apply the ban, burst and window checks to a loaded window.

        Returns:
            The denial, or None when the request may be recorded
        """
        state.prune(now, policy.window_seconds)
        count = len(state.timestamps)

        banned_until = await self._load_ban(client_key)
        if banned_until is not None:
            if banned_until > now:
                return self._result(
                    client_key, policy, now, count, allowed=False,
                    reason=ErrorKind.BANNED, retry_after=banned_until - now,
                )
            await self._clear_ban(client_key)

        self._remember_client(client_key, now)

        if count >= policy.burst_capacity and count >= policy.max_requests:
            # Too many requests too quickly
            abuse_count = await self._track_abuse(client_key, now)
            if abuse_count >= self.ban_threshold:
                return self._result(
                    client_key, policy, now, count, allowed=False,
                    reason=ErrorKind.BANNED, retry_after=self.ban_duration,
                )
            logger.info(
                f"Burst limit hit ({count} requests in {policy.window_seconds}s)",
                extra=get_log_context(client_key=client_key, policy=policy.scope),
            )
            return self._result(
                client_key, policy, now, count, allowed=False,
                reason=ErrorKind.RATE_LIMITED, retry_after=policy.window_seconds,
            )

        if count >= policy.max_requests:
            assert state.timestamps, "full window must hold timestamps"
            retry_after = (min(state.timestamps) + policy.window_seconds) - now
            return self._result(
                client_key, policy, now, count, allowed=False,
                reason=ErrorKind.RATE_LIMITED, retry_after=max(1, retry_after),
            )
        return None

    def _handle_storage_failure(
        self,
        client_key: str,
        policy: RateLimitPolicy,
        now: int,
        error: StorageUnavailableError,
    ) -> RateLimitResult:
        """Apply the configured fail-open/fail-closed policy."""
        if self.fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered: {error.message}. Request denied.",
                extra=get_log_context(client_key=client_key, policy=policy.scope),
            )
            return RateLimitResult(
                allowed=False,
                limit=policy.max_requests,
                remaining=0,
                reset_time=now + policy.window_seconds,
                retry_after=policy.window_seconds,
                reason=ErrorKind.STORAGE_UNAVAILABLE,
                policy=policy.scope,
                client_key=client_key,
            )

        logger.warning(
            f"Rate limiting fail-open triggered: {error.message}. "
            "Request allowed without rate limit check.",
            extra=get_log_context(client_key=client_key, policy=policy.scope),
        )
        return RateLimitResult(
            allowed=True,
            limit=policy.max_requests,
            remaining=policy.max_requests,
            reset_time=now + policy.window_seconds,
            policy=policy.scope,
            client_key=client_key,
        )

    async def unban(self, client_key: str) -> bool:
        """Clear a client's ban unconditionally.

        The abuse counter and window are left alone, so the next request is
        evaluated normally rather than auto-allowed.

        Returns:
            True if a ban record existed
        """
        async with self._lock_for(client_key):
            existed = await self._load_ban(client_key) is not None
            await self._clear_ban(client_key)
        logger.info("Client unbanned", extra=get_log_context(client_key=client_key))
        return existed

    async def ban(self, client_key: str, duration: Optional[int] = None) -> int:
        """Ban a client manually.

        Returns:
            The ban expiry as unix seconds
        """
        duration = _at_least_one("duration", duration, self.ban_duration)
        now = self._now()
        banned_until = now + duration
        async with self._lock_for(client_key):
            await self._store_ban(client_key, banned_until, duration, now)
        logger.info(
            f"Client banned manually for {duration}s",
            extra=get_log_context(client_key=client_key),
        )
        return banned_until

    async def clear_abuse(self, client_key: str) -> None:
        """Reset a client's abuse counter."""
        async with self._lock_for(client_key):
            await self._storage.delete(self._abuse_key(client_key))

    async def get_state(self, client_key: str, scope: str) -> ClientWindowState:
        """Read-only view of a client's stored state for one scope."""
        state = await self._load_window(client_key, scope)
        state.abuse_count = await self._load_abuse_count(client_key)
        state.banned_until = await self._load_ban(client_key)
        return state

    async def get_stats(self) -> Dict[str, Any]:
        """Per-process client statistics.

        Returns:
            Dictionary with total, active and banned client counts
        """
        now = self._now()
        for client_key, until in list(self._banned.items()):
            if until <= now:
                del self._banned[client_key]

        window = self._max_window or settings.rate_limit_window_seconds
        active = sum(1 for seen in self._clients.values() if seen > now - window)

        stats: Dict[str, Any] = {
            "total_clients": len(self._clients),
            "active_clients": active,
            "banned_clients": len(self._banned),
            "ban_threshold": self.ban_threshold,
            "ban_duration": self.ban_duration,
            "fail_closed": self.fail_closed,
        }
        if self._metrics is not None:
            stats["decisions"] = {
                "allowed": await self._metrics.get_counter(
                    "ratelimit_decisions_total", outcome="allow"
                ),
                "total": await self._metrics.get_counter("ratelimit_decisions_total"),
            }
        return stats
