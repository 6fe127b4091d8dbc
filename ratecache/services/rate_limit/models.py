"""Rate limiting data models.

This module contains dataclasses for policies, per-client window state
and the decision returned by the limiter.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ratecache.core.identity import IdentityStrategy
from ratecache.exceptions import (
    ClientBannedError,
    ErrorKind,
    InvalidPolicyError,
    StorageUnavailableError,
    RateLimitedError,
)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Static configuration for one route class.

    ``burst_capacity`` and ``max_requests`` are independent trip-wires;
    ``burst_capacity`` may exceed ``max_requests``.
    """

    scope: str
    max_requests: int
    burst_capacity: int
    window_seconds: int = 60
    identity_strategy: IdentityStrategy = IdentityStrategy.DEFAULT

    def __post_init__(self) -> None:
        if not self.scope:
            raise InvalidPolicyError("Policy scope must not be empty")
        for name in ("max_requests", "burst_capacity", "window_seconds"):
            if getattr(self, name) < 1:
                raise InvalidPolicyError(f"Policy {self.scope}: {name} must be at least 1")

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "requests_per_window": self.max_requests,
            "burst_capacity": self.burst_capacity,
            "window_seconds": self.window_seconds,
            "strategy": self.identity_strategy.value,
        }


@dataclass
class ClientWindowState:
    """Mutable record for one (client, policy scope) pair.

    Attributes:
        timestamps: Unix seconds of admitted requests inside the window
        first_seen: When the window record was created
        last_seen: Last admitted request
        endpoints: Last admitted time per route
        abuse_count: Burst violations so far (per client, across scopes)
        banned_until: Ban expiry (per client, across scopes)
    """

    timestamps: List[int] = field(default_factory=list)
    first_seen: int = 0
    last_seen: Optional[int] = None
    endpoints: Dict[str, int] = field(default_factory=dict)
    abuse_count: int = 0
    banned_until: Optional[int] = None

    def prune(self, now: int, window_seconds: int) -> None:
        """Drop timestamps outside the trailing window."""
        cutoff = now - window_seconds
        self.timestamps = [ts for ts in self.timestamps if ts > cutoff]

    def is_banned(self, now: int) -> bool:
        return self.banned_until is not None and self.banned_until > now

    def window_to_dict(self) -> dict:
        """Serialize the window part for storage."""
        return {
            "timestamps": self.timestamps,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "endpoints": self.endpoints,
        }

    @classmethod
    def from_window_dict(cls, data: dict) -> "ClientWindowState":
        return cls(
            timestamps=[int(ts) for ts in data.get("timestamps", [])],
            first_seen=int(data.get("first_seen", 0)),
            last_seen=data.get("last_seen"),
            endpoints=dict(data.get("endpoints", {})),
        )


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after: Optional[int] = None
    reason: Optional[ErrorKind] = None
    policy: str = ""
    client_key: str = ""

    def headers(self) -> Dict[str, str]:
        """Quota headers for the outbound response."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_time),
        }
        if not self.allowed and self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    def raise_for_status(self) -> None:
        """Raise the matching exception for a denial; no-op when allowed."""
        if self.allowed:
            return
        retry_after = self.retry_after or 0
        if self.reason == ErrorKind.BANNED:
            raise ClientBannedError(retry_after)
        if self.reason == ErrorKind.STORAGE_UNAVAILABLE:
            raise StorageUnavailableError()
        raise RateLimitedError(retry_after)
