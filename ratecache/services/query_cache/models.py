"""Query cache data models."""

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional


@dataclass
class CacheEntry:
    """One cached query result as stored in both tiers.

    Attributes:
        key: Derived cache key
        payload: JSON-serializable query result
        computed_at: When the payload was computed (unix seconds)
        expires_at: When the entry stops being served
        compute_time: Wall time of the computation in seconds
        tags: Invalidation tags the entry is registered under
    """

    key: str
    payload: Any
    computed_at: float
    expires_at: float
    compute_time: float = 0.0
    tags: List[str] = field(default_factory=list)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "payload": self.payload,
            "computed_at": self.computed_at,
            "expires_at": self.expires_at,
            "compute_time": self.compute_time,
            "tags": self.tags,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        return cls(
            key=data["key"],
            payload=data["payload"],
            computed_at=data["computed_at"],
            expires_at=data["expires_at"],
            compute_time=data.get("compute_time", 0.0),
            tags=list(data.get("tags", [])),
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> Optional["CacheEntry"]:
        """Decode a stored envelope; unreadable data yields None."""
        try:
            return cls.from_dict(json.loads(raw.decode("utf-8")))
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError):
            return None


@dataclass
class QueryMetrics:
    """Cumulative per-key metrics."""

    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    errors: int = 0
    total_compute_time: float = 0.0
    last_compute_time: float = 0.0
    result_count: int = 0
    last_access: float = 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "coalesced": self.coalesced,
            "errors": self.errors,
            "total_compute_time": round(self.total_compute_time, 6),
            "execution_time": round(self.last_compute_time, 6),
            "result_count": self.result_count,
            "last_access": self.last_access,
        }


@dataclass
class CachedResult:
    """What ``QueryCache.fetch`` returns."""

    payload: Any
    from_cache: bool
    compute_time: float
    key: str


@dataclass
class Page:
    """One page of a cursor-paginated result."""

    items: List[Any]
    has_next: bool
    has_previous: bool
    next_cursor: Optional[str]
    prev_cursor: Optional[str]
    from_cache: bool = False
    key: str = ""

    def to_dict(self) -> dict:
        return {
            "items": self.items,
            "pagination": {
                "has_next": self.has_next,
                "has_previous": self.has_previous,
                "next_cursor": self.next_cursor,
                "prev_cursor": self.prev_cursor,
            },
        }
