import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_PROXY_HEADERS = [
    "X-Real-IP",
    "Client-IP",
    "X-Forwarded-For",
    "X-Forwarded",
    "X-Cluster-Client-IP",
    "Forwarded-For",
    "Forwarded",
]

DEFAULT_IGNORED_QUERY_FIELDS = [
    "cache_results",
    "fields",
    "force_refresh",
    "request_id",
    "nonce",
    "timestamp",
]


def _parse_name_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate comma separated values.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    return [p for p in re.split(r"[,\s]+", raw) if p]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via RATECACHE_* environment variables
    or a .env file.
    """

    # Redis settings (optional durable tier / shared limiter state)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Default policy: everything not matched by a route rule ("global")
    rate_limit_global_requests: int = 1000
    rate_limit_global_burst: int = 50

    # Authenticated fallback policy ("rest_api")
    rate_limit_authenticated_requests: int = 100
    rate_limit_authenticated_burst: int = 20

    # Anonymous fallback policy ("unauthenticated")
    rate_limit_anonymous_requests: int = 10
    rate_limit_anonymous_burst: int = 5

    rate_limit_window_seconds: int = 60
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when storage is unavailable
    )

    # Ban escalation
    ban_threshold: int = 5  # Burst violations before a ban
    ban_duration_seconds: int = 3600
    abuse_ttl_seconds: int = 3600
    window_state_ttl_seconds: int = 120
    max_tracked_clients: int = 10000

    # Client identity
    trust_proxy_headers: bool = True
    proxy_headers: Annotated[list[str], NoDecode] = DEFAULT_PROXY_HEADERS

    # Query cache settings
    cache_namespace: str = "query"
    cache_tenant: str = "default"
    cache_default_ttl: int = 300  # 5 minutes
    cache_fast_tier_max_entries: int = 5000
    slow_query_threshold_seconds: float = 0.1
    cache_ignored_fields: Annotated[list[str], NoDecode] = DEFAULT_IGNORED_QUERY_FIELDS

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("proxy_headers", "cache_ignored_fields", mode="before")
    @classmethod
    def decode_name_list(cls, v: Any) -> list[str]:
        return _parse_name_list(v)

    @field_validator(
        "rate_limit_global_requests",
        "rate_limit_global_burst",
        "rate_limit_authenticated_requests",
        "rate_limit_authenticated_burst",
        "rate_limit_anonymous_requests",
        "rate_limit_anonymous_burst",
        "rate_limit_window_seconds",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator("ban_threshold", "ban_duration_seconds", "abuse_ttl_seconds")
    @classmethod
    def validate_ban_positive(cls, v: int) -> int:
        """Validate ban settings are positive."""
        if v < 1:
            raise ValueError("Ban settings must be at least 1")
        return v

    @field_validator("slow_query_threshold_seconds")
    @classmethod
    def validate_slow_threshold(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("slow_query_threshold_seconds must be positive")
        return v

    model_config = SettingsConfigDict(
        env_prefix="RATECACHE_", env_file=".env", extra="ignore"
    )


# Global settings instance
settings = Settings()
