"""Custom exceptions for the rate limiter and query cache."""

from enum import Enum


class ErrorKind(str, Enum):
    """Structured failure reasons that cross the library boundary."""

    RATE_LIMITED = "rate_limited"
    BANNED = "banned"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    COMPUTE_FAILED = "compute_failed"


class RateCacheError(Exception):
    """Base class for ratecache exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "ratecache error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        """Public error body. Never includes internal state."""
        return {"error": self.error_code, "message": self.message}


class RateLimitedError(RateCacheError):
    """Raised when a client has exhausted its window quota.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: int, detail: str | None = None):
        self.retry_after = retry_after
        super().__init__(detail or "Rate limit exceeded. Please try again later.")

    def to_response(self) -> dict:
        return {**super().to_response(), "retry_after": self.retry_after}


class ClientBannedError(RateCacheError):
    """Raised when a banned client makes a request.

    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    error_code = "banned"

    def __init__(self, retry_after: int, detail: str | None = None):
        self.retry_after = retry_after
        super().__init__(detail or "Client banned")

    def to_response(self) -> dict:
        return {**super().to_response(), "retry_after": self.retry_after}


class StorageUnavailableError(RateCacheError):
    """Raised when the storage backend cannot be reached.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    error_code = "storage_unavailable"

    def __init__(self, detail: str = "Storage backend unavailable"):
        super().__init__(detail)


class QueryComputeError(RateCacheError):
    """Raised when the query execution callback fails on a cache miss.

    The original exception is chained as ``__cause__``.
    """
    status_code = 500
    error_code = "compute_failed"

    def __init__(self, cache_key: str, detail: str = "Query execution failed"):
        self.cache_key = cache_key
        super().__init__(detail)


class CacheSerializationError(RateCacheError):
    """Raised when a computed result cannot be stored as JSON.

    The original exception is chained as ``__cause__``. Nothing is cached.
    """
    status_code = 500
    error_code = "serialization_failed"

    def __init__(self, cache_key: str, detail: str = "Query result is not cacheable"):
        self.cache_key = cache_key
        super().__init__(detail)


class InvalidPolicyError(RateCacheError):
    """Raised when a rate limit policy is misconfigured.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400
    error_code = "invalid_policy"
