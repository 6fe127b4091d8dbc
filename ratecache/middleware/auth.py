"""Admin authentication for privileged endpoints."""

import hmac
import os

from fastapi import HTTPException, Request


def get_admin_token() -> str:
    """Get admin token from environment variable.

    The token is cached on first access to avoid repeated environment
    variable lookups.

    Raises:
        ValueError: If ADMIN_TOKEN environment variable is not set
    """
    if not hasattr(get_admin_token, "_cached_token"):
        token = os.getenv("ADMIN_TOKEN")
        if token is not None:
            # Normalize accidental whitespace/newline from env/secret stores.
            token = token.strip()
        if not token:
            raise ValueError(
                "ADMIN_TOKEN environment variable is not set. "
                "Please set a secure admin token before starting the server."
            )
        get_admin_token._cached_token = token
    return get_admin_token._cached_token


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin(request: Request) -> str:
    """Validate admin token for protected endpoints.

    Returns:
        Admin identifier if valid

    Raises:
        HTTPException: 401 if admin token is missing or invalid
    """
    token = get_bearer_token(request) or ""
    expected_token = get_admin_token()

    # Constant-time comparison, always performed
    if not hmac.compare_digest(token, expected_token):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
