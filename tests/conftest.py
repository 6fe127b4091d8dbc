"""Shared fixtures."""

import pytest

from ratecache.middleware.auth import get_admin_token

ADMIN_TOKEN = "test-admin-token"


class FakeClock:
    """Manually advanced time source for TTL and window tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def admin_token(monkeypatch):
    """Set ADMIN_TOKEN and reset the cached copy around the test."""
    if hasattr(get_admin_token, "_cached_token"):
        delattr(get_admin_token, "_cached_token")
    monkeypatch.setenv("ADMIN_TOKEN", ADMIN_TOKEN)
    yield ADMIN_TOKEN
    if hasattr(get_admin_token, "_cached_token"):
        delattr(get_admin_token, "_cached_token")
