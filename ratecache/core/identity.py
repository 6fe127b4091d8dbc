"""Client identity resolution.

Turns a ``RequestContext`` supplied by the HTTP layer into the key the
rate limiter tracks state under (``ip:<address>`` or ``user:<id>``).
"""

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Sequence

from ratecache.core.config import settings

UNKNOWN_IP = "0.0.0.0"


class IdentityStrategy(str, Enum):
    """How a policy identifies its clients."""

    BY_IP = "ip_based"
    BY_USER = "user_based"
    DEFAULT = "default"


@dataclass(frozen=True)
class RequestContext:
    """What the calling HTTP layer knows about a request.

    The core never parses HTTP itself; ``headers`` is only consulted for
    forwarded client addresses.
    """

    route: str
    method: str = "GET"
    user_id: Optional[str] = None
    remote_addr: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None and str(self.user_id) != ""


@dataclass(frozen=True)
class ClientIdentity:
    """Resolved identifier for whoever is making a request."""

    key: str

    @classmethod
    def for_ip(cls, ip: str) -> "ClientIdentity":
        return cls(key=f"ip:{ip}")

    @classmethod
    def for_user(cls, user_id: str) -> "ClientIdentity":
        return cls(key=f"user:{user_id}")


def _is_public_ip(value: str) -> bool:
    try:
        ip = ipaddress.ip_address(value)
    except ValueError:
        return False
    return not (
        ip.is_private
        or ip.is_reserved
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_unspecified
    )


def _is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def resolve_client_ip(
    ctx: RequestContext,
    proxy_headers: Optional[Sequence[str]] = None,
    trust_proxy_headers: Optional[bool] = None,
) -> str:
    """Resolve the client address for a request.

    Proxy headers are checked in order; the first element of a comma
    separated chain is used and only accepted when it is a public address.
    The socket address is accepted when it is any valid IP.

    Returns:
        The address, or ``0.0.0.0`` when nothing usable was found.
    """
    trust = settings.trust_proxy_headers if trust_proxy_headers is None else trust_proxy_headers
    names = settings.proxy_headers if proxy_headers is None else proxy_headers

    if trust:
        for name in names:
            raw = _header(ctx.headers, name)
            if not raw:
                continue
            candidate = raw.split(",")[0].strip()
            if _is_public_ip(candidate):
                return candidate

    if ctx.remote_addr and _is_valid_ip(ctx.remote_addr.strip()):
        return ctx.remote_addr.strip()

    return UNKNOWN_IP


def resolve_identity(
    ctx: RequestContext,
    strategy: IdentityStrategy = IdentityStrategy.DEFAULT,
) -> ClientIdentity:
    """Resolve the client identity for a request under a strategy.

    ``BY_USER`` and ``DEFAULT`` both prefer the authenticated user and fall
    back to the client address for anonymous requests.
    """
    if strategy in (IdentityStrategy.BY_USER, IdentityStrategy.DEFAULT):
        if ctx.is_authenticated:
            return ClientIdentity.for_user(str(ctx.user_id))
    return ClientIdentity.for_ip(resolve_client_ip(ctx))
