"""Route to policy resolution.

Rules are an explicit ordered list of ``(RouteMatcher, RateLimitPolicy)``
pairs; the first match wins and unmatched requests fall back to the
authenticated or anonymous policy.
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from ratecache.core.config import Settings, settings as default_settings
from ratecache.core.identity import IdentityStrategy, RequestContext
from ratecache.services.rate_limit.models import RateLimitPolicy


@dataclass(frozen=True)
class RouteMatcher:
    """Matches a request by route prefix or regex and optional methods.

    A matcher with neither ``prefix`` nor ``pattern`` matches every route.
    """

    prefix: Optional[str] = None
    pattern: Optional[str] = None
    methods: Optional[frozenset] = None

    def __post_init__(self) -> None:
        if self.methods is not None:
            object.__setattr__(
                self, "methods", frozenset(m.upper() for m in self.methods)
            )
        if self.pattern is not None:
            # Fail at configuration time rather than on the first request
            re.compile(self.pattern)

    def matches(self, ctx: RequestContext) -> bool:
        if self.methods is not None and ctx.method.upper() not in self.methods:
            return False
        if self.prefix is not None and not ctx.route.startswith(self.prefix):
            return False
        if self.pattern is not None and re.fullmatch(self.pattern, ctx.route) is None:
            return False
        return True


class PolicyRegistry:
    """Ordered policy lookup with a documented default fallback."""

    def __init__(
        self,
        rules: Iterable[Tuple[RouteMatcher, RateLimitPolicy]] = (),
        authenticated: Optional[RateLimitPolicy] = None,
        anonymous: Optional[RateLimitPolicy] = None,
    ) -> None:
        self._rules: List[Tuple[RouteMatcher, RateLimitPolicy]] = list(rules)
        self.authenticated = authenticated or RateLimitPolicy(
            scope="rest_api",
            max_requests=100,
            burst_capacity=20,
            identity_strategy=IdentityStrategy.BY_USER,
        )
        self.anonymous = anonymous or RateLimitPolicy(
            scope="unauthenticated",
            max_requests=10,
            burst_capacity=5,
            identity_strategy=IdentityStrategy.BY_IP,
        )

    def add_rule(self, matcher: RouteMatcher, policy: RateLimitPolicy) -> None:
        """Append a rule; it is evaluated after all existing rules."""
        self._rules.append((matcher, policy))

    @property
    def rules(self) -> List[Tuple[RouteMatcher, RateLimitPolicy]]:
        return list(self._rules)

    def policies(self) -> List[RateLimitPolicy]:
        """All distinct policies, rule order first, then the fallbacks."""
        seen = {}
        for _, policy in self._rules:
            seen.setdefault(policy.scope, policy)
        seen.setdefault(self.authenticated.scope, self.authenticated)
        seen.setdefault(self.anonymous.scope, self.anonymous)
        return list(seen.values())

    def resolve(self, ctx: RequestContext) -> RateLimitPolicy:
        """Return the policy for a request.

        Args:
            ctx: The request context

        Returns:
            The first matching rule's policy, else the authenticated policy
            for logged-in users and the anonymous policy otherwise.
        """
        for matcher, policy in self._rules:
            if matcher.matches(ctx):
                return policy
        return self.authenticated if ctx.is_authenticated else self.anonymous


def default_registry(
    settings: Optional[Settings] = None,
    global_prefixes: Iterable[str] = (),
) -> PolicyRegistry:
    """Build the stock registry from settings.

    Three route classes: ``global`` (by IP) for the given prefixes,
    ``rest_api`` for authenticated users and ``unauthenticated`` for
    everyone else.

    Args:
        settings: Settings to read limits from, defaults to the global ones
        global_prefixes: Route prefixes served by the ``global`` policy
    """
    cfg = settings or default_settings
    window = cfg.rate_limit_window_seconds

    global_policy = RateLimitPolicy(
        scope="global",
        max_requests=cfg.rate_limit_global_requests,
        burst_capacity=cfg.rate_limit_global_burst,
        window_seconds=window,
        identity_strategy=IdentityStrategy.BY_IP,
    )
    authenticated = RateLimitPolicy(
        scope="rest_api",
        max_requests=cfg.rate_limit_authenticated_requests,
        burst_capacity=cfg.rate_limit_authenticated_burst,
        window_seconds=window,
        identity_strategy=IdentityStrategy.BY_USER,
    )
    anonymous = RateLimitPolicy(
        scope="unauthenticated",
        max_requests=cfg.rate_limit_anonymous_requests,
        burst_capacity=cfg.rate_limit_anonymous_burst,
        window_seconds=window,
        identity_strategy=IdentityStrategy.BY_IP,
    )

    rules = [(RouteMatcher(prefix=prefix), global_policy) for prefix in global_prefixes]
    return PolicyRegistry(rules=rules, authenticated=authenticated, anonymous=anonymous)
