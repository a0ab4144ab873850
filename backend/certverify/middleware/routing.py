"""
CertVerify Backend — Route Policy Table
=========================================

What:  Maps a request path to everything the pipeline needs to know about
       it: which rate-limit budget applies, how long a GET may be cached,
       whether CSRF is enforced, and the label used in metrics.
Why:   One ordered table instead of path checks scattered through every
       stage. Rules are anchored regexes; the FIRST match wins, so
       specific paths (/api/certificates/verify) come before their
       parameterised siblings (/api/certificates/{id}).
"""

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Pattern, Tuple

from certverify.services import cache_keys

KeyCanonicalizer = Callable[[str, Iterable[Tuple[str, str]]], Tuple[str, cache_keys.QueryItems]]


@dataclass(frozen=True)
class RouteRule:
    pattern: Optional[Pattern[str]]
    template: str
    rate_class: str = "default"
    cache_ttl: Optional[int] = None
    public: bool = False
    # Rewrites (path, query) to the spelling the response-cache key uses
    canonicalize: Optional[KeyCanonicalizer] = None

    def matches(self, path: str) -> bool:
        return self.pattern is not None and bool(self.pattern.match(path))


def _rule(regex: str, template: str, **kwargs) -> RouteRule:
    return RouteRule(pattern=re.compile(regex), template=template, **kwargs)


ROUTE_RULES: Tuple[RouteRule, ...] = (
    # Public verification: no CSRF, wide budget, cached for an hour
    _rule(r"^/api/certificates/verify/?$", "/api/certificates/verify",
          rate_class="verification", cache_ttl=3600, public=True,
          canonicalize=cache_keys.canonical_verification_request),
    _rule(r"^/api/validate/?$", "/api/validate",
          rate_class="verification", cache_ttl=3600, public=True,
          canonicalize=cache_keys.canonical_verification_request),

    _rule(r"^/api/certificates/?$", "/api/certificates", cache_ttl=300),
    _rule(r"^/api/certificates/bulk/?$", "/api/certificates/bulk"),
    _rule(r"^/api/certificates/[^/]+/revoke/?$", "/api/certificates/{id}/revoke"),
    _rule(r"^/api/certificates/[^/]+/?$", "/api/certificates/{id}", cache_ttl=600,
          canonicalize=cache_keys.canonical_certificate_request),

    _rule(r"^/api/auth(/.*)?$", "/api/auth", rate_class="auth"),
    _rule(r"^/api/cache/?$", "/api/cache"),
    _rule(r"^/api/instances/?$", "/api/instances"),
    # Not routed by this app. The rules keep rate classes and cache TTLs in
    # line with the other services behind the same gateway.
    _rule(r"^/api/users/?$", "/api/users", rate_class="users", cache_ttl=120),
    _rule(r"^/api/users/.+$", "/api/users/{id}", rate_class="users"),
    _rule(r"^/api/templates/?$", "/api/templates", rate_class="templates", cache_ttl=1800),
    _rule(r"^/api/templates/.+$", "/api/templates/{id}", rate_class="templates"),
    _rule(r"^/api/countries/?$", "/api/countries", cache_ttl=86400),
    _rule(r"^/api/settings/?$", "/api/settings", cache_ttl=3600),
)

DEFAULT_RULE = RouteRule(pattern=None, template="other")

# Served outside the pipeline: health checks, scrapes and API docs
BYPASS_PATHS = frozenset(
    {"/health", "/metrics", "/docs", "/docs/oauth2-redirect", "/redoc", "/openapi.json"}
)


def classify(path: str) -> RouteRule:
    for rule in ROUTE_RULES:
        if rule.matches(path):
            return rule
    return DEFAULT_RULE
