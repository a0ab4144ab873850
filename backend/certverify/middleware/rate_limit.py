"""
CertVerify Backend — Rate Limiting Stage
==========================================

What:  Enforces per-caller request budgets, shared by every instance.
How:   RateLimiter counts in a fixed window in the coordination store
       (atomic INCR + PEXPIRE), keyed by route class and caller.

Caller identity:
    "{client ip}:{user id or 'anonymous'}". Including the user id keeps a
    campus NAT from pooling every student into one budget; including the
    IP keeps one stolen user id from being spread across many sources.

Route classes (budgets from config):
    auth          /api/auth*                       strict
    verification  /api/certificates/verify, /api/validate   wide
    users         /api/users*
    templates     /api/templates*
    default       everything else

Store outages:
    RateLimiter fails open and returns a `degraded` decision; the request
    proceeds without X-Rate-Limit-* headers rather than advertising a
    budget that is not being counted.
"""

import logging

from starlette.requests import Request
from starlette.responses import Response

from certverify.auth import ANONYMOUS, USER_ID_HEADER, client_ip
from certverify.exceptions import RateLimitExceededError
from certverify.metrics import MetricsRegistry
from certverify.middleware.errors import error_response
from certverify.middleware.stage import Next, Stage
from certverify.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def caller_identity(request: Request, trust_forwarded_for: bool = True) -> str:
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip() or ANONYMOUS
    return f"{client_ip(request, trust_forwarded_for)}:{user_id}"


class RateLimitStage(Stage):
    name = "rate_limit"

    def __init__(
        self,
        limiter: RateLimiter,
        metrics: MetricsRegistry,
        trust_forwarded_for: bool = True,
    ):
        self.limiter = limiter
        self.metrics = metrics
        self.trust_forwarded_for = trust_forwarded_for

    async def __call__(self, request: Request, call_next: Next) -> Response:
        # Preflights are answered by the CORS stage; anything left is not counted
        if request.method == "OPTIONS":
            return await call_next(request)

        rule = request.state.route
        decision = await self.limiter.consume(
            caller_identity(request, self.trust_forwarded_for), rule.rate_class
        )

        if not decision.allowed:
            # The metrics stage sits inside this one; count the rejection here
            self.metrics.observe_request(request.method, rule.template, 429)
            self.metrics.count_rejection(rule.rate_class)
            response = error_response(RateLimitExceededError(retry_after=decision.retry_after))
            for header, value in decision.headers().items():
                response.headers[header] = value
            return response

        response = await call_next(request)
        for header, value in decision.headers().items():
            response.headers[header] = value
        return response
