"""
CertVerify Backend — Metrics & Access Log Stage
=================================================

What:  Records http_requests_total / http_request_duration_seconds and
       writes one access-log line per request.
When:  After rate limiting (rejected requests are counted by that stage,
       without a duration) and outside CSRF and caching, so CSRF failures
       and cache hits are timed like any other response.

Log level follows the status:
    5xx → ERROR, 4xx → WARNING, everything else → INFO

What we log vs what we DON'T log (privacy):
    ✅ method, route, status, duration, client IP, request ID
    ❌ bodies, query strings (certificate ids), credentials
"""

import logging
import time

from starlette.requests import Request
from starlette.responses import Response

from certverify.auth import client_ip
from certverify.metrics import MetricsRegistry
from certverify.middleware.request_id import request_id_var
from certverify.middleware.stage import Next, Stage

logger = logging.getLogger("certverify.access")


class MetricsStage(Stage):
    name = "metrics"

    def __init__(self, metrics: MetricsRegistry, trust_forwarded_for: bool = True):
        self.metrics = metrics
        self.trust_forwarded_for = trust_forwarded_for

    async def __call__(self, request: Request, call_next: Next) -> Response:
        start_time = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            duration = time.perf_counter() - start_time
            route = request.state.route.template
            self.metrics.observe_request(request.method, route, status, duration)

            if status >= 500:
                log_level = logging.ERROR
            elif status >= 400:
                log_level = logging.WARNING
            else:
                log_level = logging.INFO

            rid = request_id_var.get("")
            ip = client_ip(request, self.trust_forwarded_for)
            logger.log(
                log_level,
                "%s %s %d %.1fms [%s] from %s",
                request.method,
                request.url.path,
                status,
                duration * 1000,
                rid,
                ip,
                extra={
                    "method": request.method,
                    "route": route,
                    "status": status,
                    "duration_ms": round(duration * 1000, 2),
                    "client_ip": ip,
                },
            )
