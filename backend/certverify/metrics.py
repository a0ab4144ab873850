"""
CertVerify Backend — Prometheus Metrics
=========================================

What:  Request and certificate-operation metrics exposed at GET /metrics.
Why:   Rate-limit rejections, cache effectiveness and verification volume
       are the numbers operators look at during an incident.
How:   prometheus_client collectors registered on a per-application
       CollectorRegistry. A private registry (not the global default) lets
       tests build many apps in one process without duplicate-metric errors.

Label cardinality:
    `route` is the route TEMPLATE from the routing table
    ("/api/certificates/{id}"), never the raw path, so certificate ids do
    not create a time series each.
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

REQUEST_DURATION_BUCKETS = (0.05, 0.1, 0.3, 0.5, 0.7, 1, 3, 5, 10)


class MetricsRegistry:
    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "route", "status"],
            registry=self.registry,
        )
        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "route"],
            buckets=REQUEST_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.certificate_operations_total = Counter(
            "certificate_operations_total",
            "Certificate operations",
            ["operation"],
            registry=self.registry,
        )
        self.rate_limit_rejections_total = Counter(
            "rate_limit_rejections_total",
            "Requests rejected by the rate limiter",
            ["route_class"],
            registry=self.registry,
        )

    def observe_request(
        self, method: str, route: str, status: int, duration: Optional[float] = None
    ) -> None:
        """Counts the request; `duration` is None for requests rejected before timing."""
        self.http_requests_total.labels(method=method, route=route, status=str(status)).inc()
        if duration is not None:
            self.http_request_duration_seconds.labels(method=method, route=route).observe(duration)

    def count_operation(self, operation: str, amount: int = 1) -> None:
        self.certificate_operations_total.labels(operation=operation).inc(amount)

    def count_rejection(self, route_class: str) -> None:
        self.rate_limit_rejections_total.labels(route_class=route_class).inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)
