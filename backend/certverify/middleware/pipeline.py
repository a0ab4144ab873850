"""
CertVerify Backend — Request Pipeline
=======================================

What:  Runs every API request through an ordered list of stages before the
       route handler.
Why:   The stages depend on each other's position (rate limiting before
       CSRF, error handling around the response cache), so the order is declared once here
       and checked when a pipeline is built instead of being implied by
       the order of add_middleware() calls.

Stage order (outermost first):
    1. cors              origin check, preflight
    2. security_headers  nosniff, frame denial, CSP, HSTS
    3. rate_limit        per-caller budget by route class
    4. metrics           request count + duration, access log
    5. csrf              token check on state-changing methods
    6. cache_headers     Cache-Control + Vary
    7. error_handling    exceptions → error envelope
    8. response_cache    GET response cache (HIT/MISS)

Variants:
    standard  all eight stages
    public    the verification endpoints: identical minus csrf, since
              anonymous callers verify certificates from other sites

How it hooks into Starlette:
    PipelineMiddleware is a single BaseHTTPMiddleware. It classifies the
    path, picks the variant and runs the stages; the innermost call_next is
    Starlette's, which invokes the router.
"""

import logging
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Iterable, List, Sequence

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from certverify.auth import client_ip
from certverify.exceptions import DatabaseError
from certverify.middleware.cache_headers import CacheHeadersStage
from certverify.middleware.cors import CorsStage
from certverify.middleware.csrf import CsrfStage
from certverify.middleware.errors import ErrorHandlingStage
from certverify.middleware.metrics import MetricsStage
from certverify.middleware.rate_limit import RateLimitStage
from certverify.middleware.response_cache import ResponseCacheStage
from certverify.middleware.routing import BYPASS_PATHS, classify
from certverify.middleware.security_headers import SecurityHeadersStage
from certverify.middleware.stage import Next, Stage

if TYPE_CHECKING:
    from certverify.container import ServiceContainer

logger = logging.getLogger(__name__)

STAGE_ORDER: Sequence[str] = (
    "cors",
    "security_headers",
    "rate_limit",
    "metrics",
    "csrf",
    "cache_headers",
    "error_handling",
    "response_cache",
)


class Pipeline:
    def __init__(self, stages: Iterable[Stage]):
        self.stages: List[Stage] = list(stages)
        names = [stage.name for stage in self.stages]
        unknown = [name for name in names if name not in STAGE_ORDER]
        if unknown:
            raise ValueError(f"Unknown pipeline stage(s): {unknown}")
        positions = [STAGE_ORDER.index(name) for name in names]
        if positions != sorted(positions) or len(set(names)) != len(names):
            raise ValueError(f"Pipeline stages out of order: {names}")

    @property
    def names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def without(self, *names: str) -> "Pipeline":
        return Pipeline(stage for stage in self.stages if stage.name not in names)

    async def run(self, request: Request, endpoint: Next) -> Response:
        async def invoke(index: int, req: Request) -> Response:
            if index == len(self.stages):
                return await endpoint(req)
            return await self.stages[index](req, partial(invoke, index + 1))

        return await invoke(0, request)


@dataclass(frozen=True)
class PipelineSet:
    standard: Pipeline
    public: Pipeline


def verification_hit_recorder(container: "ServiceContainer"):
    """on_hit listener logging verifications answered from the response cache."""

    async def record(request: Request, body) -> None:
        if not request.state.route.public or not isinstance(body, dict):
            return
        try:
            await container.verification.record_cached_response(
                request.query_params.get("certificateId"),
                body,
                caller_ip=client_ip(request, container.settings.trust_forwarded_for),
                user_agent=request.headers.get("user-agent"),
            )
        except DatabaseError as e:
            # The cached answer is still correct; only the log row is lost
            logger.error("Verification log write failed on cache hit: %s", e.context)

    return record


def build_pipelines(container: "ServiceContainer") -> PipelineSet:
    settings = container.settings
    standard = Pipeline(
        [
            CorsStage(
                settings.cors_origins_list,
                allow_all_when_empty=not settings.is_production,
            ),
            SecurityHeadersStage(production=settings.is_production),
            RateLimitStage(
                container.rate_limiter,
                container.metrics,
                trust_forwarded_for=settings.trust_forwarded_for,
            ),
            MetricsStage(container.metrics, trust_forwarded_for=settings.trust_forwarded_for),
            CsrfStage(container.csrf),
            CacheHeadersStage(),
            ErrorHandlingStage(),
            ResponseCacheStage(container.cache, on_hit=verification_hit_recorder(container)),
        ]
    )
    return PipelineSet(standard=standard, public=standard.without("csrf"))


class PipelineMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in BYPASS_PATHS:
            return await call_next(request)

        pipelines: PipelineSet = request.app.state.pipelines
        rule = classify(path)
        request.state.route = rule
        pipeline = pipelines.public if rule.public else pipelines.standard
        return await pipeline.run(request, call_next)
