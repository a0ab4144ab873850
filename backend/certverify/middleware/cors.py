"""
CertVerify Backend — CORS Stage
=================================

What:  Origin allow-listing and preflight handling.
Why not Starlette's CORSMiddleware:
    A disallowed origin must get an explicit 403 in the error envelope, and
    the decision has to be part of the ordered pipeline (before rate
    limiting, so preflights never consume budget).

Rules:
    - No Origin header (same-origin, curl, server-to-server) → allowed
    - CORS_ORIGINS contains "*"                              → any origin
    - CORS_ORIGINS empty outside production                  → any origin
    - Otherwise the origin must be listed exactly
"""

import logging
from typing import Optional, Sequence

from starlette.requests import Request
from starlette.responses import Response

from certverify.exceptions import CorsRejectedError
from certverify.middleware.errors import error_response
from certverify.middleware.stage import Next, Stage

logger = logging.getLogger(__name__)

ALLOWED_METHODS = "GET, POST, PUT, DELETE, OPTIONS, PATCH"
ALLOWED_HEADERS = "Content-Type, Authorization, X-Requested-With, Accept, Origin, X-CSRF-Token"
EXPOSED_HEADERS = (
    "X-Request-ID, X-Total-Count, X-Rate-Limit-Limit, X-Rate-Limit-Remaining, "
    "X-Rate-Limit-Reset, Retry-After, X-Cache"
)


def append_vary(response: Response, value: str) -> None:
    current = response.headers.get("Vary")
    if not current:
        response.headers["Vary"] = value
        return
    present = {part.strip().lower() for part in current.split(",")}
    if value.lower() not in present:
        response.headers["Vary"] = f"{current}, {value}"


class CorsStage(Stage):
    name = "cors"

    def __init__(
        self,
        allowed_origins: Sequence[str],
        allow_all_when_empty: bool = False,
        max_age: int = 3600,
    ):
        self.allowed_origins = frozenset(allowed_origins)
        self.allow_all = "*" in self.allowed_origins or (
            not self.allowed_origins and allow_all_when_empty
        )
        self.max_age = max_age

    def is_allowed(self, origin: Optional[str]) -> bool:
        if not origin:
            return True
        return self.allow_all or origin in self.allowed_origins

    @staticmethod
    def _decorate(response: Response, origin: str) -> None:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Expose-Headers"] = EXPOSED_HEADERS
        append_vary(response, "Origin")

    async def __call__(self, request: Request, call_next: Next) -> Response:
        origin = request.headers.get("origin")
        if not self.is_allowed(origin):
            logger.warning("CORS rejected origin %s for %s %s", origin, request.method, request.url.path)
            return error_response(CorsRejectedError(origin))

        if request.method == "OPTIONS" and "access-control-request-method" in request.headers:
            response = Response(status_code=204)
            response.headers["Access-Control-Allow-Methods"] = ALLOWED_METHODS
            response.headers["Access-Control-Allow-Headers"] = ALLOWED_HEADERS
            response.headers["Access-Control-Max-Age"] = str(self.max_age)
            if origin:
                self._decorate(response, origin)
            return response

        response = await call_next(request)
        if origin:
            self._decorate(response, origin)
        return response
