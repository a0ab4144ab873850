"""
Security headers stage.

Set on every response that passes through the pipeline, error envelopes
included. API responses are JSON, so their CSP forbids loading anything.
HSTS is production-only; a local http:// deployment would otherwise be
pinned to https in the browser for two years.
"""

from starlette.requests import Request
from starlette.responses import Response

from certverify.middleware.stage import Next, Stage

BASE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}
API_CSP = "default-src 'none'; frame-ancestors 'none'"
HSTS = "max-age=63072000; includeSubDomains; preload"


class SecurityHeadersStage(Stage):
    name = "security_headers"

    def __init__(self, production: bool = False):
        self.production = production

    async def __call__(self, request: Request, call_next: Next) -> Response:
        response = await call_next(request)
        for header, value in BASE_HEADERS.items():
            response.headers[header] = value
        if request.url.path.startswith("/api/"):
            response.headers["Content-Security-Policy"] = API_CSP
        if self.production:
            response.headers["Strict-Transport-Security"] = HSTS
        return response
