"""
Cache-Control stage.

    GET static asset   public, max-age=86400, stale-while-revalidate=43200
    GET /api/...       private, max-age=300, stale-while-revalidate=600
    anything else      no-cache, no-store, must-revalidate

Vary always lists Accept, Authorization and Origin so shared caches never
serve one user's API response to another.
"""

import re

from starlette.requests import Request
from starlette.responses import Response

from certverify.middleware.cors import append_vary
from certverify.middleware.stage import Next, Stage

STATIC_ASSET = re.compile(r"\.(jpg|jpeg|png|gif|ico|css|js|svg|woff2?)$", re.IGNORECASE)

STATIC_POLICY = "public, max-age=86400, stale-while-revalidate=43200"
API_POLICY = "private, max-age=300, stale-while-revalidate=600"
NO_STORE = "no-cache, no-store, must-revalidate"


def cache_policy(method: str, path: str) -> str:
    if method != "GET":
        return NO_STORE
    if STATIC_ASSET.search(path):
        return STATIC_POLICY
    if path.startswith("/api/"):
        return API_POLICY
    return NO_STORE


class CacheHeadersStage(Stage):
    name = "cache_headers"

    async def __call__(self, request: Request, call_next: Next) -> Response:
        response = await call_next(request)
        response.headers["Cache-Control"] = cache_policy(request.method, request.url.path)
        for value in ("Accept", "Authorization", "Origin"):
            append_vary(response, value)
        return response
