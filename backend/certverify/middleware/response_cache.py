"""
CertVerify Backend — Response Cache Stage
===========================================

What:  Serves repeated GETs from the shared cache.
Which: Only routes with a cache_ttl in the routing table, only GET, and
       only 200 JSON responses are stored. Errors are never cached.

Key:   api:{METHOD}:{path}:{sorted query}:{credential fingerprint}, built
       from the canonical path and query when the route declares a
       canonicalizer (see services/cache_keys.py)

TTL:   The route's table TTL, lowered by an X-Cache-TTL hint from the
       handler when the content itself goes stale sooner (a certificate
       close to its expiry). The hint header is stripped before sending.

Hit listener:
    `on_hit(request, body)` runs for every hit. The verification routes use
    it so a cached answer still lands in the verification log.

Replayed headers:
    A hit rebuilds the JSON response from the cached body; X-Total-Count
    is the only handler header stored alongside it. Every other header is
    added again by the outer stages.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from certverify.auth import SESSION_COOKIE, USER_ID_HEADER, USER_ROLE_HEADER
from certverify.middleware.stage import Next, Stage
from certverify.services import cache_keys
from certverify.services.cache_service import DistributedCache

logger = logging.getLogger(__name__)

HitListener = Callable[[Request, Any], Awaitable[None]]

TTL_HINT_HEADER = "x-cache-ttl"
REPLAYED_HEADERS = ("x-total-count",)


def request_fingerprint(request: Request) -> str:
    return cache_keys.credential_fingerprint(
        authorization=request.headers.get("authorization", ""),
        user_id=request.headers.get(USER_ID_HEADER, ""),
        role=request.headers.get(USER_ROLE_HEADER, ""),
        session=request.cookies.get(SESSION_COOKIE, ""),
    )


async def _read_body(response: Response) -> bytes:
    body = getattr(response, "body", None)
    if body is not None:
        return body
    return b"".join([chunk async for chunk in response.body_iterator])


def _ttl_hint(response: Response) -> Optional[int]:
    raw = response.headers.get(TTL_HINT_HEADER)
    if raw is None:
        return None
    del response.headers[TTL_HINT_HEADER]
    try:
        return int(raw)
    except ValueError:
        return None


class ResponseCacheStage(Stage):
    name = "response_cache"

    def __init__(self, cache: DistributedCache, on_hit: Optional[HitListener] = None):
        self.cache = cache
        self.on_hit = on_hit

    async def __call__(self, request: Request, call_next: Next) -> Response:
        rule = request.state.route
        if request.method != "GET" or rule.cache_ttl is None:
            return await call_next(request)

        path, query = request.url.path, request.query_params.multi_items()
        if rule.canonicalize is not None:
            path, query = rule.canonicalize(path, query)
        key = cache_keys.response_key(request.method, path, query, request_fingerprint(request))

        cached = await self.cache.get(key)
        if isinstance(cached, dict) and "body" in cached:
            if self.on_hit is not None:
                await self.on_hit(request, cached["body"])
            headers = dict(cached.get("headers") or {})
            headers["X-Cache"] = "HIT"
            return JSONResponse(cached["body"], status_code=200, headers=headers)

        response = await call_next(request)
        hint = _ttl_hint(response)

        cacheable = response.status_code == 200 and response.headers.get(
            "content-type", ""
        ).startswith("application/json")
        if not cacheable:
            response.headers["X-Cache"] = "MISS"
            return response

        body = await _read_body(response)
        ttl = rule.cache_ttl if hint is None else max(min(rule.cache_ttl, hint), 0)
        try:
            payload = json.loads(body)
        except ValueError:
            logger.warning("Response for %s is not valid JSON; not caching", request.url.path)
            payload = None

        if payload is not None and ttl > 0:
            entry: Dict[str, Any] = {
                "body": payload,
                "headers": {
                    name: response.headers[name] for name in REPLAYED_HEADERS if name in response.headers
                },
            }
            await self.cache.set(key, entry, ttl)

        headers = dict(response.headers)
        headers["x-cache"] = "MISS"
        return Response(
            content=body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.media_type,
        )
