"""
CertVerify Backend — Request ID Middleware
============================================

What:  Tags each request with a correlation ID, echoes it in X-Request-ID
       and stamps it on every log record emitted while the request runs.
When:  Outermost middleware, so even pipeline short-circuits (CORS
       rejections, 429s) carry the ID in their error envelope.

Why a log filter as well:
    Services log through plain `logging.getLogger(__name__)` loggers and
    know nothing about requests. RequestIdFilter copies the ContextVar onto
    each record so the formatter can print `[%(request_id)s]` everywhere.
"""

import logging
import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Client-supplied IDs end up in logs; keep them short and printable
_CLIENT_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get("") or "-"
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        supplied = request.headers.get("X-Request-ID", "")
        rid = supplied if _CLIENT_ID.match(supplied) else str(uuid.uuid4())[:8]

        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = rid
        return response
