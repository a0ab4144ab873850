"""
CSRF stage.

State-changing methods must present the caller's token, either in the
X-CSRF-Token header or as `csrfToken` in a JSON body. Tokens come from
GET /api/auth/csrf-token and are bound to the caller's subject (user id,
else session cookie). The token store fails closed: if Redis is down,
state-changing requests are refused.
"""

import json
import logging
from typing import Optional

from starlette.requests import Request
from starlette.responses import Response

from certverify.auth import subject_id
from certverify.exceptions import CsrfInvalidError
from certverify.middleware.errors import error_response
from certverify.middleware.stage import Next, Stage
from certverify.services.csrf_service import CsrfTokenStore

logger = logging.getLogger(__name__)

PROTECTED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
TOKEN_HEADER = "x-csrf-token"
TOKEN_BODY_FIELD = "csrfToken"


async def _token_from_body(request: Request) -> Optional[str]:
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    # Starlette caches the body, so the handler can still read it
    body = await request.body()
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if isinstance(payload, dict) and isinstance(payload.get(TOKEN_BODY_FIELD), str):
        return payload[TOKEN_BODY_FIELD]
    return None


class CsrfStage(Stage):
    name = "csrf"

    def __init__(self, store: CsrfTokenStore):
        self.store = store

    async def __call__(self, request: Request, call_next: Next) -> Response:
        if request.method not in PROTECTED_METHODS:
            return await call_next(request)

        token = request.headers.get(TOKEN_HEADER) or await _token_from_body(request)
        subject = subject_id(request)
        if not token or not await self.store.validate(subject, token):
            logger.warning(
                "CSRF check failed for %s %s (subject=%s, token_present=%s)",
                request.method,
                request.url.path,
                subject,
                bool(token),
            )
            return error_response(CsrfInvalidError())
        return await call_next(request)
