"""
CertVerify Backend — Error Envelope & Error-Handling Stage
============================================================

Every error leaving the service has the same body, whether it was raised
by a handler, produced by a pipeline stage, or caught by FastAPI's
validation layer:

    {
        "success":    false,
        "error":      "validation_error",
        "message":    "Invalid certificate ID format",
        "errors":     [{"field": "certificateId", "message": "..."}],   # optional
        "requestId":  "a1b2c3d4",
        "retryAfter": 42                                                 # 429 only
    }

Security Note:
    5xx messages are replaced with a generic sentence. The original
    message and the exception's `context` go to the log only.
"""

import logging
from typing import Any, Dict, List, Optional

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from certverify.exceptions import CertVerifyError, RateLimitExceededError
from certverify.middleware.stage import Next, Stage
from certverify.middleware.request_id import request_id_var
from certverify.schemas.common import ErrorResponse

logger = logging.getLogger(__name__)

GENERIC_SERVER_MESSAGE = "An internal error occurred. Please try again later."


def error_payload(
    error: str,
    message: str,
    errors: Optional[List[Dict[str, Any]]] = None,
    retry_after: Optional[int] = None,
) -> Dict[str, Any]:
    body = ErrorResponse(
        error=error,
        message=message,
        errors=errors,
        request_id=request_id_var.get("") or None,
        retry_after=retry_after,
    )
    return body.model_dump(by_alias=True, exclude_none=True)


def error_response(exc: CertVerifyError) -> JSONResponse:
    rid = request_id_var.get("")
    if exc.status_code >= 500:
        logger.error(
            "[%s] %s: %s | Context: %s", rid, type(exc).__name__, exc.message, exc.context
        )
        message = GENERIC_SERVER_MESSAGE
    else:
        logger.warning("[%s] %s: %s", rid, type(exc).__name__, exc.message)
        message = exc.message

    retry_after = exc.retry_after if isinstance(exc, RateLimitExceededError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc.error_code, message, exc.errors, retry_after),
        headers=exc.headers,
    )


class ErrorHandlingStage(Stage):
    """
    Wraps the response cache and the handler: anything either raises
    becomes the envelope. Responses produced by outer stages are already
    envelopes.
    """

    name = "error_handling"

    async def __call__(self, request: Request, call_next: Next) -> Response:
        try:
            return await call_next(request)
        except CertVerifyError as exc:
            return error_response(exc)
        except Exception as exc:
            logger.error(
                "[%s] Unhandled %s on %s %s: %s",
                request_id_var.get(""),
                type(exc).__name__,
                request.method,
                request.url.path,
                exc,
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content=error_payload("server_error", GENERIC_SERVER_MESSAGE),
            )
