"""
CertVerify Backend — CSRF Token Route
=======================================

GET /api/auth/csrf-token issues a token bound to the caller's subject (user
id, else session cookie). Clients echo it in X-CSRF-Token, or as
`csrfToken` in a JSON body, on every POST/PUT/PATCH/DELETE.

Issuing a new token replaces the previous one for the same subject. If the
coordination store is down the route answers 503: a token that was never
stored could not be validated later anyway.
"""

import logging

from fastapi import APIRouter, Depends, Request

from certverify.auth import subject_id
from certverify.container import ServiceContainer, get_container
from certverify.schemas.common import CsrfTokenResponse, ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


@router.get(
    "/csrf-token",
    response_model=CsrfTokenResponse,
    responses={503: {"model": ErrorResponse}},
    summary="Issue a CSRF token for the caller",
)
async def issue_csrf_token(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> CsrfTokenResponse:
    issued = await container.csrf.issue(subject_id(request))
    return CsrfTokenResponse(csrf_token=issued.token, expires_in=issued.expires_in)
