"""
CertVerify Backend — Public Verification Routes
=================================================

What:  Anonymous certificate verification, e.g. from the QR code printed on
       a certificate or an employer's background-check tool.

    GET  /api/certificates/verify?certificateId=CERT-1A2B3C4D
    POST /api/certificates/verify   {"certificateId": "CERT-1A2B3C4D"}
    GET  /api/validate?certificateId=...        (legacy alias)
    POST /api/validate                          (legacy alias)

Status codes:
    200  found (valid, revoked, expired or signature_mismatch; see `valid`)
    400  malformed identifier
    404  no certificate with that identifier

These paths run through the public pipeline: no CSRF, the wide
`verification` rate-limit budget, and a one-hour response cache.

This router must be included BEFORE routes/certificates.py, otherwise
/api/certificates/verify is captured by /api/certificates/{id}.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request, Response

from certverify.auth import client_ip
from certverify.container import ServiceContainer, get_container
from certverify.schemas.certificate import VerificationEnvelope, VerifyCertificateRequest
from certverify.schemas.common import ErrorResponse
from certverify.services.verification_service import (
    DEFAULT_VERIFICATION_TTL,
    VerificationReason,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Verification"])

_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Malformed certificate ID"},
    404: {"model": VerificationEnvelope, "description": "Certificate not found"},
    429: {"model": ErrorResponse},
}


async def _verify(
    identifier: str,
    request: Request,
    response: Response,
    container: ServiceContainer,
) -> VerificationEnvelope:
    result = await container.verification.verify(
        identifier,
        caller_ip=client_ip(request, container.settings.trust_forwarded_for),
        user_agent=request.headers.get("user-agent"),
    )

    if result.reason is VerificationReason.NOT_FOUND:
        response.status_code = 404
    elif result.cache_ttl is not None and result.cache_ttl < DEFAULT_VERIFICATION_TTL:
        # Lets the response cache expire this entry with the certificate
        response.headers["X-Cache-TTL"] = str(result.cache_ttl)

    return VerificationEnvelope(
        valid=result.valid,
        reason=result.reason.value if result.reason else None,
        message=result.message,
        certificate=result.certificate,
        verified_at=result.verified_at,
    )


@router.get(
    "/certificates/verify",
    response_model=VerificationEnvelope,
    responses=_RESPONSES,
    summary="Verify a certificate by its public ID",
)
async def verify_certificate(
    request: Request,
    response: Response,
    certificate_id: str = Query(..., alias="certificateId", max_length=1000),
    container: ServiceContainer = Depends(get_container),
) -> VerificationEnvelope:
    return await _verify(certificate_id, request, response, container)


@router.post(
    "/certificates/verify",
    response_model=VerificationEnvelope,
    responses=_RESPONSES,
    summary="Verify a certificate (ID in the body)",
)
async def verify_certificate_post(
    body: VerifyCertificateRequest,
    request: Request,
    response: Response,
    container: ServiceContainer = Depends(get_container),
) -> VerificationEnvelope:
    return await _verify(body.certificate_id, request, response, container)


@router.get(
    "/validate",
    response_model=VerificationEnvelope,
    responses=_RESPONSES,
    summary="Verify a certificate (legacy path)",
)
async def validate_certificate(
    request: Request,
    response: Response,
    certificate_id: str = Query(..., alias="certificateId", max_length=1000),
    container: ServiceContainer = Depends(get_container),
) -> VerificationEnvelope:
    return await _verify(certificate_id, request, response, container)


@router.post(
    "/validate",
    response_model=VerificationEnvelope,
    responses=_RESPONSES,
    summary="Verify a certificate (legacy path, ID in the body)",
)
async def validate_certificate_post(
    body: VerifyCertificateRequest,
    request: Request,
    response: Response,
    container: ServiceContainer = Depends(get_container),
) -> VerificationEnvelope:
    return await _verify(body.certificate_id, request, response, container)
