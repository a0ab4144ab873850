"""
CertVerify Backend — Certificate Route Handlers
=================================================

What:  Issuing, listing, reading and revoking certificates.
Who:   The admin/staff dashboard and the student portal.

    GET    /api/certificates                  list (scoped by role)
    POST   /api/certificates                  issue one           (ADMIN, STAFF)
    POST   /api/certificates/bulk             issue up to 500     (ADMIN, STAFF)
    GET    /api/certificates/{id}             detail
    PATCH  /api/certificates/{id}/revoke      revoke              (ADMIN, issuing STAFF)

All state-changing routes are behind the CSRF stage. Responses to the two
GETs are cached per caller by the response-cache stage and invalidated
when a certificate is issued or revoked.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response

from certverify.auth import Principal, require_principal
from certverify.container import ServiceContainer, get_container
from certverify.models.certificate import CertificateStatus
from certverify.schemas.certificate import (
    BulkIssueEnvelope,
    BulkIssueRequest,
    CertificateDetailEnvelope,
    CertificateEnvelope,
    CertificateListEnvelope,
    CertificateOut,
    IssueCertificateRequest,
    Pagination,
    RevokeCertificateRequest,
    RevokedCertificateOut,
    RevokeEnvelope,
    VerificationLogOut,
)
from certverify.schemas.common import ErrorResponse
from certverify.services.state_machine import effective_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/certificates", tags=["Certificates"])

_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
}


@router.get(
    "",
    response_model=CertificateListEnvelope,
    responses=_ERRORS,
    summary="List certificates visible to the caller",
)
async def list_certificates(
    response: Response,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    search: Optional[str] = Query(default=None, max_length=100),
    status: Optional[CertificateStatus] = Query(default=None),
    template_id: Optional[str] = Query(default=None, alias="templateId", max_length=64),
    principal: Principal = Depends(require_principal),
    container: ServiceContainer = Depends(get_container),
) -> CertificateListEnvelope:
    records, total = await container.certificates.list(
        principal,
        page=page,
        limit=limit,
        search=search,
        status=status,
        template_id=template_id,
    )
    now = datetime.now(timezone.utc)
    response.headers["X-Total-Count"] = str(total)
    return CertificateListEnvelope(
        certificates=[CertificateOut.from_record(r, effective_status(r, now)) for r in records],
        pagination=Pagination(
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        ),
    )


@router.post(
    "",
    response_model=CertificateEnvelope,
    status_code=201,
    responses={**_ERRORS, 409: {"model": ErrorResponse}},
    summary="Issue a certificate",
)
async def issue_certificate(
    body: IssueCertificateRequest,
    principal: Principal = Depends(require_principal),
    container: ServiceContainer = Depends(get_container),
) -> CertificateEnvelope:
    record = await container.certificates.issue(body, principal)
    return CertificateEnvelope(
        message="Certificate created successfully",
        certificate=CertificateOut.from_record(record, effective_status(record)),
    )


@router.post(
    "/bulk",
    response_model=BulkIssueEnvelope,
    status_code=201,
    responses={**_ERRORS, 409: {"model": ErrorResponse}},
    summary="Issue up to 500 certificates in one transaction",
)
async def issue_certificates_bulk(
    body: BulkIssueRequest,
    principal: Principal = Depends(require_principal),
    container: ServiceContainer = Depends(get_container),
) -> BulkIssueEnvelope:
    records = await container.certificates.issue_bulk(body.certificates, principal)
    return BulkIssueEnvelope(
        message=f"{len(records)} certificates created successfully",
        count=len(records),
        certificates=[CertificateOut.from_record(r, effective_status(r)) for r in records],
    )


@router.get(
    "/{certificate_pk}",
    response_model=CertificateDetailEnvelope,
    response_model_exclude_none=True,
    responses={**_ERRORS, 404: {"model": ErrorResponse}},
    summary="Get one certificate",
)
async def get_certificate(
    certificate_pk: UUID,
    principal: Principal = Depends(require_principal),
    container: ServiceContainer = Depends(get_container),
) -> CertificateDetailEnvelope:
    record, logs = await container.certificates.get(certificate_pk, principal)
    verification_logs = None
    if logs is not None:
        verification_logs = [
            VerificationLogOut(
                certificate_id=entry.certificate_code,
                verified_at=entry.verified_at,
                caller_ip=entry.caller_ip,
                valid=entry.is_valid,
                reason=entry.reason,
            )
            for entry in logs
        ]
    return CertificateDetailEnvelope(
        certificate=CertificateOut.from_record(record, effective_status(record)),
        verification_logs=verification_logs,
    )


@router.patch(
    "/{certificate_pk}/revoke",
    response_model=RevokeEnvelope,
    responses={**_ERRORS, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Revoke a certificate",
)
async def revoke_certificate(
    certificate_pk: UUID,
    body: RevokeCertificateRequest,
    principal: Principal = Depends(require_principal),
    container: ServiceContainer = Depends(get_container),
) -> RevokeEnvelope:
    record = await container.state_machine.revoke(certificate_pk, body.reason, principal)
    return RevokeEnvelope(
        certificate=RevokedCertificateOut(
            id=record.id,
            certificate_id=record.certificate_id,
            status=record.status,
            revocation_reason=record.revocation_reason,
        )
    )
