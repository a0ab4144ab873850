"""
CertVerify Backend — Certificate Request/Response Schemas
===========================================================

What:  Pydantic models for the certificate API contract, plus the internal
       CertificateRecord the repository returns.
Why:   Schemas are separate from the SQLAlchemy models so the API can show
       a computed status (Expired-by-date) and hide internals (signature).
How:   JSON uses camelCase (recipientId, expiryDate, …) through an alias
       generator; snake_case input is still accepted (populate_by_name).
"""

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from certverify.models.certificate import CertificateStatus

CERTIFICATE_CODE_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]{2,49}$"
_CODE_RE = re.compile(CERTIFICATE_CODE_PATTERN)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Everything is stored as UTC; SQLite hands it back naive
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ══════════════════════════════════════════════════════════════════════════
# Internal Record — what the repository hands to services
# ══════════════════════════════════════════════════════════════════════════


class CertificateRecord(CamelModel):
    """
    A certificate row as stored. `status` is the STORED status; use
    state_machine.effective_status() for what a caller should see.
    """

    id: uuid.UUID
    certificate_id: str
    title: str
    recipient_id: str
    issuer_id: str
    template_id: str
    status: CertificateStatus
    issue_date: datetime
    expiry_date: Optional[datetime] = None
    hash: str
    signature: str
    revocation_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("issue_date", "expiry_date", "revoked_at", "created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class IssueCertificateRequest(CamelModel):
    """
    Body of POST /api/certificates.

    certificate_id is optional: omitted, the service generates
    CERT-XXXXXXXX; supplied (imports from a legacy register), it must match
    the public code shape and be unused.
    """

    recipient_id: str = Field(min_length=1, max_length=64)
    template_id: str = Field(min_length=1, max_length=64)
    title: str = Field(min_length=1, max_length=200)
    expiry_date: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    certificate_id: Optional[str] = Field(default=None, pattern=CERTIFICATE_CODE_PATTERN)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("title must not be blank")
        return stripped

    @field_validator("expiry_date")
    @classmethod
    def expiry_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class BulkIssueRequest(CamelModel):
    certificates: List[IssueCertificateRequest] = Field(min_length=1, max_length=500)


class RevokeCertificateRequest(CamelModel):
    reason: str = Field(max_length=500)

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("A revocation reason is required")
        return stripped


class VerifyCertificateRequest(CamelModel):
    # Shape is checked by VerificationService so that unsafe input is
    # logged and rejected the same way for GET and POST
    certificate_id: str = Field(max_length=1000)


def is_valid_certificate_code(value: str) -> bool:
    return bool(_CODE_RE.match(value))


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class CertificateOut(CamelModel):
    """Public representation; `status` is the effective (computed) status."""

    id: uuid.UUID
    certificate_id: str
    title: str
    recipient_id: str
    issuer_id: str
    template_id: str
    status: CertificateStatus
    issue_date: datetime
    expiry_date: Optional[datetime] = None
    hash: str
    revocation_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: CertificateRecord, status: CertificateStatus) -> "CertificateOut":
        data = record.model_dump(exclude={"signature", "revoked_by", "status"})
        return cls(status=status, **data)


class CertificateEnvelope(CamelModel):
    success: bool = True
    message: Optional[str] = None
    certificate: CertificateOut


class VerificationLogOut(CamelModel):
    certificate_id: str
    verified_at: datetime
    caller_ip: Optional[str] = None
    valid: bool
    reason: Optional[str] = None

    @field_validator("verified_at")
    @classmethod
    def verified_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class CertificateDetailEnvelope(CamelModel):
    success: bool = True
    certificate: CertificateOut
    verification_logs: Optional[List[VerificationLogOut]] = None


class Pagination(CamelModel):
    total: int
    page: int
    limit: int
    total_pages: int


class CertificateListEnvelope(CamelModel):
    success: bool = True
    certificates: List[CertificateOut]
    pagination: Pagination


class BulkIssueEnvelope(CamelModel):
    success: bool = True
    message: str
    count: int
    certificates: List[CertificateOut]


class RevokedCertificateOut(CamelModel):
    id: uuid.UUID
    certificate_id: str
    status: CertificateStatus
    revocation_reason: Optional[str] = None


class RevokeEnvelope(CamelModel):
    success: bool = True
    message: str = "Certificate revoked successfully"
    certificate: RevokedCertificateOut


class VerificationEnvelope(CamelModel):
    success: bool = True
    valid: bool
    reason: Optional[str] = None
    message: str
    certificate: Optional[CertificateOut] = None
    verified_at: datetime
