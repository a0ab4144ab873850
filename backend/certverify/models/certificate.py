"""
CertVerify Backend — Certificate SQLAlchemy Models
====================================================

What:  ORM models for certificates, verification log entries and audit
       records.
Who:   Used only by SqlAlchemyCertificateRepository; everything above the
       repository works with the pydantic records in schemas/.

Table Design Rationale:
    - certificates.certificate_id is the PUBLIC code printed on the
      certificate (CERT-XXXXXXXX); `id` is an internal UUID never shown on
      paper. Unique index on the public code backs the collision retry.
    - status is a short string, not a DB enum, so adding a state never
      needs an ALTER TYPE.
    - verification_logs and audit_logs are append-only; nothing in the
      application updates or deletes them.
    - Column types are the generic SQLAlchemy ones (Uuid, JSON, DateTime
      with timezone) so the same models run on PostgreSQL and SQLite.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from certverify.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CertificateStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class Certificate(Base):
    """
    One issued certificate.

    Lifecycle:
        1. Inserted ACTIVE by CertificateService.issue()
        2. Optionally moved to REVOKED by CertificateStateMachine.revoke()
        3. Never deleted

    Invariant: revocation_reason is non-null iff status == REVOKED.
    """

    __tablename__ = "certificates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    certificate_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    issuer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    template_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=CertificateStatus.ACTIVE.value
    )
    issue_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expiry_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    signature: Mapped[str] = mapped_column(String(64), nullable=False)
    revocation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # "metadata" is reserved on declarative classes; the column keeps the name
    extra_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSON, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_certificates_recipient", "recipient_id"),
        Index("idx_certificates_issuer", "issuer_id"),
        Index("idx_certificates_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Certificate {self.certificate_id} status={self.status}>"


class VerificationLog(Base):
    """Append-only record of one verification attempt, whatever its outcome."""

    __tablename__ = "verification_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # The identifier as supplied; kept even when no certificate matched
    certificate_code: Mapped[str] = mapped_column(String(50), nullable=False)
    certificate_pk: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("certificates.id"), nullable=True
    )
    caller_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    verified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_verification_logs_certificate", "certificate_pk", "verified_at"),
    )


class AuditLog(Base):
    """Append-only record of one certificate state change."""

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_audit_logs_entity", "entity_type", "entity_id"),)
