"""
CertVerify Backend — Certificate Repository
=============================================

What:  Persistence interface for certificates, verification log entries and
       audit records, plus its SQLAlchemy implementation.
Why:   Services never build queries. Every statement here is composed with
       SQLAlchemy's expression API, so user input only ever reaches the
       database as bound parameters. Services depend on the abstract
       CertificateRepository, which lets tests substitute in-memory fakes.
How:   Each method opens its own session and transaction from the injected
       session factory. Writes that must be atomic together (a status change
       and its audit record; a bulk issuance) share one transaction.

Error Handling:
    SQLAlchemyError → DatabaseError (generic client message, details logged).
    Unique violation on the public code → ConflictError.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from certverify.exceptions import ConflictError, DatabaseError
from certverify.models.certificate import (
    AuditLog,
    Certificate,
    CertificateStatus,
    VerificationLog,
)
from certverify.schemas.certificate import CertificateRecord

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Value Objects
# ══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class AuditEntry:
    action: str
    entity_type: str
    entity_id: str
    actor_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class VerificationEntry:
    certificate_code: str
    is_valid: bool
    reason: Optional[str] = None
    certificate_pk: Optional[uuid.UUID] = None
    caller_ip: Optional[str] = None
    user_agent: Optional[str] = None
    verified_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class CertificateQuery:
    """
    Filters for listing. recipient_id / issuer_id are set by the service
    from the caller's role, never from the query string.
    """

    page: int = 1
    limit: int = 10
    search: Optional[str] = None
    status: Optional[CertificateStatus] = None
    template_id: Optional[str] = None
    recipient_id: Optional[str] = None
    issuer_id: Optional[str] = None
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ══════════════════════════════════════════════════════════════════════════
# Interface
# ══════════════════════════════════════════════════════════════════════════


class CertificateRepository(ABC):
    @abstractmethod
    async def add(self, record: CertificateRecord, audit: AuditEntry) -> CertificateRecord:
        """Insert one certificate with its CREATE audit record."""

    @abstractmethod
    async def add_many(
        self, records: Sequence[CertificateRecord], audits: Sequence[AuditEntry]
    ) -> List[CertificateRecord]:
        """Insert all certificates and audits in one transaction (all or nothing)."""

    @abstractmethod
    async def get(self, certificate_pk: uuid.UUID) -> Optional[CertificateRecord]:
        ...

    @abstractmethod
    async def get_by_code(self, certificate_id: str) -> Optional[CertificateRecord]:
        ...

    @abstractmethod
    async def list(self, query: CertificateQuery) -> Tuple[List[CertificateRecord], int]:
        """One page of certificates plus the total matching count."""

    @abstractmethod
    async def transition(
        self,
        certificate_pk: uuid.UUID,
        expected: CertificateStatus,
        target: CertificateStatus,
        audit: AuditEntry,
        revocation_reason: Optional[str] = None,
        revoked_by: Optional[str] = None,
    ) -> Optional[CertificateRecord]:
        """
        Compare-and-set the status. Returns the updated record, or None when
        the stored status was no longer `expected` (a concurrent writer won).
        """

    @abstractmethod
    async def append_verification(self, entry: VerificationEntry) -> None:
        ...

    @abstractmethod
    async def recent_verifications(
        self, certificate_pk: uuid.UUID, limit: int = 10
    ) -> List[VerificationEntry]:
        ...

    @abstractmethod
    async def append_audit(self, entry: AuditEntry) -> None:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...


# ══════════════════════════════════════════════════════════════════════════
# SQLAlchemy Implementation
# ══════════════════════════════════════════════════════════════════════════


def _to_record(row: Certificate) -> CertificateRecord:
    return CertificateRecord(
        id=row.id,
        certificate_id=row.certificate_id,
        title=row.title,
        recipient_id=row.recipient_id,
        issuer_id=row.issuer_id,
        template_id=row.template_id,
        status=CertificateStatus(row.status),
        issue_date=row.issue_date,
        expiry_date=row.expiry_date,
        hash=row.hash,
        signature=row.signature,
        revocation_reason=row.revocation_reason,
        revoked_at=row.revoked_at,
        revoked_by=row.revoked_by,
        metadata=row.extra_metadata,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_row(record: CertificateRecord) -> Certificate:
    return Certificate(
        id=record.id,
        certificate_id=record.certificate_id,
        title=record.title,
        recipient_id=record.recipient_id,
        issuer_id=record.issuer_id,
        template_id=record.template_id,
        status=record.status.value,
        issue_date=record.issue_date,
        expiry_date=record.expiry_date,
        hash=record.hash,
        signature=record.signature,
        extra_metadata=record.metadata,
        created_at=record.created_at or datetime.now(timezone.utc),
        updated_at=record.updated_at or datetime.now(timezone.utc),
    )


def _audit_row(entry: AuditEntry) -> AuditLog:
    return AuditLog(
        action=entry.action,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        actor_id=entry.actor_id,
        details=entry.details,
        created_at=entry.created_at,
    )


class SqlAlchemyCertificateRepository(CertificateRepository):
    """
    Args:
        session_factory: async_sessionmaker bound to the application engine
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def add(self, record: CertificateRecord, audit: AuditEntry) -> CertificateRecord:
        return (await self.add_many([record], [audit]))[0]

    async def add_many(
        self, records: Sequence[CertificateRecord], audits: Sequence[AuditEntry]
    ) -> List[CertificateRecord]:
        rows = [_to_row(record) for record in records]
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add_all(rows)
                    session.add_all([_audit_row(entry) for entry in audits])
        except IntegrityError as e:
            codes = [record.certificate_id for record in records]
            logger.warning("Duplicate certificate code among %d inserts: %s", len(codes), e.orig)
            raise ConflictError(
                message="A certificate with this certificateId already exists",
                context={"certificate_ids": codes[:10]},
            ) from e
        except SQLAlchemyError as e:
            logger.error("Failed to insert %d certificates: %s", len(rows), e)
            raise DatabaseError(context={"operation": "add_many", "error": str(e)}) from e
        return [_to_record(row) for row in rows]

    async def _fetch_one(self, statement) -> Optional[CertificateRecord]:
        try:
            async with self._session_factory() as session:
                row = (await session.execute(statement)).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Certificate lookup failed: %s", e)
            raise DatabaseError(context={"operation": "get", "error": str(e)}) from e
        return _to_record(row) if row is not None else None

    async def get(self, certificate_pk: uuid.UUID) -> Optional[CertificateRecord]:
        return await self._fetch_one(select(Certificate).where(Certificate.id == certificate_pk))

    async def get_by_code(self, certificate_id: str) -> Optional[CertificateRecord]:
        return await self._fetch_one(
            select(Certificate).where(Certificate.certificate_id == certificate_id)
        )

    def _conditions(self, query: CertificateQuery) -> list:
        conditions = []
        if query.recipient_id is not None:
            conditions.append(Certificate.recipient_id == query.recipient_id)
        if query.issuer_id is not None:
            conditions.append(Certificate.issuer_id == query.issuer_id)
        if query.template_id:
            conditions.append(Certificate.template_id == query.template_id)
        if query.search:
            term = query.search.lower()
            conditions.append(
                or_(
                    func.lower(Certificate.title).contains(term, autoescape=True),
                    func.lower(Certificate.certificate_id).contains(term, autoescape=True),
                )
            )

        # Status filters follow the computed view: an ACTIVE row past its
        # expiry date is listed as EXPIRED
        not_yet_expired = or_(Certificate.expiry_date.is_(None), Certificate.expiry_date > query.now)
        if query.status is CertificateStatus.ACTIVE:
            conditions.append(and_(Certificate.status == CertificateStatus.ACTIVE.value, not_yet_expired))
        elif query.status is CertificateStatus.EXPIRED:
            conditions.append(
                or_(
                    Certificate.status == CertificateStatus.EXPIRED.value,
                    and_(
                        Certificate.status == CertificateStatus.ACTIVE.value,
                        Certificate.expiry_date <= query.now,
                    ),
                )
            )
        elif query.status is CertificateStatus.REVOKED:
            conditions.append(Certificate.status == CertificateStatus.REVOKED.value)
        return conditions

    async def list(self, query: CertificateQuery) -> Tuple[List[CertificateRecord], int]:
        conditions = self._conditions(query)
        page_stmt = (
            select(Certificate)
            .where(*conditions)
            .order_by(Certificate.created_at.desc(), Certificate.certificate_id)
            .offset((query.page - 1) * query.limit)
            .limit(query.limit)
        )
        count_stmt = select(func.count()).select_from(Certificate).where(*conditions)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(page_stmt)).scalars().all()
                total = (await session.execute(count_stmt)).scalar_one()
        except SQLAlchemyError as e:
            logger.error("Certificate listing failed: %s", e)
            raise DatabaseError(context={"operation": "list", "error": str(e)}) from e
        return [_to_record(row) for row in rows], int(total)

    async def transition(
        self,
        certificate_pk: uuid.UUID,
        expected: CertificateStatus,
        target: CertificateStatus,
        audit: AuditEntry,
        revocation_reason: Optional[str] = None,
        revoked_by: Optional[str] = None,
    ) -> Optional[CertificateRecord]:
        now = datetime.now(timezone.utc)
        values: Dict[str, Any] = {"status": target.value, "updated_at": now}
        if target is CertificateStatus.REVOKED:
            values.update(revocation_reason=revocation_reason, revoked_at=now, revoked_by=revoked_by)

        # WHERE status = :expected makes the update a compare-and-set: of two
        # concurrent revokes exactly one matches a row
        statement = (
            update(Certificate)
            .where(Certificate.id == certificate_pk, Certificate.status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(statement)
                    if result.rowcount != 1:
                        return None
                    session.add(_audit_row(audit))
                row = await session.get(Certificate, certificate_pk)
        except SQLAlchemyError as e:
            logger.error("Status transition failed for %s: %s", certificate_pk, e)
            raise DatabaseError(context={"operation": "transition", "error": str(e)}) from e
        return _to_record(row) if row is not None else None

    async def append_verification(self, entry: VerificationEntry) -> None:
        row = VerificationLog(
            certificate_code=entry.certificate_code[:50],
            certificate_pk=entry.certificate_pk,
            caller_ip=entry.caller_ip,
            user_agent=(entry.user_agent or "")[:512] or None,
            is_valid=entry.is_valid,
            reason=entry.reason,
            verified_at=entry.verified_at,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(row)
        except SQLAlchemyError as e:
            logger.error("Failed to write verification log for %s: %s", entry.certificate_code, e)
            raise DatabaseError(context={"operation": "append_verification", "error": str(e)}) from e

    async def recent_verifications(
        self, certificate_pk: uuid.UUID, limit: int = 10
    ) -> List[VerificationEntry]:
        statement = (
            select(VerificationLog)
            .where(VerificationLog.certificate_pk == certificate_pk)
            .order_by(VerificationLog.verified_at.desc())
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(statement)).scalars().all()
        except SQLAlchemyError as e:
            raise DatabaseError(context={"operation": "recent_verifications", "error": str(e)}) from e
        return [
            VerificationEntry(
                certificate_code=row.certificate_code,
                certificate_pk=row.certificate_pk,
                caller_ip=row.caller_ip,
                user_agent=row.user_agent,
                is_valid=row.is_valid,
                reason=row.reason,
                verified_at=row.verified_at,
            )
            for row in rows
        ]

    async def append_audit(self, entry: AuditEntry) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(_audit_row(entry))
        except SQLAlchemyError as e:
            logger.error("Failed to write audit record %s/%s: %s", entry.action, entry.entity_id, e)
            raise DatabaseError(context={"operation": "append_audit", "error": str(e)}) from e

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.warning("Database ping failed: %s", e)
            return False
        return True
