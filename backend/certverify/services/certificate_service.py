"""
CertVerify Backend — Certificate Service
==========================================

What:  Issuing, reading and listing certificates.
Who:   routes/certificates.py. Revocation lives in state_machine.py.

Identifier uniqueness:
    Generated identifiers (CERT-XXXXXXXX, 32 random bits) are unique because
    the certificate_id column is UNIQUE: a collision surfaces as a
    ConflictError from the repository and the issue is retried with a fresh
    identifier. No in-process bookkeeping is involved, so this holds across
    any number of instances.

Visibility:
    ADMIN     sees everything
    STAFF     sees what they issued
    STUDENT   sees what was issued to them
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from certverify.auth import Principal, Role
from certverify.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from certverify.metrics import MetricsRegistry
from certverify.models.certificate import CertificateStatus
from certverify.repositories.certificate_repository import (
    AuditEntry,
    CertificateQuery,
    CertificateRepository,
    VerificationEntry,
)
from certverify.schemas.certificate import CertificateRecord, IssueCertificateRequest
from certverify.services import cache_keys
from certverify.services.audit_logger import AuditLogger
from certverify.services.cache_service import DistributedCache
from certverify.services.signing import CertificateSigner

logger = logging.getLogger(__name__)

MAX_ISSUE_ATTEMPTS = 3
RECENT_VERIFICATIONS = 10


def generate_certificate_code() -> str:
    return f"CERT-{uuid.uuid4().hex[:8].upper()}"


class CertificateService:
    def __init__(
        self,
        repository: CertificateRepository,
        signer: CertificateSigner,
        audit: AuditLogger,
        cache: DistributedCache,
        metrics: Optional[MetricsRegistry] = None,
        code_factory: Callable[[], str] = generate_certificate_code,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._repository = repository
        self._signer = signer
        self._audit = audit
        self._cache = cache
        self._metrics = metrics
        self._code_factory = code_factory
        self._clock = clock

    # ── Issuing ────────────────────────────────────────────────────────

    @staticmethod
    def _authorize_issue(actor: Principal) -> None:
        if not actor.can_issue:
            raise ForbiddenError("Only administrators and staff can issue certificates")

    def _build(
        self, request: IssueCertificateRequest, actor: Principal, code: str, now: datetime
    ) -> CertificateRecord:
        if request.expiry_date is not None and request.expiry_date <= now:
            raise ValidationError("Expiry date must be in the future", field="expiryDate")

        record = CertificateRecord(
            id=uuid.uuid4(),
            certificate_id=code,
            title=request.title,
            recipient_id=request.recipient_id,
            issuer_id=actor.id,
            template_id=request.template_id,
            status=CertificateStatus.ACTIVE,
            issue_date=now,
            expiry_date=request.expiry_date,
            hash="",
            signature="",
            metadata=request.metadata,
            created_at=now,
            updated_at=now,
        )
        content_hash = self._signer.content_hash(record)
        return record.model_copy(update={"hash": content_hash, "signature": self._signer.sign(content_hash)})

    async def issue(self, request: IssueCertificateRequest, actor: Principal) -> CertificateRecord:
        self._authorize_issue(actor)

        attempts = 1 if request.certificate_id else MAX_ISSUE_ATTEMPTS
        for attempt in range(1, attempts + 1):
            code = request.certificate_id or self._code_factory()
            record = self._build(request, actor, code, self._clock())
            entry = self._audit.creation(record, actor)
            try:
                created = await self._repository.add(record, entry)
            except ConflictError:
                if request.certificate_id:
                    raise ConflictError(
                        f"Certificate ID '{request.certificate_id}' already exists"
                    ) from None
                logger.warning(
                    "Generated certificate ID %s collided (attempt %d/%d)", code, attempt, attempts
                )
                continue
            self._audit.committed(entry)
            break
        else:
            raise ConflictError("Could not allocate a unique certificate ID; please retry")

        await self._invalidate_listings([created])
        if self._metrics is not None:
            self._metrics.count_operation("issue")
        return created

    async def issue_bulk(
        self, requests: Sequence[IssueCertificateRequest], actor: Principal
    ) -> List[CertificateRecord]:
        """All-or-nothing issuance of up to 500 certificates in one transaction."""
        self._authorize_issue(actor)

        supplied = [r.certificate_id for r in requests if r.certificate_id]
        if len(supplied) != len(set(supplied)):
            raise ValidationError("Duplicate certificateId in bulk request", field="certificates")

        attempts = 1 if supplied else MAX_ISSUE_ATTEMPTS
        for attempt in range(1, attempts + 1):
            now = self._clock()
            used = set(supplied)
            records: List[CertificateRecord] = []
            for request in requests:
                code = request.certificate_id
                while code is None or (not request.certificate_id and code in used):
                    code = self._code_factory()
                used.add(code)
                records.append(self._build(request, actor, code, now))
            audits: List[AuditEntry] = [self._audit.creation(r, actor) for r in records]
            try:
                created = await self._repository.add_many(records, audits)
            except ConflictError:
                if supplied:
                    raise ConflictError("One or more certificate IDs already exist") from None
                logger.warning("Bulk issue hit an ID collision (attempt %d/%d)", attempt, attempts)
                continue
            break
        else:
            raise ConflictError("Could not allocate unique certificate IDs; please retry")

        for entry in audits:
            self._audit.committed(entry)
        await self._invalidate_listings(created)
        if self._metrics is not None:
            self._metrics.count_operation("issue", len(created))
        logger.info("Bulk issued %d certificates for %s", len(created), actor.id)
        return created

    async def _invalidate_listings(self, records: Sequence[CertificateRecord]) -> None:
        await self._cache.delete_by_pattern(cache_keys.LIST_PATTERN)
        for record in records:
            await self._cache.delete(cache_keys.verification_key(record.certificate_id))

    # ── Reading ────────────────────────────────────────────────────────

    async def get(
        self, certificate_pk: uuid.UUID, actor: Principal
    ) -> Tuple[CertificateRecord, Optional[List[VerificationEntry]]]:
        """
        Returns the record and, for ADMIN or the issuer, its most recent
        verification attempts (None for everyone else).
        """
        record = await self._repository.get(certificate_pk)
        if record is None:
            raise NotFoundError("Certificate", str(certificate_pk))

        is_issuer = record.issuer_id == actor.id
        if not (actor.is_admin or is_issuer or record.recipient_id == actor.id):
            raise ForbiddenError("You do not have access to this certificate")

        logs = None
        if actor.is_admin or is_issuer:
            logs = await self._repository.recent_verifications(certificate_pk, RECENT_VERIFICATIONS)
        return record, logs

    async def list(
        self,
        actor: Principal,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None,
        status: Optional[CertificateStatus] = None,
        template_id: Optional[str] = None,
    ) -> Tuple[List[CertificateRecord], int]:
        query = CertificateQuery(
            page=page,
            limit=limit,
            search=search.strip() if search and search.strip() else None,
            status=status,
            template_id=template_id,
            recipient_id=actor.id if actor.role is Role.STUDENT else None,
            issuer_id=actor.id if actor.role is Role.STAFF else None,
            now=self._clock(),
        )
        return await self._repository.list(query)
