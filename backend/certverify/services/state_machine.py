"""
CertVerify Backend — Certificate Lifecycle State Machine
==========================================================

What:  The one place a certificate's status may change.
Why:   Revocation must be exactly-once under concurrency, must leave an
       audit record in the same transaction, and must take effect on every
       instance's cache before the caller is told it succeeded.

States:
    ACTIVE ──revoke──▶ REVOKED
    ACTIVE ──expiry──▶ EXPIRED
    REVOKED, EXPIRED are terminal.

Expiry is a computed view: a row whose stored status is ACTIVE but whose
expiry_date has passed is reported as EXPIRED everywhere (see
effective_status). Nothing rewrites rows on a schedule.

Revocation sequence:
    1. Load         → NotFoundError
    2. Authorize    → ADMIN, or the STAFF member who issued it
    3. Check state  → ConflictError for REVOKED / EXPIRED
    4. CAS update   → repository.transition(ACTIVE → REVOKED) + audit, one tx.
                      None means a concurrent revoke won → ConflictError
    5. Invalidate   → every cache entry embedding the certificate, shielded
                      from cancellation once the commit has happened
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Optional

from certverify.auth import Principal, Role
from certverify.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from certverify.metrics import MetricsRegistry
from certverify.models.certificate import CertificateStatus
from certverify.repositories.certificate_repository import CertificateRepository
from certverify.schemas.certificate import CertificateRecord
from certverify.services import cache_keys
from certverify.services.audit_logger import AuditLogger
from certverify.services.cache_service import DistributedCache

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[CertificateStatus, FrozenSet[CertificateStatus]] = {
    CertificateStatus.ACTIVE: frozenset({CertificateStatus.REVOKED, CertificateStatus.EXPIRED}),
    CertificateStatus.REVOKED: frozenset(),
    CertificateStatus.EXPIRED: frozenset(),
}

_TERMINAL_MESSAGES = {
    CertificateStatus.REVOKED: "Certificate is already revoked",
    CertificateStatus.EXPIRED: "Certificate has expired",
}


def is_valid_transition(current: CertificateStatus, target: CertificateStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def assert_transition(current: CertificateStatus, target: CertificateStatus) -> None:
    if not is_valid_transition(current, target):
        message = _TERMINAL_MESSAGES.get(
            current, f"Cannot move certificate from {current.value} to {target.value}"
        )
        raise ConflictError(message, context={"current": current.value, "target": target.value})


def effective_status(record: CertificateRecord, now: Optional[datetime] = None) -> CertificateStatus:
    if record.status is not CertificateStatus.ACTIVE:
        return record.status
    now = now or datetime.now(timezone.utc)
    if record.expiry_date is not None and record.expiry_date <= now:
        return CertificateStatus.EXPIRED
    return CertificateStatus.ACTIVE


async def invalidate_certificate(cache: DistributedCache, record: CertificateRecord) -> None:
    for pattern in cache_keys.certificate_patterns(str(record.id), record.certificate_id):
        await cache.delete_by_pattern(pattern)
    await cache.delete(cache_keys.verification_key(record.certificate_id))


class CertificateStateMachine:
    def __init__(
        self,
        repository: CertificateRepository,
        audit: AuditLogger,
        cache: DistributedCache,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._repository = repository
        self._audit = audit
        self._cache = cache
        self._metrics = metrics
        self._clock = clock

    @staticmethod
    def _authorize_revoke(record: CertificateRecord, actor: Optional[Principal]) -> None:
        if actor is None:
            raise UnauthorizedError()
        if actor.role is Role.ADMIN:
            return
        if actor.role is Role.STAFF and record.issuer_id == actor.id:
            return
        if actor.role is Role.STAFF:
            raise ForbiddenError("You can only revoke certificates you issued")
        raise ForbiddenError("Only administrators and staff can revoke certificates")

    async def revoke(
        self, certificate_pk: uuid.UUID, reason: str, actor: Optional[Principal]
    ) -> CertificateRecord:
        record = await self._repository.get(certificate_pk)
        if record is None:
            raise NotFoundError("Certificate", str(certificate_pk))

        self._authorize_revoke(record, actor)

        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A revocation reason is required", field="reason")

        current = effective_status(record, self._clock())
        assert_transition(current, CertificateStatus.REVOKED)

        entry = self._audit.transition(
            record,
            "REVOKE",
            actor,
            details={"reason": reason, "previousStatus": current.value},
        )
        updated = await self._repository.transition(
            certificate_pk,
            expected=CertificateStatus.ACTIVE,
            target=CertificateStatus.REVOKED,
            audit=entry,
            revocation_reason=reason,
            revoked_by=actor.id,
        )
        if updated is None:
            # Lost the compare-and-set: someone else changed the status first
            logger.info("Concurrent revoke of %s lost the race", record.certificate_id)
            raise ConflictError("Certificate is already revoked")

        self._audit.committed(entry)
        if self._metrics is not None:
            self._metrics.count_operation("revoke")

        # The commit already happened; finish invalidating even if the
        # client disconnects mid-request
        await asyncio.shield(invalidate_certificate(self._cache, updated))
        return updated
