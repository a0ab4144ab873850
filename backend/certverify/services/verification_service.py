"""
CertVerify Backend — Verification Service
===========================================

What:  Answers "is certificate X genuine and currently valid?" for the
       public verification endpoints.
Who:   routes/verification.py (GET/POST /api/certificates/verify, /api/validate)

Flow:
    identifier
      │  shape check ─────────────── ValidationError (before cache or DB)
      ▼
    cache verify:{id} ── hit ──▶ result (cached=True)
      │ miss
      ▼
    repository.get_by_code
      ├─ missing            → not_found           (never cached)
      ├─ REVOKED            → revoked + reason
      ├─ expiry passed      → expired
      ├─ hash/sig mismatch  → signature_mismatch
      └─ otherwise          → valid
      ▼
    cache result (valid: TTL ≤ time left until expiry)

Every attempt, cached or not, is appended to the verification log.

Design Decision:
    A valid result is never cached past the certificate's expiry, and a
    cached valid result is re-checked against the expiry it embeds. Expiry
    therefore shows up on verification without a background job.
"""

import enum
import logging
import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from certverify.exceptions import ValidationError
from certverify.metrics import MetricsRegistry
from certverify.models.certificate import CertificateStatus
from certverify.repositories.certificate_repository import (
    CertificateRepository,
    VerificationEntry,
)
from certverify.schemas.certificate import (
    CertificateOut,
    CertificateRecord,
    is_valid_certificate_code,
)
from certverify.services import cache_keys
from certverify.services.audit_logger import AuditLogger
from certverify.services.cache_service import DistributedCache
from certverify.services.signing import CertificateSigner
from certverify.services.state_machine import effective_status

logger = logging.getLogger(__name__)

DEFAULT_VERIFICATION_TTL = 3600

# Only used to label rejected identifiers in the security log
_SQL_MARKERS = re.compile(r"(['\";]|--|/\*|\b(select|union|insert|update|delete|drop)\b)", re.IGNORECASE)
_SCRIPT_MARKERS = re.compile(r"<\s*/?\s*script|javascript:|on\w+\s*=", re.IGNORECASE)


class VerificationReason(str, enum.Enum):
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    EXPIRED = "expired"
    SIGNATURE_MISMATCH = "signature_mismatch"


@dataclass(frozen=True)
class VerificationResult:
    certificate_code: str
    valid: bool
    verified_at: datetime
    reason: Optional[VerificationReason] = None
    certificate: Optional[CertificateOut] = None
    revocation_reason: Optional[str] = None
    cached: bool = False
    cache_ttl: Optional[int] = None

    @property
    def message(self) -> str:
        if self.valid:
            return "Certificate is valid"
        if self.reason is VerificationReason.REVOKED:
            return f"Certificate has been revoked. Reason: {self.revocation_reason or 'not specified'}"
        if self.reason is VerificationReason.EXPIRED:
            return "Certificate has expired"
        if self.reason is VerificationReason.SIGNATURE_MISMATCH:
            return "Certificate integrity check failed"
        return "Certificate not found"


class VerificationService:
    def __init__(
        self,
        repository: CertificateRepository,
        cache: DistributedCache,
        audit: AuditLogger,
        signer: CertificateSigner,
        ttl: int = DEFAULT_VERIFICATION_TTL,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._repository = repository
        self._cache = cache
        self._audit = audit
        self._signer = signer
        self._ttl = ttl
        self._metrics = metrics
        self._clock = clock

    # ── Identifier check ───────────────────────────────────────────────

    @staticmethod
    def check_identifier(identifier: Optional[str], caller_ip: Optional[str] = None) -> str:
        code = (identifier or "").strip()
        if is_valid_certificate_code(code):
            return code
        logger.warning(
            "Rejected verification identifier from %s (length=%d, sql_markers=%s, script_markers=%s)",
            caller_ip or "unknown",
            len(code),
            bool(_SQL_MARKERS.search(code)),
            bool(_SCRIPT_MARKERS.search(code)),
        )
        raise ValidationError("Invalid certificate ID format", field="certificateId")

    # ── Public API ─────────────────────────────────────────────────────

    async def verify(
        self,
        identifier: Optional[str],
        caller_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VerificationResult:
        code = self.check_identifier(identifier, caller_ip)
        now = self._clock()

        result = await self._from_cache(code, now)
        if result is None:
            result, record = await self._evaluate(code, now)
            await self._store(result)
            certificate_pk = record.id if record is not None else None
        else:
            certificate_pk = result.certificate.id if result.certificate is not None else None

        await self._record(
            code,
            result.valid,
            result.reason.value if result.reason else None,
            certificate_pk,
            caller_ip,
            user_agent,
            now,
        )
        return result

    async def record_cached_response(
        self,
        identifier: Optional[str],
        envelope: Dict[str, Any],
        caller_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """
        Logs a verification answered by the response cache, where the
        handler (and so verify()) never ran.
        """
        code = (identifier or "").strip()
        if not is_valid_certificate_code(code):
            return
        certificate = envelope.get("certificate") or {}
        try:
            certificate_pk = uuid.UUID(certificate["id"]) if certificate.get("id") else None
        except (TypeError, ValueError):
            certificate_pk = None
        await self._record(
            code,
            bool(envelope.get("valid")),
            envelope.get("reason"),
            certificate_pk,
            caller_ip,
            user_agent,
            self._clock(),
        )

    async def _record(
        self,
        code: str,
        valid: bool,
        reason: Optional[str],
        certificate_pk: Optional[uuid.UUID],
        caller_ip: Optional[str],
        user_agent: Optional[str],
        verified_at: datetime,
    ) -> None:
        await self._audit.record_verification(
            VerificationEntry(
                certificate_code=code,
                is_valid=valid,
                reason=reason,
                certificate_pk=certificate_pk,
                caller_ip=caller_ip,
                user_agent=(user_agent or "")[:255] or None,
                verified_at=verified_at,
            )
        )
        if self._metrics is not None:
            self._metrics.count_operation("verify")

    # ── Evaluation ─────────────────────────────────────────────────────

    async def _evaluate(self, code: str, now: datetime):
        record = await self._repository.get_by_code(code)
        if record is None:
            return VerificationResult(code, False, now, VerificationReason.NOT_FOUND), None

        status = effective_status(record, now)
        certificate = CertificateOut.from_record(record, status)

        if status is CertificateStatus.REVOKED:
            result = VerificationResult(
                code,
                False,
                now,
                VerificationReason.REVOKED,
                certificate,
                revocation_reason=record.revocation_reason,
                cache_ttl=self._ttl,
            )
        elif status is CertificateStatus.EXPIRED:
            result = VerificationResult(
                code, False, now, VerificationReason.EXPIRED, certificate, cache_ttl=self._ttl
            )
        elif not self._signer.verify(record):
            logger.warning("Signature mismatch for certificate %s", code)
            result = VerificationResult(
                code,
                False,
                now,
                VerificationReason.SIGNATURE_MISMATCH,
                certificate,
                cache_ttl=self._ttl,
            )
        else:
            result = VerificationResult(
                code, True, now, certificate=certificate, cache_ttl=self._valid_ttl(record, now)
            )
        return result, record

    def _valid_ttl(self, record: CertificateRecord, now: datetime) -> int:
        if record.expiry_date is None:
            return self._ttl
        remaining = math.floor((record.expiry_date - now).total_seconds())
        return max(min(self._ttl, remaining), 0)

    # ── Cache ──────────────────────────────────────────────────────────

    async def _store(self, result: VerificationResult) -> None:
        if result.reason is VerificationReason.NOT_FOUND or not result.cache_ttl:
            return
        payload: Dict[str, Any] = {
            "valid": result.valid,
            "reason": result.reason.value if result.reason else None,
            "revocationReason": result.revocation_reason,
            "certificate": result.certificate.model_dump(mode="json", by_alias=True),
        }
        await self._cache.set(cache_keys.verification_key(result.certificate_code), payload, result.cache_ttl)

    async def _from_cache(self, code: str, now: datetime) -> Optional[VerificationResult]:
        payload = await self._cache.get(cache_keys.verification_key(code))
        if not isinstance(payload, dict):
            return None
        try:
            certificate = CertificateOut.model_validate(payload["certificate"])
            reason = VerificationReason(payload["reason"]) if payload.get("reason") else None
        except (KeyError, ValueError):
            logger.warning("Ignoring malformed cached verification for %s", code)
            return None

        cache_ttl = self._ttl
        if payload.get("valid"):
            if certificate.expiry_date is not None:
                remaining = math.floor((certificate.expiry_date - now).total_seconds())
                if remaining <= 0:
                    # Expired while cached; evaluate against the store again
                    return None
                cache_ttl = min(self._ttl, remaining)

        return VerificationResult(
            certificate_code=code,
            valid=bool(payload.get("valid")),
            verified_at=now,
            reason=reason,
            certificate=certificate,
            revocation_reason=payload.get("revocationReason"),
            cached=True,
            cache_ttl=cache_ttl,
        )
