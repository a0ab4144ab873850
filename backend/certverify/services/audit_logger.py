"""
CertVerify Backend — Audit Logger
===================================

What:  Builds and records the append-only trail of certificate state
       changes and verification attempts.
Who:   CertificateService (CREATE), CertificateStateMachine (REVOKE) and
       VerificationService (every verification attempt).

Transaction boundaries:
    A transition's AuditRecord must commit together with the status change,
    so for transitions this class only BUILDS the entry; the repository
    writes it in the same transaction and the caller reports it back with
    committed(). Verification attempts have no companion write and are
    recorded directly.
"""

import logging
from typing import Any, Dict, Optional

from certverify.auth import Principal
from certverify.repositories.certificate_repository import (
    AuditEntry,
    CertificateRepository,
    VerificationEntry,
)
from certverify.schemas.certificate import CertificateRecord

logger = logging.getLogger("certverify.audit")

ENTITY_CERTIFICATE = "certificate"


class AuditLogger:
    def __init__(self, repository: CertificateRepository):
        self._repository = repository

    def creation(self, record: CertificateRecord, actor: Principal) -> AuditEntry:
        return AuditEntry(
            action="CREATE",
            entity_type=ENTITY_CERTIFICATE,
            entity_id=str(record.id),
            actor_id=actor.id,
            details={
                "certificateId": record.certificate_id,
                "recipientId": record.recipient_id,
                "templateId": record.template_id,
            },
        )

    def transition(
        self,
        record: CertificateRecord,
        action: str,
        actor: Principal,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        payload = {"certificateId": record.certificate_id, "recipientId": record.recipient_id}
        payload.update(details or {})
        return AuditEntry(
            action=action,
            entity_type=ENTITY_CERTIFICATE,
            entity_id=str(record.id),
            actor_id=actor.id,
            details=payload,
        )

    def committed(self, entry: AuditEntry) -> None:
        logger.info(
            "%s %s %s by %s",
            entry.action,
            entry.entity_type,
            entry.details.get("certificateId", entry.entity_id),
            entry.actor_id,
            extra={"audit_action": entry.action, "entity_id": entry.entity_id},
        )

    async def record(self, entry: AuditEntry) -> None:
        await self._repository.append_audit(entry)
        self.committed(entry)

    async def record_verification(self, entry: VerificationEntry) -> None:
        await self._repository.append_verification(entry)
        logger.debug(
            "VERIFY %s from %s valid=%s reason=%s",
            entry.certificate_code,
            entry.caller_ip,
            entry.is_valid,
            entry.reason,
        )
