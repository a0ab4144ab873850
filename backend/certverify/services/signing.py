"""
CertVerify Backend — Certificate Signing
==========================================

What:  Content hash + HMAC signature for certificates.
Why:   Verification must detect a row whose content was altered outside the
       application (direct SQL edits, restored backups). The hash covers the
       printed fields; the signature proves the hash was produced by a holder
       of SIGNING_SECRET.

Canonical form:
    JSON with sorted keys and no whitespace; datetimes as UTC at second
    precision ("2025-01-31T09:00:00Z") so the value survives a round-trip
    through databases that store different sub-second precision.
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from certverify.schemas.certificate import CertificateRecord


def _canonical_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class CertificateSigner:
    def __init__(self, secret: str):
        self._key = secret.encode("utf-8")

    @staticmethod
    def canonical_payload(record: CertificateRecord) -> Dict[str, Any]:
        return {
            "certificateId": record.certificate_id,
            "title": record.title,
            "recipientId": record.recipient_id,
            "issuerId": record.issuer_id,
            "templateId": record.template_id,
            "issueDate": _canonical_time(record.issue_date),
            "expiryDate": _canonical_time(record.expiry_date),
            "metadata": record.metadata or {},
        }

    def content_hash(self, record: CertificateRecord) -> str:
        body = json.dumps(
            self.canonical_payload(record), sort_keys=True, separators=(",", ":"), default=str
        )
        return hashlib.sha256(body.encode("utf-8")).hexdigest()

    def sign(self, content_hash: str) -> str:
        return hmac.new(self._key, content_hash.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify(self, record: CertificateRecord) -> bool:
        """True iff the stored hash matches the content AND the signature matches the hash."""
        expected_hash = self.content_hash(record)
        if not hmac.compare_digest(expected_hash, record.hash):
            return False
        return hmac.compare_digest(self.sign(record.hash), record.signature)
