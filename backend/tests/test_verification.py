"""
CertVerify Backend — Verification Service Unit Tests
======================================================

What we test:
    ✅ Unsafe identifiers rejected before any lookup
    ✅ not_found / revoked / expired / signature_mismatch / valid outcomes
    ✅ Caching: not_found never cached, valid capped at time to expiry
    ✅ Revoke after a cached valid answer flips the next verification
    ✅ Every attempt lands in the verification log
"""

from datetime import datetime, timedelta, timezone

import pytest

from certverify.auth import Principal, Role
from certverify.exceptions import ValidationError
from certverify.models.certificate import CertificateStatus
from certverify.services import cache_keys
from certverify.services.verification_service import (
    VerificationReason,
    VerificationService,
)

from conftest import make_record

ADMIN = Principal("admin-1", Role.ADMIN)


def _seed(services, **overrides):
    record = make_record(services.signer, **overrides)
    services.repository.certificates[record.id] = record
    return record


class TestIdentifierCheck:
    @pytest.mark.parametrize(
        "identifier",
        [
            "",
            "   ",
            "'; DROP TABLE certificates; --",
            "<script>alert(1)</script>",
            "CERT 1",
            "x" * 51,
            "-CERT",
        ],
    )
    def test_unsafe_identifiers_rejected(self, identifier):
        with pytest.raises(ValidationError) as exc_info:
            VerificationService.check_identifier(identifier)
        assert exc_info.value.message == "Invalid certificate ID format"
        assert exc_info.value.field == "certificateId"

    def test_identifier_is_trimmed(self):
        assert VerificationService.check_identifier("  CERT-1A2B3C4D ") == "CERT-1A2B3C4D"

    @pytest.mark.asyncio
    async def test_rejected_before_lookup_or_log(self, services):
        with pytest.raises(ValidationError):
            await services.verification.verify("1 OR 1=1")
        assert services.repository.verifications == []


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_valid_certificate(self, services):
        record = _seed(services)

        result = await services.verification.verify(record.certificate_id, caller_ip="203.0.113.9")

        assert result.valid
        assert result.reason is None
        assert result.message == "Certificate is valid"
        assert result.certificate.id == record.id
        assert result.certificate.status is CertificateStatus.ACTIVE
        assert not result.cached

    @pytest.mark.asyncio
    async def test_not_found(self, services):
        result = await services.verification.verify("CERT-MISSING")

        assert not result.valid
        assert result.reason is VerificationReason.NOT_FOUND
        assert result.certificate is None
        assert result.message == "Certificate not found"

    @pytest.mark.asyncio
    async def test_revoked(self, services):
        record = _seed(services, status=CertificateStatus.REVOKED, revocation_reason="Fraud")

        result = await services.verification.verify(record.certificate_id)

        assert not result.valid
        assert result.reason is VerificationReason.REVOKED
        assert result.message == "Certificate has been revoked. Reason: Fraud"
        assert result.revocation_reason == "Fraud"

    @pytest.mark.asyncio
    async def test_expired(self, services):
        record = _seed(services, expiry_date=datetime.now(timezone.utc) - timedelta(hours=1))

        result = await services.verification.verify(record.certificate_id)

        assert not result.valid
        assert result.reason is VerificationReason.EXPIRED
        assert result.certificate.status is CertificateStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_tampered_row_fails_signature(self, services):
        record = _seed(services)
        services.repository.certificates[record.id] = record.model_copy(
            update={"title": "PhD Astrophysics"}
        )

        result = await services.verification.verify(record.certificate_id)

        assert not result.valid
        assert result.reason is VerificationReason.SIGNATURE_MISMATCH
        assert result.message == "Certificate integrity check failed"


class TestCaching:
    @pytest.mark.asyncio
    async def test_second_verification_is_cached(self, services):
        record = _seed(services)

        first = await services.verification.verify(record.certificate_id)
        second = await services.verification.verify(record.certificate_id)

        assert not first.cached
        assert second.cached
        assert second.valid
        assert second.certificate.id == record.id

    @pytest.mark.asyncio
    async def test_not_found_is_never_cached(self, services):
        await services.verification.verify("CERT-LATER")
        assert await services.cache.get(cache_keys.verification_key("CERT-LATER")) is None

        # Issued afterwards: must verify immediately
        _seed(services, certificate_id="CERT-LATER")
        result = await services.verification.verify("CERT-LATER")
        assert result.valid

    @pytest.mark.asyncio
    async def test_valid_ttl_capped_at_expiry(self, services):
        record = _seed(services, expiry_date=datetime.now(timezone.utc) + timedelta(minutes=10))

        result = await services.verification.verify(record.certificate_id)

        assert 590 <= result.cache_ttl <= 600

    @pytest.mark.asyncio
    async def test_valid_ttl_defaults_to_one_hour(self, services):
        record = _seed(services, expiry_date=None)
        result = await services.verification.verify(record.certificate_id)
        assert result.cache_ttl == 3600

    @pytest.mark.asyncio
    async def test_cached_valid_answer_rechecked_against_expiry(self, services):
        expiry = datetime.now(timezone.utc) + timedelta(minutes=5)
        record = _seed(services, expiry_date=expiry)
        await services.verification.verify(record.certificate_id)

        later = VerificationService(
            services.repository,
            services.cache,
            services.verification._audit,
            services.signer,
            clock=lambda: expiry + timedelta(seconds=1),
        )
        result = await later.verify(record.certificate_id)

        assert not result.cached
        assert result.reason is VerificationReason.EXPIRED

    @pytest.mark.asyncio
    async def test_revocation_visible_after_cached_valid(self, services):
        record = _seed(services, certificate_id="CERT-001")

        assert (await services.verification.verify("CERT-001")).valid
        assert (await services.verification.verify("CERT-001")).cached

        await services.state_machine.revoke(record.id, "Academic misconduct", ADMIN)
        result = await services.verification.verify("CERT-001")

        assert not result.valid
        assert result.reason is VerificationReason.REVOKED
        assert result.message == "Certificate has been revoked. Reason: Academic misconduct"


class TestVerificationLog:
    @pytest.mark.asyncio
    async def test_every_attempt_logged(self, services):
        record = _seed(services)

        await services.verification.verify(record.certificate_id, "198.51.100.7", "qr-scanner/2.1")
        await services.verification.verify(record.certificate_id, "198.51.100.8")
        await services.verification.verify("CERT-MISSING", "198.51.100.9")

        logs = services.repository.verifications
        assert [e.caller_ip for e in logs] == ["198.51.100.7", "198.51.100.8", "198.51.100.9"]
        assert [e.is_valid for e in logs] == [True, True, False]
        assert logs[0].certificate_pk == record.id
        assert logs[0].user_agent == "qr-scanner/2.1"
        assert logs[2].reason == "not_found"
        assert logs[2].certificate_pk is None

    @pytest.mark.asyncio
    async def test_cached_response_logged(self, services):
        record = _seed(services)
        envelope = {
            "valid": True,
            "reason": None,
            "certificate": {"id": str(record.id)},
        }

        await services.verification.record_cached_response(
            record.certificate_id, envelope, caller_ip="192.0.2.1"
        )

        entry = services.repository.verifications[-1]
        assert entry.is_valid
        assert entry.certificate_pk == record.id
        assert entry.caller_ip == "192.0.2.1"
