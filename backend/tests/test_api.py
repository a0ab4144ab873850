"""
CertVerify Backend — API Integration Tests
============================================

What:  Drives the full FastAPI app (pipeline + routes) through HTTPX.
How:   Container on MemoryStore + in-memory SQLite, no network.

What we test:
    ✅ Issue → verify (MISS) → verify (HIT) → revoke → verify (MISS, revoked)
    ✅ Revoke clears padded codes and upper-case or hyphenless UUIDs too
    ✅ CSRF on state-changing routes, none on public verification
    ✅ CORS preflight and rejection, security headers, request IDs
    ✅ Rate limiting with Retry-After and the error envelope
    ✅ Role checks, conflicts, validation errors
    ✅ /health and /metrics
"""

import uuid

import pytest

from conftest import ADMIN, OTHER_STAFF, STAFF, STUDENT, issue_payload, with_csrf


async def _issue(client, headers=STAFF, **overrides):
    response = await client.post(
        "/api/certificates", json=issue_payload(**overrides), headers=await with_csrf(client, headers)
    )
    assert response.status_code == 201, response.text
    return response.json()["certificate"]


class TestIssueAndVerifyFlow:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, test_client, container):
        certificate = await _issue(test_client)
        code = certificate["certificateId"]
        url = f"/api/certificates/verify?certificateId={code}"

        first = await test_client.get(url)
        assert first.status_code == 200
        assert first.headers["X-Cache"] == "MISS"
        assert first.json()["valid"] is True
        assert first.json()["message"] == "Certificate is valid"

        second = await test_client.get(url)
        assert second.headers["X-Cache"] == "HIT"
        assert second.json()["valid"] is True

        revoke = await test_client.patch(
            f"/api/certificates/{certificate['id']}/revoke",
            json={"reason": "Academic misconduct"},
            headers=await with_csrf(test_client, STAFF),
        )
        assert revoke.status_code == 200
        assert revoke.json()["certificate"]["status"] == "REVOKED"

        third = await test_client.get(url)
        assert third.headers["X-Cache"] == "MISS"
        body = third.json()
        assert body["valid"] is False
        assert body["reason"] == "revoked"
        assert body["message"] == "Certificate has been revoked. Reason: Academic misconduct"

        # The cached (HIT) attempt was logged too
        logs = await container.repository.recent_verifications(uuid.UUID(certificate["id"]))
        assert len(logs) == 3

    @pytest.mark.asyncio
    async def test_issued_certificate_verifies_immediately_after_miss(self, test_client):
        missing = await test_client.get("/api/certificates/verify?certificateId=LATE-0001")
        assert missing.status_code == 404
        assert missing.json()["reason"] == "not_found"

        await _issue(test_client, certificateId="LATE-0001")

        found = await test_client.get("/api/certificates/verify?certificateId=LATE-0001")
        assert found.status_code == 200
        assert found.json()["valid"] is True

    @pytest.mark.asyncio
    async def test_post_verification_needs_no_csrf(self, test_client):
        certificate = await _issue(test_client)
        for path in ("/api/certificates/verify", "/api/validate"):
            response = await test_client.post(path, json={"certificateId": certificate["certificateId"]})
            assert response.status_code == 200
            assert response.json()["valid"] is True

    @pytest.mark.asyncio
    async def test_malicious_identifier_rejected(self, test_client):
        response = await test_client.get(
            "/api/validate", params={"certificateId": "' OR 1=1; --"}
        )
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "validation_error"
        assert body["message"] == "Invalid certificate ID format"


class TestRevokeReachesEverySpelling:
    """Alternative spellings of one certificate share one cache entry."""

    async def _revoke(self, client, certificate):
        response = await client.patch(
            f"/api/certificates/{certificate['id']}/revoke",
            json={"reason": "Fraud"},
            headers=await with_csrf(client, ADMIN),
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/api/certificates/verify", "/api/validate"])
    async def test_padded_identifier(self, test_client, path):
        certificate = await _issue(test_client)
        padded = {"certificateId": f"  {certificate['certificateId']} "}
        canonical = {"certificateId": certificate["certificateId"]}

        first = await test_client.get(path, params=padded)
        assert first.json()["valid"] is True
        assert (await test_client.get(path, params=canonical)).headers["X-Cache"] == "HIT"

        await self._revoke(test_client, certificate)

        after = await test_client.get(path, params=padded)
        assert after.headers["X-Cache"] == "MISS"
        assert after.json()["valid"] is False
        assert after.json()["reason"] == "revoked"

    @pytest.mark.asyncio
    async def test_uuid_spellings(self, test_client):
        certificate = await _issue(test_client)
        spellings = [certificate["id"].upper(), uuid.UUID(certificate["id"]).hex]

        for pk in spellings:
            response = await test_client.get(f"/api/certificates/{pk}", headers=STAFF)
            assert response.json()["certificate"]["status"] == "ACTIVE"
        canonical = await test_client.get(f"/api/certificates/{certificate['id']}", headers=STAFF)
        assert canonical.headers["X-Cache"] == "HIT"

        await self._revoke(test_client, certificate)

        upper = await test_client.get(f"/api/certificates/{spellings[0]}", headers=STAFF)
        assert upper.headers["X-Cache"] == "MISS"
        assert upper.json()["certificate"]["status"] == "REVOKED"
        hyphenless = await test_client.get(f"/api/certificates/{spellings[1]}", headers=STAFF)
        assert hyphenless.json()["certificate"]["status"] == "REVOKED"


class TestCertificateRoutes:
    @pytest.mark.asyncio
    async def test_issue_without_csrf_rejected(self, test_client):
        response = await test_client.post("/api/certificates", json=issue_payload(), headers=STAFF)
        assert response.status_code == 403
        assert response.json()["error"] == "csrf_invalid"

    @pytest.mark.asyncio
    async def test_csrf_token_in_body_accepted(self, test_client):
        token = (await test_client.get("/api/auth/csrf-token", headers=STAFF)).json()["csrfToken"]
        response = await test_client.post(
            "/api/certificates", json={**issue_payload(), "csrfToken": token}, headers=STAFF
        )
        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_csrf_token_of_other_user_rejected(self, test_client):
        headers = await with_csrf(test_client, OTHER_STAFF)
        headers.update(STAFF)
        response = await test_client.post("/api/certificates", json=issue_payload(), headers=headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_student_cannot_issue(self, test_client):
        response = await test_client.post(
            "/api/certificates", json=issue_payload(), headers=await with_csrf(test_client, STUDENT)
        )
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    @pytest.mark.asyncio
    async def test_body_validation_error(self, test_client):
        payload = issue_payload()
        del payload["title"]
        response = await test_client.post(
            "/api/certificates", json=payload, headers=await with_csrf(test_client, STAFF)
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert any(e["field"] == "title" for e in body["errors"])

    @pytest.mark.asyncio
    async def test_duplicate_certificate_id_conflicts(self, test_client):
        await _issue(test_client, certificateId="LEGACY-7")
        response = await test_client.post(
            "/api/certificates",
            json=issue_payload(certificateId="LEGACY-7"),
            headers=await with_csrf(test_client, STAFF),
        )
        assert response.status_code == 409
        assert response.json()["message"] == "Certificate ID 'LEGACY-7' already exists"

    @pytest.mark.asyncio
    async def test_bulk_issue(self, test_client):
        payload = {"certificates": [issue_payload(title=f"Course {i}") for i in range(100)]}
        response = await test_client.post(
            "/api/certificates/bulk", json=payload, headers=await with_csrf(test_client, STAFF)
        )
        assert response.status_code == 201
        body = response.json()
        assert body["count"] == 100
        assert body["message"] == "100 certificates created successfully"
        assert len({c["certificateId"] for c in body["certificates"]}) == 100

    @pytest.mark.asyncio
    async def test_list_requires_authentication(self, test_client):
        response = await test_client.get("/api/certificates")
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_list_pagination_and_cache_invalidation(self, test_client):
        await _issue(test_client)
        await _issue(test_client)

        first = await test_client.get("/api/certificates?limit=1", headers=STAFF)
        assert first.status_code == 200
        assert first.headers["X-Total-Count"] == "2"
        assert first.json()["pagination"] == {"total": 2, "page": 1, "limit": 1, "totalPages": 2}

        cached = await test_client.get("/api/certificates?limit=1", headers=STAFF)
        assert cached.headers["X-Cache"] == "HIT"
        assert cached.headers["X-Total-Count"] == "2"

        await _issue(test_client)
        fresh = await test_client.get("/api/certificates?limit=1", headers=STAFF)
        assert fresh.headers["X-Cache"] == "MISS"
        assert fresh.json()["pagination"]["total"] == 3

    @pytest.mark.asyncio
    async def test_cache_is_per_caller(self, test_client):
        await _issue(test_client)
        await test_client.get("/api/certificates", headers=STAFF)

        other = await test_client.get("/api/certificates", headers=OTHER_STAFF)

        assert other.headers["X-Cache"] == "MISS"
        assert other.json()["pagination"]["total"] == 0

    @pytest.mark.asyncio
    async def test_detail_visibility(self, test_client):
        certificate = await _issue(test_client)
        url = f"/api/certificates/{certificate['id']}"

        issuer_view = await test_client.get(url, headers=STAFF)
        student_view = await test_client.get(url, headers=STUDENT)
        outsider_view = await test_client.get(url, headers=OTHER_STAFF)

        assert issuer_view.status_code == 200
        assert "verificationLogs" in issuer_view.json()
        assert student_view.status_code == 200
        assert "verificationLogs" not in student_view.json()
        assert outsider_view.status_code == 403

    @pytest.mark.asyncio
    async def test_revoke_rules(self, test_client):
        certificate = await _issue(test_client)
        url = f"/api/certificates/{certificate['id']}/revoke"

        blank = await test_client.patch(
            url, json={"reason": "  "}, headers=await with_csrf(test_client, ADMIN)
        )
        assert blank.status_code == 400

        forbidden = await test_client.patch(
            url, json={"reason": "x"}, headers=await with_csrf(test_client, OTHER_STAFF)
        )
        assert forbidden.status_code == 403

        ok = await test_client.patch(url, json={"reason": "Fraud"}, headers=await with_csrf(test_client, ADMIN))
        assert ok.status_code == 200
        assert ok.json()["certificate"]["revocationReason"] == "Fraud"

        again = await test_client.patch(
            url, json={"reason": "Fraud"}, headers=await with_csrf(test_client, ADMIN)
        )
        assert again.status_code == 409
        assert again.json()["message"] == "Certificate is already revoked"

    @pytest.mark.asyncio
    async def test_revoke_unknown_certificate(self, test_client):
        response = await test_client.patch(
            "/api/certificates/00000000-0000-0000-0000-000000000000/revoke",
            json={"reason": "Fraud"},
            headers=await with_csrf(test_client, ADMIN),
        )
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestPipelineBehaviour:
    @pytest.mark.asyncio
    async def test_preflight(self, test_client):
        response = await test_client.options(
            "/api/certificates",
            headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "POST"},
        )
        assert response.status_code == 204
        assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
        assert response.headers["Access-Control-Allow-Credentials"] == "true"
        assert "X-CSRF-Token" in response.headers["Access-Control-Allow-Headers"]
        assert "PATCH" in response.headers["Access-Control-Allow-Methods"]

    @pytest.mark.asyncio
    async def test_disallowed_origin(self, test_client):
        response = await test_client.get(
            "/api/certificates/verify?certificateId=CERT-1", headers={"Origin": "https://evil.example"}
        )
        assert response.status_code == 403
        assert response.json()["error"] == "cors_rejected"
        assert "Access-Control-Allow-Origin" not in response.headers

    @pytest.mark.asyncio
    async def test_allowed_origin_decorated(self, test_client):
        response = await test_client.get(
            "/api/certificates/verify?certificateId=CERT-1",
            headers={"Origin": "https://portal.example.edu"},
        )
        assert response.headers["Access-Control-Allow-Origin"] == "https://portal.example.edu"
        assert "Origin" in response.headers["Vary"]

    @pytest.mark.asyncio
    async def test_security_and_cache_headers(self, test_client):
        response = await test_client.get("/api/certificates", headers=STAFF)
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "default-src 'none'" in response.headers["Content-Security-Policy"]
        assert "Strict-Transport-Security" not in response.headers
        assert "Cache-Control" in response.headers
        assert "X-Rate-Limit-Remaining" in response.headers

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, test_client):
        response = await test_client.get("/api/certificates", headers={"X-Request-ID": "trace-42"})
        assert response.headers["X-Request-ID"] == "trace-42"
        assert response.json()["requestId"] == "trace-42"

    @pytest.mark.asyncio
    async def test_unsafe_request_id_replaced(self, test_client):
        response = await test_client.get("/health", headers={"X-Request-ID": "<script>"})
        assert response.headers["X-Request-ID"] != "<script>"
        assert len(response.headers["X-Request-ID"]) == 8

    @pytest.mark.asyncio
    async def test_rate_limit(self, test_client, container):
        budget = container.rate_limiter.budget_for("auth").points
        for _ in range(budget):
            ok = await test_client.get("/api/auth/csrf-token")
            assert ok.status_code == 200

        limited = await test_client.get("/api/auth/csrf-token")

        assert limited.status_code == 429
        assert int(limited.headers["Retry-After"]) > 0
        assert limited.headers["X-Rate-Limit-Remaining"] == "0"
        body = limited.json()
        assert body["error"] == "rate_limit_exceeded"
        assert body["retryAfter"] == int(limited.headers["Retry-After"])
        # Other route classes keep their own budget
        assert (await test_client.get("/api/certificates/verify?certificateId=CERT-1")).status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_route_envelope(self, test_client):
        response = await test_client.get("/api/nothing-here")
        assert response.status_code == 404
        assert response.json()["success"] is False


class TestOperationalRoutes:
    @pytest.mark.asyncio
    async def test_health(self, test_client):
        response = await test_client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["storeCircuit"] == "closed"

    @pytest.mark.asyncio
    async def test_metrics(self, test_client):
        await test_client.get("/api/certificates/verify?certificateId=CERT-1")
        response = await test_client.get("/metrics")
        assert response.status_code == 200
        assert 'route="/api/certificates/verify"' in response.text
        assert "certificate_operations_total" in response.text

    @pytest.mark.asyncio
    async def test_cache_admin(self, test_client):
        assert (await test_client.get("/api/cache", headers=STUDENT)).status_code == 403

        stats = await test_client.get("/api/cache", headers=ADMIN)
        assert stats.status_code == 200
        assert stats.json()["stats"]["backend"] == "available"

        bad = await test_client.delete(
            "/api/cache?pattern=ratelimit:*", headers=await with_csrf(test_client, ADMIN)
        )
        assert bad.status_code == 400

        ok = await test_client.delete(
            "/api/cache?pattern=verify:*", headers=await with_csrf(test_client, ADMIN)
        )
        assert ok.status_code == 200
