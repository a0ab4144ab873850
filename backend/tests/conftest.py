"""
CertVerify Backend — Test Configuration (conftest.py)
=======================================================

What:  Shared pytest fixtures and test doubles for the whole suite.
How:   Everything runs in-process: MemoryStore stands in for Redis and an
       in-memory SQLite database (aiosqlite, one shared connection) stands
       in for PostgreSQL.

Fixture Hierarchy:
    test_settings        Settings for a test deployment (memory://, test secrets)
    fake_clock           Controllable clock for TTL and window tests
    memory_store         Fresh MemoryStore
    engine               SQLite engine with the schema created
    sql_repository       SqlAlchemyCertificateRepository on that engine
    memory_repository    InMemoryCertificateRepository (concurrency tests)
    container            ServiceContainer wired to memory_store + SQLite
    app / test_client    FastAPI app and HTTPX AsyncClient over ASGITransport

Test doubles:
    InMemoryCertificateRepository  CertificateRepository over dicts, enforcing
                                   the unique certificateId constraint
    FailingStore                   CoordinationStore whose every call raises
                                   StoreUnavailableError (Redis down)
    FakeClock                      callable clock with advance()
"""

import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple
from types import SimpleNamespace

# Override settings for testing BEFORE any certverify imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "memory://"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from certverify.config import Settings
from certverify.container import build_container
from certverify.database import create_session_factory, create_tables
from certverify.exceptions import ConflictError, StoreUnavailableError
from certverify.models.certificate import CertificateStatus
from certverify.repositories import (
    AuditEntry,
    CertificateQuery,
    CertificateRepository,
    SqlAlchemyCertificateRepository,
    VerificationEntry,
)
from certverify.schemas.certificate import CertificateRecord
from certverify.store import CoordinationStore, CounterState, MemoryStore


# ══════════════════════════════════════════════════════════════════════════
# Test Doubles
# ══════════════════════════════════════════════════════════════════════════


class FakeClock:
    """Callable returning a float that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingStore(CoordinationStore):
    """Every operation fails the way RedisStore does when Redis is down."""

    def _fail(self, operation: str):
        raise StoreUnavailableError(context={"operation": operation})

    async def get(self, key: str) -> Optional[str]:
        self._fail("get")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._fail("set")

    async def delete(self, *keys: str) -> int:
        self._fail("delete")

    async def delete_pattern(self, pattern: str) -> int:
        self._fail("delete_pattern")

    async def keys(self, pattern: str) -> List[str]:
        self._fail("keys")

    async def count_keys(self, pattern: str) -> int:
        self._fail("count_keys")

    async def increment_window(self, key: str, window_ms: int) -> CounterState:
        self._fail("increment_window")

    async def publish(self, channel: str, message: str) -> None:
        self._fail("publish")

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        self._fail("subscribe")
        yield ""  # pragma: no cover

    async def ping(self) -> bool:
        self._fail("ping")


class InMemoryCertificateRepository(CertificateRepository):
    """
    Dict-backed repository. Inserts and transitions yield to the event loop
    first, so concurrent callers genuinely interleave.
    """

    def __init__(self):
        self.certificates: Dict[uuid.UUID, CertificateRecord] = {}
        self.verifications: List[VerificationEntry] = []
        self.audits: List[AuditEntry] = []
        self._lock = asyncio.Lock()

    async def add(self, record: CertificateRecord, audit: AuditEntry) -> CertificateRecord:
        return (await self.add_many([record], [audit]))[0]

    async def add_many(
        self, records: Sequence[CertificateRecord], audits: Sequence[AuditEntry]
    ) -> List[CertificateRecord]:
        await asyncio.sleep(0)
        async with self._lock:
            existing = {r.certificate_id for r in self.certificates.values()}
            codes = [r.certificate_id for r in records]
            if len(set(codes)) != len(codes) or existing.intersection(codes):
                raise ConflictError("A certificate with this certificateId already exists")
            for record in records:
                self.certificates[record.id] = record
            self.audits.extend(audits)
        return list(records)

    async def get(self, certificate_pk: uuid.UUID) -> Optional[CertificateRecord]:
        return self.certificates.get(certificate_pk)

    async def get_by_code(self, certificate_id: str) -> Optional[CertificateRecord]:
        for record in self.certificates.values():
            if record.certificate_id == certificate_id:
                return record
        return None

    async def list(self, query: CertificateQuery) -> Tuple[List[CertificateRecord], int]:
        matches = [
            r
            for r in self.certificates.values()
            if (query.recipient_id is None or r.recipient_id == query.recipient_id)
            and (query.issuer_id is None or r.issuer_id == query.issuer_id)
            and (not query.template_id or r.template_id == query.template_id)
        ]
        start = (query.page - 1) * query.limit
        return matches[start:start + query.limit], len(matches)

    async def transition(
        self,
        certificate_pk: uuid.UUID,
        expected: CertificateStatus,
        target: CertificateStatus,
        audit: AuditEntry,
        revocation_reason: Optional[str] = None,
        revoked_by: Optional[str] = None,
    ) -> Optional[CertificateRecord]:
        await asyncio.sleep(0)
        async with self._lock:
            record = self.certificates.get(certificate_pk)
            if record is None or record.status is not expected:
                return None
            now = datetime.now(timezone.utc)
            updated = record.model_copy(
                update={
                    "status": target,
                    "revocation_reason": revocation_reason,
                    "revoked_at": now,
                    "revoked_by": revoked_by,
                    "updated_at": now,
                }
            )
            self.certificates[certificate_pk] = updated
            self.audits.append(audit)
            return updated

    async def append_verification(self, entry: VerificationEntry) -> None:
        self.verifications.append(entry)

    async def recent_verifications(
        self, certificate_pk: uuid.UUID, limit: int = 10
    ) -> List[VerificationEntry]:
        entries = [e for e in self.verifications if e.certificate_pk == certificate_pk]
        return sorted(entries, key=lambda e: e.verified_at, reverse=True)[:limit]

    async def append_audit(self, entry: AuditEntry) -> None:
        self.audits.append(entry)

    async def ping(self) -> bool:
        return True


# ══════════════════════════════════════════════════════════════════════════
# Settings & Infrastructure Fixtures
# ══════════════════════════════════════════════════════════════════════════


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="memory://",
        environment="test",
        instance_id="test-instance",
        cors_origins="http://localhost:3000,https://portal.example.edu",
        csrf_secret="test-csrf-secret",
        signing_secret="test-signing-secret",
        local_cache_enabled=False,
        log_level="WARNING",
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest_asyncio.fixture
async def engine():
    # StaticPool: every session shares the one in-memory database
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def sql_repository(session_factory) -> SqlAlchemyCertificateRepository:
    return SqlAlchemyCertificateRepository(session_factory)


@pytest.fixture
def memory_repository() -> InMemoryCertificateRepository:
    return InMemoryCertificateRepository()


@pytest.fixture
def services(memory_repository, memory_store):
    """Domain services over the in-memory repository and store."""
    from certverify.metrics import MetricsRegistry
    from certverify.services.audit_logger import AuditLogger
    from certverify.services.cache_service import DistributedCache
    from certverify.services.certificate_service import CertificateService
    from certverify.services.signing import CertificateSigner
    from certverify.services.state_machine import CertificateStateMachine
    from certverify.services.verification_service import VerificationService

    signer = CertificateSigner("test-signing-secret")
    audit = AuditLogger(memory_repository)
    cache = DistributedCache(memory_store, "test-instance")
    metrics = MetricsRegistry()
    return SimpleNamespace(
        repository=memory_repository,
        store=memory_store,
        signer=signer,
        cache=cache,
        metrics=metrics,
        certificates=CertificateService(memory_repository, signer, audit, cache, metrics),
        state_machine=CertificateStateMachine(memory_repository, audit, cache, metrics),
        verification=VerificationService(memory_repository, cache, audit, signer, metrics=metrics),
    )


@pytest.fixture
def container(test_settings, memory_store, session_factory):
    return build_container(test_settings, store=memory_store, session_factory=session_factory)


@pytest.fixture
def app(container):
    from certverify.main import create_app

    return create_app(container)


@pytest_asyncio.fixture
async def test_client(app):
    """
    HTTPX AsyncClient routed straight into the ASGI app.

    ASGITransport does not run lifespan; the container is injected through
    create_app() instead.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ══════════════════════════════════════════════════════════════════════════
# Request Helpers
# ══════════════════════════════════════════════════════════════════════════


ADMIN = {"X-User-ID": "admin-1", "X-User-Role": "ADMIN"}
STAFF = {"X-User-ID": "staff-1", "X-User-Role": "STAFF"}
OTHER_STAFF = {"X-User-ID": "staff-2", "X-User-Role": "STAFF"}
STUDENT = {"X-User-ID": "student-1", "X-User-Role": "STUDENT"}


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return dict(ADMIN)


@pytest.fixture
def staff_headers() -> Dict[str, str]:
    return dict(STAFF)


@pytest.fixture
def student_headers() -> Dict[str, str]:
    return dict(STUDENT)


async def with_csrf(client: AsyncClient, headers: Dict[str, str]) -> Dict[str, str]:
    """Fetches a CSRF token for the identity in `headers` and adds it."""
    response = await client.get("/api/auth/csrf-token", headers=headers)
    assert response.status_code == 200, response.text
    return {**headers, "X-CSRF-Token": response.json()["csrfToken"]}


def issue_payload(**overrides) -> Dict:
    payload = {
        "recipientId": "student-1",
        "templateId": "tpl-bsc",
        "title": "BSc Computer Science",
        "expiryDate": (datetime.now(timezone.utc) + timedelta(days=365)).isoformat(),
    }
    payload.update(overrides)
    return payload


def make_record(signer, **overrides) -> CertificateRecord:
    """A signed ACTIVE record; overrides are applied before signing."""
    now = datetime.now(timezone.utc)
    fields = dict(
        id=uuid.uuid4(),
        certificate_id=f"CERT-{uuid.uuid4().hex[:8].upper()}",
        title="BSc Computer Science",
        recipient_id="student-1",
        issuer_id="staff-1",
        template_id="tpl-bsc",
        status=CertificateStatus.ACTIVE,
        issue_date=now - timedelta(days=30),
        expiry_date=now + timedelta(days=365),
        hash="",
        signature="",
        created_at=now,
        updated_at=now,
    )
    fields.update(overrides)
    record = CertificateRecord(**fields)
    content_hash = signer.content_hash(record)
    return record.model_copy(update={"hash": content_hash, "signature": signer.sign(content_hash)})
