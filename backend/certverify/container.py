"""
CertVerify Backend — Service Container
========================================

What:  Builds every long-lived object the application needs and wires them
       together: store → cache / limiter / CSRF / instance registry,
       repository → services.
Why:   One explicit construction site instead of module-level singletons.
       Tests build a container around an in-memory store and a SQLite
       session factory; production builds one from Settings in lifespan.
Who:   certverify.main (lifespan / create_app), routes via get_container().
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from certverify import __version__
from certverify.config import Settings
from certverify.database import create_engine_from_settings, create_session_factory, dispose_engine
from certverify.metrics import MetricsRegistry
from certverify.repositories import CertificateRepository, SqlAlchemyCertificateRepository
from certverify.services.audit_logger import AuditLogger
from certverify.services.cache_service import DistributedCache, InvalidationListener, LocalCache
from certverify.services.certificate_service import CertificateService
from certverify.services.csrf_service import CsrfTokenStore
from certverify.services.instance_registry import InstanceRegistry
from certverify.services.rate_limiter import RateLimiter
from certverify.services.signing import CertificateSigner
from certverify.services.state_machine import CertificateStateMachine
from certverify.services.verification_service import VerificationService
from certverify.store import CoordinationStore, create_store

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    store: CoordinationStore
    repository: CertificateRepository
    metrics: MetricsRegistry
    cache: DistributedCache
    rate_limiter: RateLimiter
    csrf: CsrfTokenStore
    signer: CertificateSigner
    audit: AuditLogger
    state_machine: CertificateStateMachine
    verification: VerificationService
    certificates: CertificateService
    instances: InstanceRegistry
    listener: Optional[InvalidationListener] = None
    engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        if self.listener is not None:
            await self.listener.stop()
        await self.instances.stop()
        await self.store.close()
        if self.engine is not None:
            await dispose_engine(self.engine)


def build_container(
    settings: Settings,
    store: Optional[CoordinationStore] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    repository: Optional[CertificateRepository] = None,
) -> ServiceContainer:
    """
    Args:
        settings:         Application settings
        store:            Coordination store; built from REDIS_URL when omitted
        session_factory:  Database sessions; an engine is created from
                          DATABASE_URL when neither this nor `repository` is given
        repository:       Pre-built repository (tests use an in-memory one)
    """
    engine: Optional[AsyncEngine] = None
    if repository is None:
        if session_factory is None:
            engine = create_engine_from_settings(settings)
            session_factory = create_session_factory(engine)
        repository = SqlAlchemyCertificateRepository(session_factory)

    if store is None:
        store = create_store(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            socket_timeout=settings.redis_socket_timeout,
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )

    local_cache = None
    if settings.local_cache_enabled:
        local_cache = LocalCache(
            max_ttl=settings.local_cache_max_ttl,
            max_entries=settings.local_cache_max_entries,
        )

    metrics = MetricsRegistry()
    cache = DistributedCache(
        store,
        instance_id=settings.instance_id,
        channel=settings.cache_invalidation_channel,
        local_cache=local_cache,
    )
    signer = CertificateSigner(settings.signing_secret)
    audit = AuditLogger(repository)

    listener = None
    if local_cache is not None:
        listener = InvalidationListener(
            store,
            cache,
            max_attempts=settings.retry_max_attempts,
            min_wait=settings.retry_min_wait,
            max_wait=settings.retry_max_wait,
        )

    return ServiceContainer(
        settings=settings,
        store=store,
        repository=repository,
        metrics=metrics,
        cache=cache,
        rate_limiter=RateLimiter(store, settings.rate_limit_budgets),
        csrf=CsrfTokenStore(
            store,
            settings.csrf_secret,
            ttl_seconds=settings.csrf_token_ttl,
            single_use=settings.csrf_single_use,
        ),
        signer=signer,
        audit=audit,
        state_machine=CertificateStateMachine(repository, audit, cache, metrics=metrics),
        verification=VerificationService(repository, cache, audit, signer, metrics=metrics),
        certificates=CertificateService(repository, signer, audit, cache, metrics=metrics),
        instances=InstanceRegistry(
            store,
            settings.instance_id,
            __version__,
            ttl_seconds=settings.instance_ttl,
            heartbeat_interval=settings.instance_heartbeat_interval,
        ),
        listener=listener,
        engine=engine,
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency: the container attached to the running app."""
    return request.app.state.container
