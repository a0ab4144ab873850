"""
CertVerify Backend — Health Check Route
=========================================

What:  Liveness/readiness check for load balancers and orchestration.
How:   SELECT 1 against the database and PING against the coordination store.

Status levels:
    - healthy:   database and store reachable                    (HTTP 200)
    - degraded:  store unreachable; the API still serves requests
                 without caching and with rate limiting open      (HTTP 200)
    - unhealthy: database unreachable                             (HTTP 503)

Served outside the request pipeline, so health checks are never rate limited.
"""

import logging
import time

from fastapi import APIRouter, Depends, Response

from certverify import __version__
from certverify.container import ServiceContainer, get_container
from certverify.exceptions import StoreUnavailableError
from certverify.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get("/health", response_model=HealthResponse, summary="Service health check")
async def health_check(
    response: Response,
    container: ServiceContainer = Depends(get_container),
) -> HealthResponse:
    overall = "healthy"

    db_status = "connected"
    if not await container.repository.ping():
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable")

    store_status = "connected"
    try:
        await container.store.ping()
    except StoreUnavailableError as e:
        store_status = "disconnected"
        overall = "degraded" if overall != "unhealthy" else overall
        logger.warning("Health check: coordination store unreachable: %s", e.message)

    if overall == "unhealthy":
        response.status_code = 503

    return HealthResponse(
        status=overall,
        version=__version__,
        instance_id=container.settings.instance_id,
        database=db_status,
        store=store_status,
        store_circuit=container.store.circuit_state,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
