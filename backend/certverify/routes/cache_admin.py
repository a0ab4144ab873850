"""
CertVerify Backend — Cache Administration Routes
==================================================

    GET    /api/cache                 hit/miss counters, key count, backend state
    DELETE /api/cache?pattern=api:*   drop matching response/verification entries

ADMIN only. Patterns are restricted to the response (api:) and
verification (verify:) namespaces so rate-limit counters and CSRF tokens
cannot be wiped from here.
"""

import logging

from fastapi import APIRouter, Depends, Query

from certverify.auth import Principal, require_principal
from certverify.container import ServiceContainer, get_container
from certverify.exceptions import ForbiddenError, ValidationError
from certverify.schemas.common import CacheInvalidateResponse, CacheStatsResponse, ErrorResponse
from certverify.services.cache_keys import RESPONSE_PREFIX, VERIFICATION_PREFIX

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cache", tags=["Cache"])

ALLOWED_PREFIXES = (f"{RESPONSE_PREFIX}:", f"{VERIFICATION_PREFIX}:")


def _require_admin(principal: Principal) -> None:
    if not principal.is_admin:
        raise ForbiddenError("Only administrators can manage the cache")


@router.get(
    "",
    response_model=CacheStatsResponse,
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def cache_stats(
    principal: Principal = Depends(require_principal),
    container: ServiceContainer = Depends(get_container),
) -> CacheStatsResponse:
    _require_admin(principal)
    return CacheStatsResponse(stats=await container.cache.stats())


@router.delete(
    "",
    response_model=CacheInvalidateResponse,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def invalidate_cache(
    pattern: str = Query(default=f"{RESPONSE_PREFIX}:*", max_length=200),
    principal: Principal = Depends(require_principal),
    container: ServiceContainer = Depends(get_container),
) -> CacheInvalidateResponse:
    _require_admin(principal)
    if not pattern.startswith(ALLOWED_PREFIXES):
        raise ValidationError(
            "Pattern must start with 'api:' or 'verify:'", field="pattern"
        )
    deleted = await container.cache.delete_by_pattern(pattern)
    logger.info("Cache invalidated by %s: %s (%d keys)", principal.id, pattern, deleted)
    return CacheInvalidateResponse(message=f"Invalidated entries matching {pattern}", deleted=deleted)
