"""
CertVerify Backend — Shared Response Schemas
==============================================

What:  Error envelope, health, CSRF token, cache-admin and instance
       registry response models.
Why:   Clients parse one envelope shape everywhere: `success` first, then
       either the resource or `message` + `errors`.

Error example:
    {
        "success": false,
        "error": "conflict",
        "message": "Certificate is already revoked",
        "requestId": "a1b2c3d4"
    }
"""

from typing import Any, Dict, List, Optional

from pydantic import Field

from certverify.schemas.certificate import CamelModel


class ErrorResponse(CamelModel):
    success: bool = False
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable, actionable description")
    errors: Optional[List[Dict[str, Any]]] = Field(default=None, description="Per-field problems")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")
    retry_after: Optional[int] = None


class HealthResponse(CamelModel):
    status: str = Field(description="healthy, degraded or unhealthy")
    version: str
    instance_id: str
    database: str = Field(description="connected or disconnected")
    store: str = Field(description="connected or disconnected")
    store_circuit: str = Field(description="closed, open or half_open")
    uptime_seconds: float


class CsrfTokenResponse(CamelModel):
    success: bool = True
    csrf_token: str
    expires_in: int


class CacheStatsResponse(CamelModel):
    success: bool = True
    stats: Dict[str, Any]


class CacheInvalidateResponse(CamelModel):
    success: bool = True
    message: str
    deleted: int


class InstancesResponse(CamelModel):
    success: bool = True
    current_instance: str = Field(description="Instance that answered this request")
    count: int
    instances: List[Dict[str, Any]] = Field(description="Live registry entries, sorted by id")
