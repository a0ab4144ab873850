"""
CertVerify Backend — Instance Registry Route
==============================================

    GET /api/instances    live API instances from the shared registry

ADMIN only. Listing refreshes the answering instance's own entry first, so
it always appears. 503 when the coordination store is unreachable.
"""

from fastapi import APIRouter, Depends

from certverify.auth import Principal, require_principal
from certverify.container import ServiceContainer, get_container
from certverify.exceptions import ForbiddenError
from certverify.schemas.common import ErrorResponse, InstancesResponse

router = APIRouter(prefix="/api/instances", tags=["Instances"])


@router.get(
    "",
    response_model=InstancesResponse,
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        503: {"model": ErrorResponse, "description": "Coordination store unavailable"},
    },
)
async def list_instances(
    principal: Principal = Depends(require_principal),
    container: ServiceContainer = Depends(get_container),
) -> InstancesResponse:
    if not principal.is_admin:
        raise ForbiddenError("Only administrators can list instances")
    entries = await container.instances.list_instances()
    return InstancesResponse(
        current_instance=container.instances.instance_id,
        count=len(entries),
        instances=entries,
    )
