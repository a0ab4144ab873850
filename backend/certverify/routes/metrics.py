"""GET /metrics: Prometheus exposition of the app's private registry."""

from fastapi import APIRouter, Depends, Response

from certverify.container import ServiceContainer, get_container

router = APIRouter(tags=["Metrics"])


@router.get("/metrics", include_in_schema=False)
async def metrics(container: ServiceContainer = Depends(get_container)) -> Response:
    return Response(content=container.metrics.render(), media_type=container.metrics.content_type)
