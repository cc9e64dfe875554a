"""
Health check routes.
"""

from fastapi import APIRouter
from fastapi.responses import Response

from jobflow import __version__
from jobflow.api.deps import JobServiceDep, MetricsDep
from jobflow.types.api import HealthResponse
from jobflow.types.events import utcnow

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API, the database and the idempotency store.",
)
async def health_check(service: JobServiceDep) -> HealthResponse:
    """
    Perform a health check.

    Returns:
        HealthResponse with service status.
    """
    db_status = "healthy" if await service.store.ping() else "unhealthy"
    guard_status = "healthy" if await service.guard.ping() else "unhealthy"
    healthy = db_status == "healthy" and guard_status == "healthy"

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        database=db_status,
        idempotency_guard=guard_status,
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(service: JobServiceDep) -> dict:
    """Kubernetes readiness probe endpoint."""
    return {"ready": await service.store.ping()}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes liveness probe endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics(collector: MetricsDep) -> Response:
    return Response(
        content=collector.get_metrics(),
        media_type=collector.get_content_type(),
    )
