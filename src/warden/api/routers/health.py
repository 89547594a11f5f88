"""Health check and metrics endpoints."""

from datetime import UTC, datetime

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST

from warden.api.schemas.health import HealthResponse, HealthStatus
from warden.observability.metrics import get_metrics

router = APIRouter(tags=["health"])

# Application version - should come from package metadata in production
APP_VERSION = "0.1.0"


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Basic health check",
    description="Returns liveness and ingestion status. No authentication required.",
)
async def health_check(request: Request) -> HealthResponse:
    """Liveness check.

    DEGRADED while the service is draining, UNHEALTHY if it never started.
    """
    service = getattr(request.app.state, "service", None)
    if service is None:
        return HealthResponse(
            status=HealthStatus.UNHEALTHY,
            version=APP_VERSION,
            timestamp=datetime.now(UTC),
            accepting_events=False,
            pipelines_in_flight=0,
        )

    return HealthResponse(
        status=HealthStatus.HEALTHY if service.accepting else HealthStatus.DEGRADED,
        version=APP_VERSION,
        timestamp=datetime.now(UTC),
        accepting_events=service.accepting,
        pipelines_in_flight=service.in_flight,
        playbook_version=service.orchestrator.playbooks.current.version,
    )


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Prometheus exposition format. No authentication required.",
    response_class=Response,
)
async def metrics() -> Response:
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)
