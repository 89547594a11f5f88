"""FastAPI dependencies for API endpoints."""

from fastapi import Request

from warden.core.exceptions import ServiceUnavailableError
from warden.service import ThreatResponseService

__all__ = ["get_service"]


def get_service(request: Request) -> ThreatResponseService:
    """Get the threat response service attached to the application.

    Raises:
        ServiceUnavailableError: If the service has not been started.
    """
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise ServiceUnavailableError("Threat response service is not running")
    return service
