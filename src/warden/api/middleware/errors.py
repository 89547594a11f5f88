"""Translate domain exceptions into ``APIError`` responses."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from warden.api.schemas.errors import APIError, ErrorCode
from warden.core.exceptions import (
    CaseNotFoundError,
    InvalidTransitionError,
    ServiceUnavailableError,
    UnknownApprovalHandleError,
)
from warden.core.logging import get_logger
from warden.utils.exceptions import ConfigurationError

logger = get_logger(__name__)

# Checked in order, first isinstance match wins.
EXCEPTION_MAP: dict[type[Exception], tuple[int, str]] = {
    CaseNotFoundError: (404, ErrorCode.NOT_FOUND.value),
    UnknownApprovalHandleError: (404, ErrorCode.UNKNOWN_APPROVAL.value),
    InvalidTransitionError: (409, ErrorCode.INVALID_TRANSITION.value),
    ServiceUnavailableError: (503, ErrorCode.SERVICE_UNAVAILABLE.value),
    ConfigurationError: (422, ErrorCode.CONFIGURATION_ERROR.value),
    ValidationError: (422, ErrorCode.VALIDATION_ERROR.value),
}


def _error_details(exc: Exception) -> dict[str, Any] | None:
    if isinstance(exc, CaseNotFoundError):
        return {"case_id": str(exc.case_id)}
    if isinstance(exc, UnknownApprovalHandleError):
        return {"handle": exc.handle}
    if isinstance(exc, InvalidTransitionError):
        return {"case_id": str(exc.case_id), "from_state": exc.from_state, "to_state": exc.to_state}
    if isinstance(exc, ValidationError):
        return {"errors": exc.errors(include_url=False, include_context=False)}
    return None


def error_response(
    request: Request,
    status_code: int,
    error_code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Render an ``APIError`` body, tagged with the current request id."""
    request_id = str(getattr(request.state, "request_id", "unknown"))
    body = APIError(
        error_code=error_code,
        message=message,
        details=details,
        request_id=request_id,
        timestamp=datetime.now(UTC),
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers={"X-Request-ID": request_id},
    )


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catches anything a route raises.

    Mapped exceptions keep their message and identifying details. Anything
    else is a 500 whose message never echoes the exception; in debug mode
    the exception type is added to ``details``.
    """

    def __init__(self, app, debug: bool = False):
        super().__init__(app)
        self.debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            for exc_type, (status_code, error_code) in EXCEPTION_MAP.items():
                if isinstance(exc, exc_type):
                    message = "Request validation failed" if isinstance(exc, ValidationError) else str(exc)
                    return error_response(
                        request, status_code, error_code, message, _error_details(exc)
                    )

            logger.error(
                "unhandled_api_error",
                path=request.url.path,
                error_type=type(exc).__name__,
                exc_info=exc,
            )
            return error_response(
                request,
                500,
                ErrorCode.INTERNAL_ERROR.value,
                "Internal server error",
                {"type": type(exc).__name__} if self.debug else None,
            )
