"""Error body returned by every failing endpoint."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorCode(str, Enum):
    """Stable ``error_code`` values clients can branch on."""

    UNAUTHORIZED = "unauthorized"

    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"

    INVALID_TRANSITION = "invalid_transition"
    UNKNOWN_APPROVAL = "unknown_approval"

    CONFIGURATION_ERROR = "configuration_error"
    INTERNAL_ERROR = "internal_error"
    SERVICE_UNAVAILABLE = "service_unavailable"


class APIError(BaseModel):
    """JSON error envelope.

    ``details`` carries the identifiers involved (case id, approval handle,
    transition states) and is omitted for internal errors outside debug.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error_code": "invalid_transition",
                "message": "Case 0b0c2e9e-6f1e-4c55-9a55-1f3f1e0c2a11 cannot move from closed to cancelled",
                "details": {
                    "case_id": "0b0c2e9e-6f1e-4c55-9a55-1f3f1e0c2a11",
                    "from_state": "closed",
                    "to_state": "cancelled",
                },
                "request_id": "5f1d6c1e-2b7a-4c1e-8f0e-3c9d2a1b4e5f",
                "timestamp": "2026-10-01T08:15:00Z",
            }
        }
    )

    error_code: str = Field(..., description="One of the ErrorCode values")
    message: str
    details: dict[str, Any] | None = None
    request_id: str = Field(..., description="Echo of the X-Request-ID response header")
    timestamp: datetime
