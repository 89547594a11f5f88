"""Liveness payload."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthResponse(BaseModel):
    """``degraded`` while draining for shutdown, ``unhealthy`` before start."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "version": "0.1.0",
                "timestamp": "2026-10-01T08:15:00Z",
                "accepting_events": True,
                "pipelines_in_flight": 3,
                "playbook_version": "2026-09-15",
            }
        }
    )

    status: HealthStatus
    version: str
    timestamp: datetime
    accepting_events: bool = Field(..., description="False once shutdown has begun")
    pipelines_in_flight: int = Field(..., ge=0, description="Events still being assessed or responded to")
    playbook_version: str | None = None
