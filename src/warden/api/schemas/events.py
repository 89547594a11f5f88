"""API schemas for event ingestion and assessments.

Kept separate from the domain dataclasses so the wire format can be
versioned independently.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from warden.detection.types import Event, EventKind, ThreatAssessment

# =============================================================================
# Request Schemas
# =============================================================================


class EventSubmitRequest(BaseModel):
    """Request body for submitting an event.

    Example:
        {
            "kind": "auth_attempt",
            "subject_identity": "alice@example.com",
            "source_address": "203.0.113.7",
            "raw_attributes": {"success": false}
        }
    """

    kind: EventKind = Field(..., description="Kind of activity")
    subject_identity: str | None = Field(default=None, max_length=500)
    source_address: str | None = Field(default=None, max_length=100)
    user_agent: str | None = Field(default=None, max_length=2000)
    timestamp: datetime | None = Field(
        default=None, description="When the activity happened (defaults to now)"
    )
    raw_attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def ensure_timezone(cls, v: datetime | None) -> datetime | None:
        """Treat naive timestamps as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    def to_event(self) -> Event:
        return Event(
            kind=self.kind,
            subject_identity=self.subject_identity,
            source_address=self.source_address,
            user_agent=self.user_agent,
            timestamp=self.timestamp or datetime.now(UTC),
            raw_attributes=self.raw_attributes,
        )


# =============================================================================
# Response Schemas
# =============================================================================


class EventAcceptedResponse(BaseModel):
    """Response for an accepted event."""

    assessment_id: UUID
    event_id: UUID


class RiskFactorResponse(BaseModel):
    """One contributing risk factor."""

    type: str
    severity: str
    score: int
    source_analyzer: str
    description: str


class AssessmentResponse(BaseModel):
    """A finalized threat assessment."""

    assessment_id: UUID
    event_id: UUID
    event_kind: str
    overall_score: int
    threat_level: str
    factors: list[RiskFactorResponse]
    computed_at: datetime
    analyzers_run: int
    analyzers_failed: int
    timed_out: list[str]
    case_id: UUID | None = Field(default=None, description="Response case, once opened")


def assessment_response(assessment: ThreatAssessment, case_id: UUID | None) -> AssessmentResponse:
    """Build the API view of an assessment."""
    return AssessmentResponse(
        assessment_id=assessment.assessment_id,
        event_id=assessment.event_id,
        event_kind=assessment.event_kind.value,
        overall_score=assessment.overall_score,
        threat_level=assessment.threat_level.value,
        factors=[RiskFactorResponse(**f.to_dict()) for f in assessment.factors],
        computed_at=assessment.computed_at,
        analyzers_run=assessment.analyzers_run,
        analyzers_failed=assessment.analyzers_failed,
        timed_out=list(assessment.timed_out),
        case_id=case_id,
    )
