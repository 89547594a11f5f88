"""API schemas for response cases and operator decisions."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from warden.response.types import ApprovalDecision, ResponseCase


class ApprovalDecisionRequest(BaseModel):
    """Operator verdict on an approval gate."""

    approved: bool
    decided_by: str = Field(default="operator", min_length=1, max_length=200)
    reason: str = Field(default="", max_length=2000)

    def to_decision(self) -> ApprovalDecision:
        return ApprovalDecision(
            approved=self.approved,
            decided_by=self.decided_by,
            reason=self.reason,
        )


class ApprovalDecisionResponse(BaseModel):
    """Acknowledgement of a delivered decision."""

    handle: str
    case_id: UUID
    approved: bool


class CaseActionRequest(BaseModel):
    """Body for cancel and false-positive requests."""

    reason: str | None = Field(default=None, max_length=2000)


class ActionOutcomeResponse(BaseModel):
    step_id: str
    action_type: str
    result: str
    executed_at: datetime
    error: str | None
    attempts: int
    is_rollback: bool


class PendingApprovalResponse(BaseModel):
    handle: str
    step_id: str
    requested_at: datetime
    deadline: datetime
    escalated: bool


class CaseResponse(BaseModel):
    """Read-only view of a response case."""

    case_id: UUID
    assessment_id: UUID
    event_id: UUID
    state: str
    threat_level: str
    overall_score: int
    playbook_version: str | None
    mapped: bool
    plan: list[dict[str, Any]]
    executed_steps: list[ActionOutcomeResponse]
    pending_approval: PendingApprovalResponse | None
    manual_remediation: list[str]
    created_at: datetime
    closed_at: datetime | None
    close_reason: str | None


def case_response(case: ResponseCase) -> CaseResponse:
    """Build the API view of a case."""
    return CaseResponse.model_validate(case.to_dict())
