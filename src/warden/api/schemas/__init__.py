"""API request and response schemas."""

from .cases import (
    ActionOutcomeResponse,
    ApprovalDecisionRequest,
    ApprovalDecisionResponse,
    CaseActionRequest,
    CaseResponse,
    PendingApprovalResponse,
    case_response,
)
from .errors import APIError, ErrorCode
from .events import (
    AssessmentResponse,
    EventAcceptedResponse,
    EventSubmitRequest,
    RiskFactorResponse,
    assessment_response,
)
from .health import HealthResponse, HealthStatus

__all__ = [
    "APIError",
    "ErrorCode",
    "HealthResponse",
    "HealthStatus",
    "EventSubmitRequest",
    "EventAcceptedResponse",
    "RiskFactorResponse",
    "AssessmentResponse",
    "assessment_response",
    "ApprovalDecisionRequest",
    "ApprovalDecisionResponse",
    "CaseActionRequest",
    "ActionOutcomeResponse",
    "PendingApprovalResponse",
    "CaseResponse",
    "case_response",
]
