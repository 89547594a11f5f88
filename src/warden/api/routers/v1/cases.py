"""Response case and approval endpoints.

- GET /v1/cases/{case_id} - Case view
- POST /v1/cases/{case_id}/cancel - Cancel and roll back
- POST /v1/cases/{case_id}/false-positive - Roll back a closed case
- POST /v1/approvals/{handle} - Approve or deny a gated step
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Body, Depends

from warden.api.dependencies import get_service
from warden.api.schemas.cases import (
    ApprovalDecisionRequest,
    ApprovalDecisionResponse,
    CaseActionRequest,
    CaseResponse,
    case_response,
)
from warden.api.schemas.errors import APIError
from warden.core.logging import get_logger
from warden.service import ThreatResponseService

logger = get_logger(__name__)

router = APIRouter(tags=["cases"])


@router.get(
    "/cases/{case_id}",
    response_model=CaseResponse,
    summary="Get a response case",
    responses={404: {"model": APIError, "description": "Case not found"}},
)
async def get_case(
    case_id: UUID,
    service: Annotated[ThreatResponseService, Depends(get_service)],
) -> CaseResponse:
    return case_response(await service.get_case(case_id))


@router.post(
    "/cases/{case_id}/cancel",
    response_model=CaseResponse,
    summary="Cancel a response case",
    description="Cancels a case that has not closed yet and rolls back its executed reversible steps.",
    responses={
        404: {"model": APIError, "description": "Case not found"},
        409: {"model": APIError, "description": "Case already closed"},
    },
)
async def cancel_case(
    case_id: UUID,
    service: Annotated[ThreatResponseService, Depends(get_service)],
    body: Annotated[CaseActionRequest | None, Body()] = None,
) -> CaseResponse:
    reason = body.reason if body else None
    logger.info("case_cancel_requested", case_id=str(case_id), reason=reason)
    case = await service.cancel_case(case_id, reason)
    return case_response(case)


@router.post(
    "/cases/{case_id}/false-positive",
    response_model=CaseResponse,
    summary="Mark a case as a false positive",
    description="""
    Rolls back every succeeded step of a CLOSED or FAILED case in reverse
    order. Steps without a compensating action are listed under
    `manual_remediation`.
    """,
    responses={
        404: {"model": APIError, "description": "Case not found"},
        409: {"model": APIError, "description": "Case is not closed or failed"},
    },
)
async def mark_false_positive(
    case_id: UUID,
    service: Annotated[ThreatResponseService, Depends(get_service)],
    body: Annotated[CaseActionRequest | None, Body()] = None,
) -> CaseResponse:
    reason = body.reason if body else None
    logger.info("false_positive_requested", case_id=str(case_id), reason=reason)
    case = await service.mark_false_positive(case_id, reason)
    return case_response(case)


@router.post(
    "/approvals/{handle}",
    response_model=ApprovalDecisionResponse,
    summary="Decide an approval gate",
    responses={404: {"model": APIError, "description": "No pending approval for handle"}},
)
async def submit_approval_decision(
    handle: str,
    request: ApprovalDecisionRequest,
    service: Annotated[ThreatResponseService, Depends(get_service)],
) -> ApprovalDecisionResponse:
    case_id = await service.submit_approval_decision(handle, request.to_decision())
    return ApprovalDecisionResponse(handle=handle, case_id=case_id, approved=request.approved)
