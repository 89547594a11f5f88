"""Event ingestion and assessment endpoints.

- POST /v1/events - Submit an event for assessment and response
- GET /v1/assessments/{assessment_id} - Get a finalized assessment
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from warden.api.dependencies import get_service
from warden.api.schemas.errors import APIError, ErrorCode
from warden.api.schemas.events import (
    AssessmentResponse,
    EventAcceptedResponse,
    EventSubmitRequest,
    assessment_response,
)
from warden.core.logging import get_logger
from warden.service import ThreatResponseService

logger = get_logger(__name__)

router = APIRouter(tags=["events"])


@router.post(
    "/events",
    response_model=EventAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit an event",
    description="""
    Accept one authentication attempt, HTTP request or data-access event.

    Assessment and response run asynchronously. Poll
    `/v1/assessments/{assessment_id}` for the verdict and the case id.
    """,
    responses={
        202: {"description": "Event accepted"},
        422: {"model": APIError, "description": "Validation error"},
        503: {"model": APIError, "description": "Service shutting down"},
    },
)
async def submit_event(
    request: EventSubmitRequest,
    service: Annotated[ThreatResponseService, Depends(get_service)],
) -> EventAcceptedResponse:
    event = request.to_event()
    assessment_id = await service.submit_event(event)
    logger.info(
        "event_accepted",
        event_id=str(event.id),
        event_kind=event.kind.value,
        assessment_id=str(assessment_id),
    )
    return EventAcceptedResponse(assessment_id=assessment_id, event_id=event.id)


@router.get(
    "/assessments/{assessment_id}",
    response_model=AssessmentResponse,
    summary="Get an assessment",
    responses={
        200: {"description": "Finalized assessment"},
        404: {"model": APIError, "description": "Unknown or still being computed"},
    },
)
async def get_assessment(
    assessment_id: UUID,
    service: Annotated[ThreatResponseService, Depends(get_service)],
) -> AssessmentResponse:
    assessment = await service.get_assessment(assessment_id)
    if assessment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error_code": ErrorCode.NOT_FOUND.value,
                "message": f"Assessment not found: {assessment_id}",
            },
        )

    case = await service.case_for_assessment(assessment_id)
    return assessment_response(assessment, case.case_id if case else None)
