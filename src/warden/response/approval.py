"""Approval gateways.

A gateway delivers an approval request to humans and returns a handle.
Decisions come back separately through
``ResponseOrchestrator.submit_approval_decision(handle, decision)``, so the
gateway never blocks the case.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from uuid import UUID, uuid4

import httpx

from warden.core.logging import get_logger
from warden.observability.tracing import inject_trace_context
from warden.utils.exceptions import WardenError

if TYPE_CHECKING:
    from warden.response.types import ActionStep, ResponseCase

logger = get_logger(__name__)


class ApprovalRequestError(WardenError):
    """Raised when an approval request could not be delivered."""


@runtime_checkable
class ApprovalGateway(Protocol):
    """Interface for delivering approval requests."""

    async def request_approval(self, case: "ResponseCase", step: "ActionStep") -> str:
        """Deliver a request and return its handle.

        Raises:
            ApprovalRequestError: If the request could not be delivered.
        """
        ...


@dataclass(frozen=True)
class ApprovalRequest:
    """A delivered approval request."""

    handle: str
    case_id: UUID
    step_id: str
    action_type: str
    threat_level: str
    requested_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class InMemoryApprovalGateway:
    """Keeps approval requests in memory for operators (and tests) to read."""

    def __init__(self) -> None:
        self.requests: dict[str, ApprovalRequest] = {}

    async def request_approval(self, case: "ResponseCase", step: "ActionStep") -> str:
        handle = uuid4().hex
        self.requests[handle] = ApprovalRequest(
            handle=handle,
            case_id=case.case_id,
            step_id=step.id,
            action_type=step.action_type.value,
            threat_level=case.assessment.threat_level.value,
        )
        logger.info(
            "approval_requested",
            handle=handle,
            case_id=str(case.case_id),
            step_id=step.id,
            action_type=step.action_type.value,
        )
        return handle

    def handles_for(self, case_id: UUID) -> list[str]:
        """Handles issued for a case, oldest first."""
        return [h for h, r in self.requests.items() if r.case_id == case_id]


class WebhookApprovalGateway:
    """Posts approval requests to an HTTP endpoint (chat-ops bot, ticketing)."""

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self._headers = dict(headers or {})
        self._timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def request_approval(self, case: "ResponseCase", step: "ActionStep") -> str:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True

        handle = uuid4().hex
        body = {
            "handle": handle,
            "case_id": str(case.case_id),
            "assessment_id": str(case.assessment.assessment_id),
            "threat_level": case.assessment.threat_level.value,
            "overall_score": case.assessment.overall_score,
            "step": step.to_dict(),
            "timeout_seconds": step.timeout_policy.approval_timeout_seconds,
        }
        try:
            response = await self._client.post(
                self.url, json=body, headers=inject_trace_context(dict(self._headers))
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ApprovalRequestError(f"Approval request for step {step.id} failed: {e}") from e

        logger.info("approval_requested", handle=handle, case_id=str(case.case_id), step_id=step.id)
        return handle
