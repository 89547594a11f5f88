"""Unit tests for approval gateways."""

import json

import httpx
import pytest

from warden.detection.types import ThreatLevel
from warden.response.approval import (
    ApprovalGateway,
    ApprovalRequestError,
    InMemoryApprovalGateway,
    WebhookApprovalGateway,
)
from warden.response.types import ActionType, OnTimeout, ResponseCase


@pytest.fixture
def case(auth_event, assessment_factory):
    return ResponseCase(
        assessment=assessment_factory(auth_event, ThreatLevel.HIGH),
        event=auth_event,
    )


@pytest.fixture
def step(step_factory):
    return step_factory(
        "block",
        ActionType.BLOCK_IP,
        requires_approval=True,
        timeout=60.0,
        on_timeout=OnTimeout.ESCALATE,
    )


class TestInMemoryApprovalGateway:
    """Tests for InMemoryApprovalGateway."""

    @pytest.mark.asyncio
    async def test_request_returns_unique_handles(self, case, step):
        gateway = InMemoryApprovalGateway()

        first = await gateway.request_approval(case, step)
        second = await gateway.request_approval(case, step)

        assert first != second
        assert gateway.handles_for(case.case_id) == [first, second]
        request = gateway.requests[first]
        assert request.step_id == "block"
        assert request.action_type == "block_ip"
        assert request.threat_level == "high"

    def test_protocol(self):
        assert isinstance(InMemoryApprovalGateway(), ApprovalGateway)


class TestWebhookApprovalGateway:
    """Tests for WebhookApprovalGateway."""

    @pytest.mark.asyncio
    async def test_posts_request(self, case, step):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        gateway = WebhookApprovalGateway("https://chatops.example/approvals", client=client)

        handle = await gateway.request_approval(case, step)

        assert seen[0]["handle"] == handle
        assert seen[0]["case_id"] == str(case.case_id)
        assert seen[0]["step"]["id"] == "block"
        assert seen[0]["timeout_seconds"] == 60.0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_status_raises(self, case, step):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        gateway = WebhookApprovalGateway("https://chatops.example/approvals", client=client)

        with pytest.raises(ApprovalRequestError):
            await gateway.request_approval(case, step)
        await client.aclose()
