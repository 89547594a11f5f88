"""Unit tests for rebuilding cases from audit records."""

import pytest
import pytest_asyncio

from warden.audit.types import AuditRecordType
from warden.detection.types import EventKind, ThreatLevel
from warden.response import ActionType, CaseState, ReplayError, rebuild_case

CRITICAL_AUTH = (EventKind.AUTH_ATTEMPT, ThreatLevel.CRITICAL)


@pytest_asyncio.fixture
async def closed_case_records(
    build_orchestrator, playbook_factory, step_factory, executor, audit_store,
    auth_event, critical_assessment,
):
    """Records of a case with a retried step, a failure and a rollback."""
    executor.fail_times[ActionType.BLOCK_IP] = 1
    executor.fail_times[ActionType.NOTIFY] = 10
    playbook = playbook_factory(
        {
            CRITICAL_AUTH: [
                step_factory("lock", ActionType.LOCK_ACCOUNT, rollback=ActionType.UNLOCK_ACCOUNT),
                step_factory("block", ActionType.BLOCK_IP, rollback=ActionType.UNBLOCK_IP),
                step_factory("notify", ActionType.NOTIFY),
            ]
        }
    )
    orchestrator = build_orchestrator(playbook)
    case = await orchestrator.handle_assessment(critical_assessment, auth_event)
    await orchestrator.mark_false_positive(case.case_id)
    return case, await audit_store.list_records(case.case_id)


class TestRebuildCase:
    """Tests for rebuild_case."""

    @pytest.mark.asyncio
    async def test_full_stream_matches_live_case(self, closed_case_records):
        case, records = closed_case_records

        rebuilt = rebuild_case(records)

        assert rebuilt.case_id == case.case_id
        assert rebuilt.state == CaseState.ROLLED_BACK
        assert rebuilt.to_dict() == case.to_dict()
        assert rebuilt.next_sequence == len(records)

    @pytest.mark.asyncio
    async def test_every_prefix_is_a_prefix_of_outcomes(self, closed_case_records):
        case, records = closed_case_records
        full = [o.to_dict() for o in case.executed_steps]
        opened = next(
            i for i, r in enumerate(records) if r.record_type == AuditRecordType.CASE_OPENED
        )

        for end in range(opened + 1, len(records) + 1):
            partial = rebuild_case(records[:end])
            outcomes = [o.to_dict() for o in partial.executed_steps]
            assert outcomes == full[: len(outcomes)]

    @pytest.mark.asyncio
    async def test_record_order_does_not_matter(self, closed_case_records):
        case, records = closed_case_records
        assert rebuild_case(reversed(records)).to_dict() == case.to_dict()

    def test_empty_stream_rejected(self):
        with pytest.raises(ReplayError):
            rebuild_case([])

    @pytest.mark.asyncio
    async def test_stream_without_assessment_rejected(self, closed_case_records):
        _, records = closed_case_records
        with pytest.raises(ReplayError):
            rebuild_case(records[1:])
