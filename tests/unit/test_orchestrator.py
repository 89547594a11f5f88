"""Unit tests for the response orchestrator.

Covers plan execution, approval gates, retries, failure policies,
rollback, cancellation and resumption from the audit log.
"""

import asyncio
from uuid import uuid4

import pytest

from warden.audit.types import AuditRecordType
from warden.core.exceptions import (
    CaseNotFoundError,
    InvalidTransitionError,
    UnknownApprovalHandleError,
)
from warden.detection.types import EventKind, ThreatLevel
from warden.response import (
    INTERRUPTED,
    ActionResult,
    ActionType,
    ApprovalDecision,
    ApprovalRequestError,
    CaseState,
    ExecutorRegistry,
    FailurePolicy,
    OnTimeout,
    PlaybookRegistry,
    ResponseOrchestrator,
    StepResult,
    case_id_for,
)

CRITICAL_AUTH = (EventKind.AUTH_ATTEMPT, ThreatLevel.CRITICAL)


# =============================================================================
# Helpers
# =============================================================================


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


async def transitions(store, case_id) -> list[str]:
    return [
        r.payload["to_state"]
        for r in await store.list_records(case_id)
        if r.record_type == AuditRecordType.STATE_TRANSITION
    ]


async def records_of(store, case_id, record_type) -> list:
    return [r for r in await store.list_records(case_id) if r.record_type == record_type]


class BlockingExecutor:
    """Executor whose forward actions never complete."""

    def __init__(self):
        self.started = asyncio.Event()

    async def execute(self, action_type, event, case, *, parameters=None):
        self.started.set()
        await asyncio.Event().wait()

    async def rollback(self, action_type, event, case, *, parameters=None):
        return ActionResult(success=True)


class FailingGateway:
    async def request_approval(self, case, step):
        raise ApprovalRequestError("chat-ops bot offline")


class GatedExecutor:
    """Executor whose forward actions wait until ``release`` is set."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls: list[tuple[str, ActionType]] = []

    async def execute(self, action_type, event, case, *, parameters=None):
        self.calls.append(("execute", action_type))
        self.started.set()
        await self.release.wait()
        return ActionResult(success=True)

    async def rollback(self, action_type, event, case, *, parameters=None):
        self.calls.append(("rollback", action_type))
        return ActionResult(success=True)


class StallingRollbackExecutor:
    """Forward actions succeed; rollbacks of the given types never complete."""

    def __init__(self, stall_on):
        self.stall_on = frozenset(stall_on)
        self.stalled = asyncio.Event()
        self.rolled_back: list[ActionType] = []

    async def execute(self, action_type, event, case, *, parameters=None):
        return ActionResult(success=True)

    async def rollback(self, action_type, event, case, *, parameters=None):
        if action_type in self.stall_on:
            self.stalled.set()
            await asyncio.Event().wait()
        self.rolled_back.append(action_type)
        return ActionResult(success=True)


async def kill(task: asyncio.Task) -> None:
    """Cancel a task the way a process crash would stop it mid-await."""
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.fixture
def event_and_assessment(auth_event, critical_assessment):
    return auth_event, critical_assessment


# =============================================================================
# Plan execution
# =============================================================================


class TestPlanExecution:
    """Tests for straight-through plan execution."""

    @pytest.mark.asyncio
    async def test_critical_lock_closes_without_approval(
        self, build_orchestrator, playbook_factory, step_factory, executor, audit_store,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {CRITICAL_AUTH: [step_factory("lock", ActionType.LOCK_ACCOUNT)]}
        )
        orchestrator = build_orchestrator(playbook)
        event, assessment = event_and_assessment

        case = await orchestrator.handle_assessment(assessment, event)

        assert case.state == CaseState.CLOSED
        assert len(case.executed_steps) == 1
        assert case.executed_steps[0].result == StepResult.SUCCEEDED
        assert case.executed_steps[0].attempts == 1
        assert executor.executed() == [ActionType.LOCK_ACCOUNT]
        states = await transitions(audit_store, case.case_id)
        assert states == ["executing", "closed"]
        assert "awaiting_approval" not in states

    @pytest.mark.asyncio
    async def test_steps_run_in_plan_order(
        self, build_orchestrator, playbook_factory, step_factory, executor,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory("lock", ActionType.LOCK_ACCOUNT),
                    step_factory("block", ActionType.BLOCK_IP),
                    step_factory("notify", ActionType.NOTIFY),
                ]
            }
        )
        case = await build_orchestrator(playbook).handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )

        assert [o.step_id for o in case.executed_steps] == ["lock", "block", "notify"]
        assert executor.executed() == [
            ActionType.LOCK_ACCOUNT,
            ActionType.BLOCK_IP,
            ActionType.NOTIFY,
        ]

    @pytest.mark.asyncio
    async def test_unmapped_pair_closes_log_only(
        self, build_orchestrator, executor, audit_store, event_and_assessment
    ):
        orchestrator = build_orchestrator()
        event, assessment = event_and_assessment

        case = await orchestrator.handle_assessment(assessment, event)

        assert case.state == CaseState.CLOSED
        assert case.close_reason == "log_only_default"
        assert not case.mapped
        assert case.executed_steps == []
        assert executor.calls == []
        assert len(await records_of(audit_store, case.case_id, AuditRecordType.LOG_ONLY_DEFAULT)) == 1

    @pytest.mark.asyncio
    async def test_empty_plan_closes(
        self, build_orchestrator, playbook_factory, event_and_assessment
    ):
        orchestrator = build_orchestrator(playbook_factory({CRITICAL_AUTH: []}))
        case = await orchestrator.handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )
        assert case.state == CaseState.CLOSED
        assert case.close_reason == "plan_completed"

    @pytest.mark.asyncio
    async def test_duplicate_assessment_returns_existing_case(
        self, build_orchestrator, playbook_factory, step_factory, executor,
        event_and_assessment,
    ):
        playbook = playbook_factory({CRITICAL_AUTH: [step_factory("lock", ActionType.LOCK_ACCOUNT)]})
        orchestrator = build_orchestrator(playbook)
        event, assessment = event_and_assessment

        first = await orchestrator.handle_assessment(assessment, event)
        second = await orchestrator.open_case(assessment, event)

        assert second is first
        assert len(orchestrator.cases()) == 1
        assert executor.executed() == [ActionType.LOCK_ACCOUNT]

    @pytest.mark.asyncio
    async def test_case_keeps_plan_after_reload(
        self, build_orchestrator, playbook_factory, step_factory, event_and_assessment
    ):
        playbook = playbook_factory(
            {CRITICAL_AUTH: [step_factory("block", ActionType.BLOCK_IP, requires_approval=True)]}
        )
        orchestrator = build_orchestrator(playbook)
        event, assessment = event_and_assessment

        case = await orchestrator.open_case(assessment, event)
        orchestrator.playbooks.swap(playbook_factory({}, version="test-2"))

        assert [s.id for s in case.plan] == ["block"]
        assert case.playbook_version == "test-1"

    @pytest.mark.asyncio
    async def test_audit_sequence_is_contiguous_and_keys_unique(
        self, build_orchestrator, playbook_factory, step_factory, audit_store,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory("lock", ActionType.LOCK_ACCOUNT),
                    step_factory("notify", ActionType.NOTIFY),
                ]
            }
        )
        case = await build_orchestrator(playbook).handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )

        records = await audit_store.list_records(case.case_id)
        assert [r.sequence for r in records] == list(range(len(records)))
        assert len({r.key for r in records}) == len(records)
        assert records[0].record_type == AuditRecordType.ASSESSMENT_RECORDED
        assert records[1].record_type == AuditRecordType.CASE_OPENED


# =============================================================================
# Retries and failure policies
# =============================================================================


class TestFailurePolicies:
    """Tests for executor retries, CONTINUE and ABORT."""

    @pytest.mark.asyncio
    async def test_transient_failure_retried(
        self, build_orchestrator, playbook_factory, step_factory, executor,
        event_and_assessment,
    ):
        executor.fail_times[ActionType.BLOCK_IP] = 2
        playbook = playbook_factory({CRITICAL_AUTH: [step_factory("block", ActionType.BLOCK_IP)]})

        case = await build_orchestrator(playbook).handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )

        outcome = case.forward_outcome("block")
        assert outcome.result == StepResult.SUCCEEDED
        assert outcome.attempts == 3
        assert case.state == CaseState.CLOSED

    @pytest.mark.asyncio
    async def test_continue_after_exhausted_retries(
        self, build_orchestrator, playbook_factory, step_factory, executor,
        event_and_assessment,
    ):
        executor.fail_times[ActionType.NOTIFY] = 10
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory("notify", ActionType.NOTIFY),
                    step_factory("block", ActionType.BLOCK_IP),
                ]
            }
        )

        case = await build_orchestrator(playbook).handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )

        notify = case.forward_outcome("notify")
        assert notify.result == StepResult.FAILED
        assert notify.attempts == 3
        assert notify.error == "notify unavailable"
        assert case.forward_outcome("block").result == StepResult.SUCCEEDED
        assert case.state == CaseState.CLOSED

    @pytest.mark.asyncio
    async def test_abort_fails_case_and_skips_rest(
        self, build_orchestrator, playbook_factory, step_factory, executor,
        event_and_assessment,
    ):
        executor.fail_times[ActionType.LOCK_ACCOUNT] = 10
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory(
                        "lock", ActionType.LOCK_ACCOUNT, failure_policy=FailurePolicy.ABORT
                    ),
                    step_factory("notify", ActionType.NOTIFY),
                ]
            }
        )

        case = await build_orchestrator(playbook).handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )

        assert case.state == CaseState.FAILED
        assert case.forward_outcome("lock").result == StepResult.FAILED
        assert case.forward_outcome("notify").result == StepResult.SKIPPED
        assert ActionType.NOTIFY not in executor.executed()

    @pytest.mark.asyncio
    async def test_missing_executor_fails_without_retry(
        self, approvals, audit_writer, orchestrator_config, playbook_factory, step_factory,
        event_and_assessment,
    ):
        orchestrator = ResponseOrchestrator(
            playbooks=PlaybookRegistry(
                playbook_factory({CRITICAL_AUTH: [step_factory("isolate", ActionType.ISOLATE)]})
            ),
            executors=ExecutorRegistry(),
            approvals=approvals,
            audit=audit_writer,
            config=orchestrator_config,
        )

        case = await orchestrator.handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )

        outcome = case.forward_outcome("isolate")
        assert outcome.result == StepResult.FAILED
        assert outcome.attempts == 1
        assert outcome.error == "no executor registered"
        assert case.state == CaseState.CLOSED


# =============================================================================
# Approval gates
# =============================================================================


class TestApprovalGates:
    """Tests for approval-gated steps."""

    @pytest.mark.asyncio
    async def test_deny_on_timeout(
        self, build_orchestrator, playbook_factory, step_factory, executor, audit_store,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory(
                        "block",
                        ActionType.BLOCK_IP,
                        requires_approval=True,
                        timeout=0.05,
                        on_timeout=OnTimeout.DENY,
                    ),
                    step_factory("notify", ActionType.NOTIFY),
                ]
            }
        )

        case = await build_orchestrator(playbook).handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )

        assert case.state == CaseState.CLOSED
        assert case.close_reason == "approval_denied"
        assert case.forward_outcome("block").result == StepResult.SKIPPED
        assert case.forward_outcome("notify").result == StepResult.SKIPPED
        assert executor.calls == []
        assert await transitions(audit_store, case.case_id) == [
            "executing",
            "awaiting_approval",
            "denied",
            "closed",
        ]
        decided = await records_of(audit_store, case.case_id, AuditRecordType.APPROVAL_DECIDED)
        assert decided[0].payload["decision"]["decided_by"] == "system"

    @pytest.mark.asyncio
    async def test_approved_step_executes(
        self, build_orchestrator, playbook_factory, step_factory, executor, audit_store,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {CRITICAL_AUTH: [step_factory("block", ActionType.BLOCK_IP, requires_approval=True)]}
        )
        orchestrator = build_orchestrator(playbook)
        event, assessment = event_and_assessment

        task = asyncio.create_task(orchestrator.handle_assessment(assessment, event))
        await wait_until(lambda: orchestrator.pending_handles())
        handle = orchestrator.pending_handles()[0]
        case = await orchestrator.case_for_assessment(assessment.assessment_id)
        assert case.state == CaseState.AWAITING_APPROVAL
        assert case.pending_approval.handle == handle

        case_id = await orchestrator.submit_approval_decision(
            handle, ApprovalDecision(approved=True, decided_by="analyst@example.com")
        )
        await task

        assert case_id == case.case_id
        assert case.state == CaseState.CLOSED
        assert case.pending_approval is None
        assert executor.executed() == [ActionType.BLOCK_IP]
        assert await transitions(audit_store, case.case_id) == [
            "executing",
            "awaiting_approval",
            "approved",
            "executing",
            "closed",
        ]

    @pytest.mark.asyncio
    async def test_operator_denial(
        self, build_orchestrator, playbook_factory, step_factory, executor,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {CRITICAL_AUTH: [step_factory("block", ActionType.BLOCK_IP, requires_approval=True)]}
        )
        orchestrator = build_orchestrator(playbook)
        event, assessment = event_and_assessment

        task = asyncio.create_task(orchestrator.handle_assessment(assessment, event))
        await wait_until(lambda: orchestrator.pending_handles())
        await orchestrator.submit_approval_decision(
            orchestrator.pending_handles()[0], ApprovalDecision(approved=False, reason="known scanner")
        )
        case = await task

        assert case.state == CaseState.CLOSED
        assert case.forward_outcome("block").result == StepResult.SKIPPED
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_escalate_then_deny(
        self, build_orchestrator, playbook_factory, step_factory, executor, audit_store,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory(
                        "block",
                        ActionType.BLOCK_IP,
                        requires_approval=True,
                        timeout=0.05,
                        on_timeout=OnTimeout.ESCALATE,
                    )
                ]
            }
        )

        case = await build_orchestrator(playbook).handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )

        assert executor.executed() == [ActionType.ESCALATE]
        assert case.state == CaseState.CLOSED
        assert case.forward_outcome("block").result == StepResult.SKIPPED
        decided = await records_of(audit_store, case.case_id, AuditRecordType.APPROVAL_DECIDED)
        assert [r.attempt for r in decided] == [1, 2]
        assert decided[0].payload["escalation"] is True

    @pytest.mark.asyncio
    async def test_approval_after_escalation(
        self, build_orchestrator, playbook_factory, step_factory, executor,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory(
                        "block",
                        ActionType.BLOCK_IP,
                        requires_approval=True,
                        timeout=0.2,
                        on_timeout=OnTimeout.ESCALATE,
                    )
                ]
            }
        )
        orchestrator = build_orchestrator(playbook)
        event, assessment = event_and_assessment

        task = asyncio.create_task(orchestrator.handle_assessment(assessment, event))
        await wait_until(lambda: ActionType.ESCALATE in executor.executed())
        case = await orchestrator.case_for_assessment(assessment.assessment_id)
        await wait_until(lambda: case.pending_approval is not None and case.pending_approval.escalated)

        await orchestrator.submit_approval_decision(
            case.pending_approval.handle, ApprovalDecision(approved=True)
        )
        await task

        assert case.state == CaseState.CLOSED
        assert executor.executed() == [ActionType.ESCALATE, ActionType.BLOCK_IP]

    @pytest.mark.asyncio
    async def test_request_failure_fails_closed(
        self, executor, audit_writer, orchestrator_config, playbook_factory, step_factory,
        event_and_assessment,
    ):
        registry = ExecutorRegistry()
        registry.set_default(executor)
        orchestrator = ResponseOrchestrator(
            playbooks=PlaybookRegistry(
                playbook_factory(
                    {CRITICAL_AUTH: [step_factory("block", ActionType.BLOCK_IP, requires_approval=True)]}
                )
            ),
            executors=registry,
            approvals=FailingGateway(),
            audit=audit_writer,
            config=orchestrator_config,
        )

        case = await orchestrator.handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )

        assert case.state == CaseState.CLOSED
        assert case.close_reason == "approval_denied"
        assert case.forward_outcome("block").result == StepResult.SKIPPED
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_unknown_handle(self, build_orchestrator):
        with pytest.raises(UnknownApprovalHandleError):
            await build_orchestrator().submit_approval_decision(
                "nope", ApprovalDecision(approved=True)
            )


# =============================================================================
# Rollback and cancellation
# =============================================================================


class TestRollback:
    """Tests for false positives and cancellation."""

    @pytest.mark.asyncio
    async def test_false_positive_rolls_back_in_reverse(
        self, build_orchestrator, playbook_factory, step_factory, executor,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory("block", ActionType.BLOCK_IP, rollback=ActionType.UNBLOCK_IP),
                    step_factory(
                        "lock", ActionType.LOCK_ACCOUNT, rollback=ActionType.UNLOCK_ACCOUNT
                    ),
                    step_factory("notify", ActionType.NOTIFY),
                ]
            }
        )
        orchestrator = build_orchestrator(playbook)
        case = await orchestrator.handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )

        await orchestrator.mark_false_positive(case.case_id, "test traffic")

        assert case.state == CaseState.ROLLED_BACK
        assert case.close_reason == "test traffic"
        assert executor.executed("rollback") == [ActionType.UNLOCK_ACCOUNT, ActionType.UNBLOCK_IP]
        assert case.manual_remediation == ["notify"]

        rolled_back = {o.step_id for o in case.executed_steps if o.result == StepResult.ROLLED_BACK}
        reversible = {s.id for s in case.plan if s.reversible}
        assert rolled_back == reversible

    @pytest.mark.asyncio
    async def test_false_positive_on_failed_case(
        self, build_orchestrator, playbook_factory, step_factory, executor,
        event_and_assessment,
    ):
        executor.fail_times[ActionType.ISOLATE] = 10
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory(
                        "lock", ActionType.LOCK_ACCOUNT, rollback=ActionType.UNLOCK_ACCOUNT
                    ),
                    step_factory(
                        "isolate",
                        ActionType.ISOLATE,
                        rollback=ActionType.RELEASE_ISOLATION,
                        failure_policy=FailurePolicy.ABORT,
                    ),
                ]
            }
        )
        orchestrator = build_orchestrator(playbook)
        case = await orchestrator.handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )
        assert case.state == CaseState.FAILED

        await orchestrator.mark_false_positive(case.case_id)

        assert case.state == CaseState.ROLLED_BACK
        # Only the step that succeeded is compensated
        assert executor.executed("rollback") == [ActionType.UNLOCK_ACCOUNT]

    @pytest.mark.asyncio
    async def test_false_positive_twice_rejected(
        self, build_orchestrator, playbook_factory, step_factory, event_and_assessment
    ):
        orchestrator = build_orchestrator(
            playbook_factory({CRITICAL_AUTH: [step_factory("notify", ActionType.NOTIFY)]})
        )
        case = await orchestrator.handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )
        await orchestrator.mark_false_positive(case.case_id)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.mark_false_positive(case.case_id)

    @pytest.mark.asyncio
    async def test_cancel_while_awaiting_approval(
        self, build_orchestrator, playbook_factory, step_factory, executor, audit_store,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory(
                        "lock", ActionType.LOCK_ACCOUNT, rollback=ActionType.UNLOCK_ACCOUNT
                    ),
                    step_factory("block", ActionType.BLOCK_IP, requires_approval=True),
                ]
            }
        )
        orchestrator = build_orchestrator(playbook)
        event, assessment = event_and_assessment

        task = asyncio.create_task(orchestrator.handle_assessment(assessment, event))
        await wait_until(lambda: orchestrator.pending_handles())
        handle = orchestrator.pending_handles()[0]
        case = await orchestrator.case_for_assessment(assessment.assessment_id)

        await orchestrator.cancel_case(case.case_id, "analyst cancelled")
        await task

        assert case.state == CaseState.CANCELLED
        assert case.close_reason == "analyst cancelled"
        assert executor.executed() == [ActionType.LOCK_ACCOUNT]
        assert executor.executed("rollback") == [ActionType.UNLOCK_ACCOUNT]
        assert case.forward_outcome("block") is None
        assert (await transitions(audit_store, case.case_id))[-1] == "cancelled"
        with pytest.raises(UnknownApprovalHandleError):
            await orchestrator.submit_approval_decision(handle, ApprovalDecision(approved=True))

    @pytest.mark.asyncio
    async def test_cancel_closed_case_rejected(
        self, build_orchestrator, event_and_assessment
    ):
        orchestrator = build_orchestrator()
        case = await orchestrator.handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )

        with pytest.raises(InvalidTransitionError):
            await orchestrator.cancel_case(case.case_id)

    @pytest.mark.asyncio
    async def test_cancel_waits_for_in_flight_step(
        self, build_orchestrator, playbook_factory, step_factory, audit_store,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory(
                        "lock", ActionType.LOCK_ACCOUNT, rollback=ActionType.UNLOCK_ACCOUNT
                    ),
                    step_factory("block", ActionType.BLOCK_IP, rollback=ActionType.UNBLOCK_IP),
                ]
            }
        )
        gated = GatedExecutor()
        orchestrator = build_orchestrator(playbook, executor_override=gated)
        event, assessment = event_and_assessment

        task = asyncio.create_task(orchestrator.handle_assessment(assessment, event))
        await asyncio.wait_for(gated.started.wait(), 2.0)
        case = await orchestrator.case_for_assessment(assessment.assessment_id)

        cancel = asyncio.create_task(orchestrator.cancel_case(case.case_id, "analyst cancelled"))
        await wait_until(lambda: case.state == CaseState.CANCELLED)
        await asyncio.sleep(0.05)
        # Rollback holds off while the lock call is still out
        assert not cancel.done()
        assert gated.calls == [("execute", ActionType.LOCK_ACCOUNT)]

        gated.release.set()
        await cancel
        await task

        assert gated.calls == [
            ("execute", ActionType.LOCK_ACCOUNT),
            ("rollback", ActionType.UNLOCK_ACCOUNT),
        ]
        assert case.forward_outcome("lock").result == StepResult.SUCCEEDED
        assert case.forward_outcome("block") is None
        kinds = [r.record_type for r in await audit_store.list_records(case.case_id)]
        assert kinds.index(AuditRecordType.ACTION_OUTCOME) < kinds.index(
            AuditRecordType.ROLLBACK_OUTCOME
        )


# =============================================================================
# Resumption
# =============================================================================


class TestResume:
    """Tests for rebuilding cases from the audit log."""

    @pytest.mark.asyncio
    async def test_resume_parked_case(
        self, build_orchestrator, playbook_factory, step_factory, executor,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory("notify", ActionType.NOTIFY),
                    step_factory("block", ActionType.BLOCK_IP, requires_approval=True),
                ]
            }
        )
        first = build_orchestrator(playbook)
        event, assessment = event_and_assessment

        task = asyncio.create_task(first.handle_assessment(assessment, event))
        await wait_until(lambda: first.pending_handles())
        handle = first.pending_handles()[0]
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        second = build_orchestrator(playbook)
        resumable = await second.resume_cases()

        assert len(resumable) == 1
        case = resumable[0]
        assert case.state == CaseState.AWAITING_APPROVAL
        assert case.pending_approval.handle == handle

        resumed = asyncio.create_task(second.run(case))
        await wait_until(lambda: handle in second.pending_handles())
        await second.submit_approval_decision(handle, ApprovalDecision(approved=True))
        await resumed

        assert case.state == CaseState.CLOSED
        # The step finished before the restart is not executed again
        assert executor.executed() == [ActionType.NOTIFY, ActionType.BLOCK_IP]

    @pytest.mark.asyncio
    async def test_interrupted_step_recorded_as_failed(
        self, build_orchestrator, playbook_factory, step_factory, executor,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory("lock", ActionType.LOCK_ACCOUNT),
                    step_factory("notify", ActionType.NOTIFY),
                ]
            }
        )
        blocking = BlockingExecutor()
        first = build_orchestrator(playbook, executor_override=blocking)
        event, assessment = event_and_assessment

        task = asyncio.create_task(first.handle_assessment(assessment, event))
        await asyncio.wait_for(blocking.started.wait(), 2.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        second = build_orchestrator(playbook)
        (case,) = await second.resume_cases()
        await second.run(case)

        lock = case.forward_outcome("lock")
        assert lock.result == StepResult.FAILED
        assert lock.error == INTERRUPTED
        assert executor.executed() == [ActionType.NOTIFY]
        assert case.state == CaseState.CLOSED

    @pytest.mark.asyncio
    async def test_terminal_cases_not_resumed(
        self, build_orchestrator, playbook_factory, step_factory, event_and_assessment
    ):
        playbook = playbook_factory({CRITICAL_AUTH: [step_factory("notify", ActionType.NOTIFY)]})
        first = build_orchestrator(playbook)
        original = await first.handle_assessment(event_and_assessment[1], event_and_assessment[0])

        second = build_orchestrator(playbook)
        resumable = await second.resume_cases()

        assert resumable == []
        restored = await second.get_case(original.case_id)
        assert restored.state == CaseState.CLOSED
        assert [o.to_dict() for o in restored.executed_steps] == [
            o.to_dict() for o in original.executed_steps
        ]

    @pytest.mark.asyncio
    async def test_rollback_finished_after_crash_mid_cancel(
        self, build_orchestrator, playbook_factory, step_factory, executor, audit_store,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory(
                        "lock", ActionType.LOCK_ACCOUNT, rollback=ActionType.UNLOCK_ACCOUNT
                    ),
                    step_factory("block", ActionType.BLOCK_IP, requires_approval=True),
                ]
            }
        )
        stalling = StallingRollbackExecutor({ActionType.UNLOCK_ACCOUNT})
        first = build_orchestrator(playbook, executor_override=stalling)
        event, assessment = event_and_assessment

        task = asyncio.create_task(first.handle_assessment(assessment, event))
        await wait_until(lambda: first.pending_handles())
        case = await first.case_for_assessment(assessment.assessment_id)

        cancel = asyncio.create_task(first.cancel_case(case.case_id, "analyst cancelled"))
        await asyncio.wait_for(stalling.stalled.wait(), 2.0)
        await kill(cancel)
        await task

        assert (await transitions(audit_store, case.case_id))[-1] == "cancelled"
        assert await records_of(audit_store, case.case_id, AuditRecordType.ROLLBACK_OUTCOME) == []

        second = build_orchestrator(playbook)
        (resumed,) = await second.resume_cases()
        assert resumed.state == CaseState.CANCELLED
        await second.run(resumed)

        assert executor.executed() == []
        assert executor.executed("rollback") == [ActionType.UNLOCK_ACCOUNT]
        assert resumed.state == CaseState.CANCELLED
        rolled_back = await records_of(audit_store, case.case_id, AuditRecordType.ROLLBACK_OUTCOME)
        assert [r.payload["outcome"]["step_id"] for r in rolled_back] == ["lock"]
        assert await build_orchestrator(playbook).resume_cases() == []

    @pytest.mark.asyncio
    async def test_false_positive_rollback_resumed_in_reverse_order(
        self, build_orchestrator, playbook_factory, step_factory, executor, audit_store,
        event_and_assessment,
    ):
        playbook = playbook_factory(
            {
                CRITICAL_AUTH: [
                    step_factory("block", ActionType.BLOCK_IP, rollback=ActionType.UNBLOCK_IP),
                    step_factory(
                        "lock", ActionType.LOCK_ACCOUNT, rollback=ActionType.UNLOCK_ACCOUNT
                    ),
                    step_factory("notify", ActionType.NOTIFY),
                ]
            }
        )
        stalling = StallingRollbackExecutor({ActionType.UNBLOCK_IP})
        first = build_orchestrator(playbook, executor_override=stalling)
        case = await first.handle_assessment(event_and_assessment[1], event_and_assessment[0])
        assert case.state == CaseState.CLOSED

        rollback = asyncio.create_task(first.mark_false_positive(case.case_id, "test traffic"))
        await asyncio.wait_for(stalling.stalled.wait(), 2.0)
        await kill(rollback)
        assert stalling.rolled_back == [ActionType.UNLOCK_ACCOUNT]

        second = build_orchestrator(playbook)
        (resumed,) = await second.resume_cases()
        assert resumed.state == CaseState.CLOSED
        await second.run(resumed)

        assert resumed.state == CaseState.ROLLED_BACK
        assert executor.executed("rollback") == [ActionType.UNBLOCK_IP]
        assert resumed.manual_remediation == ["notify"]
        rolled_back = await records_of(audit_store, case.case_id, AuditRecordType.ROLLBACK_OUTCOME)
        assert [r.payload["outcome"]["step_id"] for r in rolled_back] == ["lock", "block"]
        assert (await transitions(audit_store, case.case_id))[-1] == "rolled_back"


# =============================================================================
# Retention
# =============================================================================


class TestCaseRetention:
    """Tests for evicting finished cases and rebuilding them on lookup."""

    @pytest.mark.asyncio
    async def test_finished_case_leaves_active_maps(
        self, build_orchestrator, playbook_factory, step_factory, event_and_assessment
    ):
        orchestrator = build_orchestrator(
            playbook_factory({CRITICAL_AUTH: [step_factory("lock", ActionType.LOCK_ACCOUNT)]})
        )
        case = await orchestrator.handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )

        assert orchestrator._cases == {}
        assert orchestrator._locks == {}
        assert orchestrator._idle == {}
        assert orchestrator._pins == {}
        assert orchestrator.cached_case(case.case_id) is case
        assert case.case_id == case_id_for(event_and_assessment[1].assessment_id)

    @pytest.mark.asyncio
    async def test_parked_case_stays_active_until_cancelled(
        self, build_orchestrator, playbook_factory, step_factory, event_and_assessment
    ):
        orchestrator = build_orchestrator(
            playbook_factory(
                {CRITICAL_AUTH: [step_factory("block", ActionType.BLOCK_IP, requires_approval=True)]}
            )
        )
        event, assessment = event_and_assessment

        task = asyncio.create_task(orchestrator.handle_assessment(assessment, event))
        await wait_until(lambda: orchestrator.pending_handles())
        case = await orchestrator.case_for_assessment(assessment.assessment_id)
        assert case.case_id in orchestrator._cases

        await orchestrator.cancel_case(case.case_id)
        await task

        assert case.case_id not in orchestrator._cases
        assert case.case_id not in orchestrator._locks

    @pytest.mark.asyncio
    async def test_evicted_case_rebuilt_from_audit(
        self, build_orchestrator, orchestrator_config, playbook_factory, step_factory,
        auth_event, assessment_factory,
    ):
        orchestrator_config.retained_terminal_cases = 1
        orchestrator = build_orchestrator(
            playbook_factory({CRITICAL_AUTH: [step_factory("lock", ActionType.LOCK_ACCOUNT)]})
        )
        first_assessment = assessment_factory(auth_event, ThreatLevel.CRITICAL)
        first = await orchestrator.handle_assessment(first_assessment, auth_event)
        second = await orchestrator.handle_assessment(
            assessment_factory(auth_event, ThreatLevel.CRITICAL), auth_event
        )

        assert orchestrator.cached_case(first.case_id) is None
        assert orchestrator.cached_case(second.case_id) is second

        rebuilt = await orchestrator.get_case(first.case_id)
        assert rebuilt is not first
        assert rebuilt.state == CaseState.CLOSED
        assert [o.to_dict() for o in rebuilt.executed_steps] == [
            o.to_dict() for o in first.executed_steps
        ]
        found = await orchestrator.case_for_assessment(first_assessment.assessment_id)
        assert found.case_id == first.case_id

    @pytest.mark.asyncio
    async def test_false_positive_on_evicted_case(
        self, build_orchestrator, orchestrator_config, playbook_factory, step_factory, executor,
        event_and_assessment,
    ):
        orchestrator_config.retained_terminal_cases = 0
        orchestrator = build_orchestrator(
            playbook_factory(
                {
                    CRITICAL_AUTH: [
                        step_factory(
                            "lock", ActionType.LOCK_ACCOUNT, rollback=ActionType.UNLOCK_ACCOUNT
                        )
                    ]
                }
            )
        )
        case = await orchestrator.handle_assessment(
            event_and_assessment[1], event_and_assessment[0]
        )
        assert orchestrator.cases() == []

        rolled_back = await orchestrator.mark_false_positive(case.case_id)

        assert rolled_back.state == CaseState.ROLLED_BACK
        assert executor.executed("rollback") == [ActionType.UNLOCK_ACCOUNT]

    @pytest.mark.asyncio
    async def test_duplicate_assessment_after_eviction_not_reopened(
        self, build_orchestrator, orchestrator_config, playbook_factory, step_factory, executor,
        audit_store, event_and_assessment,
    ):
        orchestrator_config.retained_terminal_cases = 0
        orchestrator = build_orchestrator(
            playbook_factory({CRITICAL_AUTH: [step_factory("lock", ActionType.LOCK_ACCOUNT)]})
        )
        event, assessment = event_and_assessment
        first = await orchestrator.handle_assessment(assessment, event)

        again = await orchestrator.handle_assessment(assessment, event)

        assert again.case_id == first.case_id
        assert again.state == CaseState.CLOSED
        assert executor.executed() == [ActionType.LOCK_ACCOUNT]
        assert await audit_store.list_case_ids() == [first.case_id]

    @pytest.mark.asyncio
    async def test_unknown_case(self, build_orchestrator):
        orchestrator = build_orchestrator()

        with pytest.raises(CaseNotFoundError):
            await orchestrator.get_case(uuid4())
        assert await orchestrator.case_for_assessment(uuid4()) is None
