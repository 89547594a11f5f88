"""Response orchestrator.

Drives one ``ResponseCase`` per triggering assessment through its captured
plan: steps run in plan order, approval-gated steps suspend the case until a
decision or timeout, executor calls are retried with exponential backoff,
and false positives or cancellations roll back what was executed.

Every transition and outcome is written to the audit log before the
in-memory case changes. A per-case ``asyncio.Lock`` serialises those writes
and state changes; it is never held across an executor call or an approval
wait.

Only active cases are held for certain. Once a case is terminal and nothing
is working on it, it moves to a bounded set of recently finished cases;
lookups past that rebuild the case from the audit log.
"""

import asyncio
from collections import OrderedDict
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from warden.audit.types import (
    CASE_STEP_ID,
    AuditRecord,
    AuditRecordType,
    StepPhase,
    step_key,
)
from warden.audit.writer import AuditWriter
from warden.config.settings import ResponseSettings
from warden.core.exceptions import (
    ApprovalTimeoutError,
    CaseNotFoundError,
    ExecutorFailureError,
    InvalidTransitionError,
    UnknownApprovalHandleError,
)
from warden.core.logging import LogContext, get_logger
from warden.detection.types import Event, ThreatAssessment
from warden.observability.metrics import (
    record_action_outcome,
    record_approval_decision,
    record_case_transition,
)
from warden.observability.tracing import start_span
from warden.response.approval import ApprovalGateway
from warden.response.executor import ExecutorRegistry, NoExecutorRegisteredError
from warden.response.playbook import PlaybookRegistry
from warden.response.replay import ReplayError, rebuild_case
from warden.response.state_machine import ROLLBACK_STATES, check_transition
from warden.response.types import (
    SYSTEM_ACTOR,
    TERMINAL_STATES,
    ActionOutcome,
    ActionStep,
    ActionType,
    ApprovalDecision,
    CaseState,
    FailurePolicy,
    OnTimeout,
    PendingApproval,
    ResponseCase,
    StepResult,
    case_id_for,
)

logger = get_logger(__name__)

INTERRUPTED = "interrupted, outcome unknown"
IRREVERSIBLE = "irreversible, manual remediation required"

# States in which the plan loop still has work to do
_RUNNABLE_STATES = frozenset(
    {CaseState.EXECUTING, CaseState.AWAITING_APPROVAL, CaseState.APPROVED, CaseState.DENIED}
)


class OrchestratorConfig(BaseModel):
    """Retry and approval defaults for the orchestrator."""

    executor_max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=0.5, ge=0.0)
    backoff_max_seconds: float = Field(default=5.0, ge=0.0)
    default_approval_timeout_seconds: float = Field(default=900.0, gt=0.0)
    retained_terminal_cases: int = Field(default=1000, ge=0)

    @classmethod
    def from_settings(cls, settings: ResponseSettings) -> "OrchestratorConfig":
        return cls(
            executor_max_attempts=settings.executor_max_attempts,
            backoff_base_seconds=settings.executor_backoff_base_seconds,
            backoff_max_seconds=settings.executor_backoff_max_seconds,
            default_approval_timeout_seconds=settings.default_approval_timeout_seconds,
            retained_terminal_cases=settings.retained_terminal_cases,
        )


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ExecutorFailureError) and not isinstance(
        error, NoExecutorRegisteredError
    )


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ResponseOrchestrator:
    """Owns response cases and moves them through the state machine.

    Usage:
        orchestrator = ResponseOrchestrator(playbooks, executors, approvals, writer)
        case = await orchestrator.handle_assessment(assessment, event)

        # Later, from an operator:
        await orchestrator.submit_approval_decision(handle, ApprovalDecision(approved=True))
        await orchestrator.mark_false_positive(case.case_id)
    """

    def __init__(
        self,
        playbooks: PlaybookRegistry,
        executors: ExecutorRegistry,
        approvals: ApprovalGateway,
        audit: AuditWriter,
        config: OrchestratorConfig | None = None,
    ):
        self.playbooks = playbooks
        self.executors = executors
        self.approvals = approvals
        self.audit = audit
        self.config = config or OrchestratorConfig()

        self._cases: dict[UUID, ResponseCase] = {}
        self._retained: OrderedDict[UUID, ResponseCase] = OrderedDict()
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._idle: dict[UUID, asyncio.Event] = {}
        self._pins: dict[UUID, int] = {}
        self._waiters: dict[str, tuple[UUID, asyncio.Future[ApprovalDecision]]] = {}
        self._rolling_back: set[UUID] = set()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def cached_case(self, case_id: UUID) -> ResponseCase | None:
        """In-memory lookup over active and recently finished cases."""
        case = self._cases.get(case_id)
        if case is None:
            case = self._retained.get(case_id)
        return case

    async def get_case(self, case_id: UUID) -> ResponseCase:
        """Get a case by id, rebuilding it from the audit log if it is not in memory.

        Raises:
            CaseNotFoundError: If the case does not exist.
        """
        case = self.cached_case(case_id)
        if case is None:
            case = await self._load(case_id)
        if case is None:
            raise CaseNotFoundError(case_id)
        return case

    async def case_for_assessment(self, assessment_id: UUID) -> ResponseCase | None:
        """Get the case opened for an assessment, if any."""
        try:
            return await self.get_case(case_id_for(assessment_id))
        except CaseNotFoundError:
            return None

    def cases(self) -> list[ResponseCase]:
        """Active cases, then retained finished ones."""
        return [*self._cases.values(), *self._retained.values()]

    def pending_handles(self) -> list[str]:
        """Approval handles currently being waited on."""
        return [h for h, (_, fut) in self._waiters.items() if not fut.done()]

    # -------------------------------------------------------------------------
    # Case lifecycle
    # -------------------------------------------------------------------------

    async def handle_assessment(self, assessment: ThreatAssessment, event: Event) -> ResponseCase:
        """Open a case for an assessment and run it to completion or suspension."""
        case = await self.open_case(assessment, event)
        return await self.run(case)

    async def open_case(self, assessment: ThreatAssessment, event: Event) -> ResponseCase:
        """Record the assessment and open its case with the current plan.

        Opening a second case for the same assessment returns the first.
        """
        existing = await self.case_for_assessment(assessment.assessment_id)
        if existing is not None:
            return existing

        playbook = self.playbooks.current
        plan = playbook.plan_for(event.kind, assessment.threat_level)
        case = ResponseCase(
            case_id=case_id_for(assessment.assessment_id),
            assessment=assessment,
            event=event,
            plan=plan or (),
            playbook_version=playbook.version,
            mapped=plan is not None,
        )
        self._register(case)

        async with self._lock(case):
            await self._append(
                case,
                AuditRecordType.ASSESSMENT_RECORDED,
                CASE_STEP_ID,
                None,
                {"assessment": assessment.to_dict(), "event": event.to_dict()},
            )
            record = await self._append(
                case,
                AuditRecordType.CASE_OPENED,
                CASE_STEP_ID,
                None,
                {
                    "plan": [step.to_dict() for step in case.plan],
                    "playbook_version": case.playbook_version,
                    "mapped": case.mapped,
                },
            )
            case.created_at = record.recorded_at

        logger.info(
            "case_opened",
            case_id=str(case.case_id),
            assessment_id=str(assessment.assessment_id),
            event_kind=event.kind.value,
            threat_level=assessment.threat_level.value,
            playbook_version=case.playbook_version,
            steps=len(case.plan),
            mapped=case.mapped,
        )
        return case

    async def run(self, case: ResponseCase) -> ResponseCase:
        """Advance a case from wherever it is until it closes or suspends.

        Safe to call for a case rebuilt from the audit log: recorded steps
        are never executed again, and a cancel or false-positive rollback
        that was cut short is carried to completion.
        """
        with self._pinned(case), LogContext(
            case_id=str(case.case_id),
            assessment_id=str(case.assessment.assessment_id),
        ):
            if self._rollback_interrupted(case):
                await self._complete_rollback(case)
                return case

            async with self._lock(case):
                if case.state == CaseState.CREATED:
                    await self._transition(case, CaseState.EXECUTING)

            if not case.mapped:
                await self._close_log_only(case)
                return case

            await self._run_plan(case)
        return case

    async def cancel_case(self, case_id: UUID, reason: str | None = None) -> ResponseCase:
        """Cancel a case and roll back its executed reversible steps.

        Raises:
            CaseNotFoundError: If the case does not exist.
            InvalidTransitionError: If the case is already closed or terminal.
        """
        case = await self.get_case(case_id)
        with self._pinned(case):
            async with self._lock(case):
                await self._transition(case, CaseState.CANCELLED, reason or "cancelled")
                self._rolling_back.add(case_id)

            try:
                for handle, (waiting_case, future) in list(self._waiters.items()):
                    if waiting_case == case_id and not future.done():
                        future.set_result(
                            ApprovalDecision(
                                approved=False, decided_by=SYSTEM_ACTOR, reason="case cancelled"
                            )
                        )

                # A step already handed to its executor finishes and records its outcome first
                await self._idle_event(case).wait()
                await self._rollback_executed(case)
            finally:
                self._rolling_back.discard(case_id)

        logger.info("case_cancelled", case_id=str(case_id), reason=reason)
        return case

    async def mark_false_positive(self, case_id: UUID, reason: str | None = None) -> ResponseCase:
        """Roll back a closed or failed case.

        Raises:
            CaseNotFoundError: If the case does not exist.
            InvalidTransitionError: If the case is not CLOSED or FAILED, or a
                rollback is already running.
        """
        case = await self.get_case(case_id)
        with self._pinned(case):
            async with self._lock(case):
                if case.state not in ROLLBACK_STATES or case_id in self._rolling_back:
                    raise InvalidTransitionError(
                        case_id, case.state.value, CaseState.ROLLED_BACK.value
                    )
                self._rolling_back.add(case_id)

            try:
                await self._rollback_executed(case)
                async with self._lock(case):
                    await self._transition(case, CaseState.ROLLED_BACK, reason or "false_positive")
            finally:
                self._rolling_back.discard(case_id)

        logger.info(
            "case_rolled_back",
            case_id=str(case_id),
            manual_remediation=list(case.manual_remediation),
        )
        return case

    async def submit_approval_decision(self, handle: str, decision: ApprovalDecision) -> UUID:
        """Deliver an approval decision to the case waiting on ``handle``.

        Returns:
            The id of the case that received the decision.

        Raises:
            UnknownApprovalHandleError: If nothing is waiting on the handle.
        """
        entry = self._waiters.get(handle)
        if entry is None or entry[1].done():
            raise UnknownApprovalHandleError(handle)

        case_id, future = entry
        future.set_result(decision)
        logger.info(
            "approval_decision_submitted",
            handle=handle,
            case_id=str(case_id),
            approved=decision.approved,
            decided_by=decision.decided_by,
        )
        return case_id

    async def resume_cases(self) -> list[ResponseCase]:
        """Rebuild every persisted case from the audit log.

        Returns:
            Cases to pass to ``run``: every non-terminal case, plus terminal
            cases whose cancel or false-positive rollback was interrupted.
        """
        sink = self.audit.sink
        resumable: list[ResponseCase] = []
        for case_id in await sink.list_case_ids():
            if self.cached_case(case_id) is not None:
                continue
            records = await sink.list_records(case_id)
            try:
                case = rebuild_case(records)
            except ReplayError as e:
                logger.error("case_replay_failed", case_id=str(case_id), error=str(e))
                continue

            if case.is_terminal and not self._rollback_interrupted(case):
                self._retain(case)
                continue
            self._register(case)
            resumable.append(case)

        logger.info(
            "cases_resumed",
            active=len(self._cases),
            retained=len(self._retained),
            resumable=len(resumable),
        )
        return resumable

    # -------------------------------------------------------------------------
    # Plan execution
    # -------------------------------------------------------------------------

    async def _close_log_only(self, case: ResponseCase) -> None:
        async with self._lock(case):
            if case.state != CaseState.EXECUTING:
                return
            if not case.log_only_recorded:
                await self._append(
                    case,
                    AuditRecordType.LOG_ONLY_DEFAULT,
                    CASE_STEP_ID,
                    None,
                    {
                        "event_kind": case.event.kind.value,
                        "threat_level": case.assessment.threat_level.value,
                        "playbook_version": case.playbook_version,
                    },
                )
                case.log_only_recorded = True
            await self._transition(case, CaseState.CLOSED, "log_only_default")

        logger.info("case_log_only", threat_level=case.assessment.threat_level.value)

    async def _run_plan(self, case: ResponseCase) -> None:
        while case.state in _RUNNABLE_STATES:
            index = case.next_step_index()
            if index >= len(case.plan):
                break
            step = case.plan[index]

            if step.id in case.started_steps:
                outcome = ActionOutcome(
                    step_id=step.id,
                    action_type=step.action_type,
                    result=StepResult.FAILED,
                    error=INTERRUPTED,
                )
                async with self._lock(case):
                    await self._record_outcome(case, outcome)
                logger.warning("step_interrupted", step_id=step.id)
            else:
                if step.requires_approval or case.state != CaseState.EXECUTING:
                    if not await self._pass_gate(case, step, index):
                        return
                outcome = await self._execute_step(case, step)
                if outcome is None:
                    return

            if outcome.result == StepResult.FAILED and step.failure_policy == FailurePolicy.ABORT:
                async with self._lock(case):
                    if case.state != CaseState.EXECUTING:
                        return
                    await self._skip_remaining(case, index + 1)
                    await self._transition(case, CaseState.FAILED, f"step {step.id} failed")
                return

        async with self._lock(case):
            if case.state == CaseState.EXECUTING:
                await self._transition(case, CaseState.CLOSED, "plan_completed")

    async def _pass_gate(self, case: ResponseCase, step: ActionStep, index: int) -> bool:
        """Resolve the approval gate in front of a step. True means execute it."""
        approved = case.approval_decisions.get(step.id)
        if approved is None and case.state in (CaseState.EXECUTING, CaseState.AWAITING_APPROVAL):
            approved = await self._await_approval(case, step)
            if approved is None:
                return False

        async with self._lock(case):
            if case.state == CaseState.AWAITING_APPROVAL:
                if approved:
                    await self._transition(case, CaseState.APPROVED)
                else:
                    await self._transition(case, CaseState.DENIED)

            if case.state == CaseState.APPROVED:
                await self._transition(case, CaseState.EXECUTING)
                return True

            if case.state == CaseState.DENIED:
                await self._skip_remaining(case, index)
                await self._transition(case, CaseState.CLOSED, "approval_denied")
                logger.info("case_denied", step_id=step.id)
                return False

            return case.state == CaseState.EXECUTING and bool(approved)

    async def _execute_step(self, case: ResponseCase, step: ActionStep) -> ActionOutcome | None:
        idle = self._idle_event(case)
        async with self._lock(case):
            if case.state != CaseState.EXECUTING:
                return None
            await self._append(
                case,
                AuditRecordType.STEP_STARTED,
                step_key(step.id, StepPhase.STARTED),
                1,
                {"step_id": step.id, "action_type": step.action_type.value},
            )
            case.started_steps.add(step.id)
            idle.clear()

        try:
            with start_span(
                "response.execute_step",
                case_id=case.case_id,
                step_id=step.id,
                action_type=step.action_type,
            ):
                attempts, error = await self._call_with_retry(
                    step.action_type, case, step.parameters
                )

            outcome = ActionOutcome(
                step_id=step.id,
                action_type=step.action_type,
                result=StepResult.SUCCEEDED if error is None else StepResult.FAILED,
                error=error,
                attempts=attempts,
            )
            async with self._lock(case):
                await self._record_outcome(case, outcome)
        finally:
            idle.set()

        logger.info(
            "step_executed",
            step_id=step.id,
            action_type=step.action_type.value,
            result=outcome.result.value,
            attempts=attempts,
            error=error,
        )
        return outcome

    async def _call_with_retry(
        self,
        action_type: ActionType,
        case: ResponseCase,
        parameters: Mapping[str, Any],
        *,
        rollback: bool = False,
    ) -> tuple[int, str | None]:
        """Call the executor with bounded retries.

        Returns:
            (attempts made, failure detail or None on success)
        """
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.executor_max_attempts),
            wait=wait_exponential(
                multiplier=self.config.backoff_base_seconds,
                max=self.config.backoff_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self.executors.execute(
                        action_type,
                        case.event,
                        case,
                        parameters=parameters,
                        rollback=rollback,
                    )
        except ExecutorFailureError as e:
            logger.warning(
                "executor_failed",
                action_type=action_type.value,
                rollback=rollback,
                attempts=attempts,
                error=e.detail,
            )
            return attempts, e.detail
        return attempts, None

    async def _skip_remaining(self, case: ResponseCase, start: int) -> None:
        """Record every unexecuted step from ``start`` on as SKIPPED. Lock held."""
        for step in case.plan[start:]:
            if case.forward_outcome(step.id) is not None:
                continue
            await self._record_outcome(
                case,
                ActionOutcome(
                    step_id=step.id,
                    action_type=step.action_type,
                    result=StepResult.SKIPPED,
                ),
            )

    # -------------------------------------------------------------------------
    # Approval gates
    # -------------------------------------------------------------------------

    async def _await_approval(self, case: ResponseCase, step: ActionStep) -> bool | None:
        """Request approval (unless already pending) and wait for the verdict.

        Returns:
            The verdict, or None if the case was cancelled while waiting.
        """
        pending = case.pending_approval
        if pending is None or pending.step_id != step.id:
            try:
                handle = await self.approvals.request_approval(case, step)
            except Exception as e:
                logger.error("approval_request_failed", step_id=step.id, error=str(e))
                async with self._lock(case):
                    if case.state == CaseState.EXECUTING:
                        await self._transition(case, CaseState.AWAITING_APPROVAL)
                decision = ApprovalDecision(
                    approved=False,
                    decided_by=SYSTEM_ACTOR,
                    reason=f"approval request failed: {e}",
                )
                return await self._record_decision(case, step, None, decision, "request_failed")

            now = _utcnow()
            pending = PendingApproval(
                handle=handle,
                step_id=step.id,
                requested_at=now,
                deadline=now + timedelta(seconds=step.timeout_policy.approval_timeout_seconds),
            )
            async with self._lock(case):
                if case.is_terminal:
                    return None
                await self._append(
                    case,
                    AuditRecordType.APPROVAL_REQUESTED,
                    step_key(step.id, StepPhase.APPROVAL_REQUESTED),
                    1,
                    {"step_id": step.id, "pending": pending.to_dict()},
                )
                case.pending_approval = pending

        async with self._lock(case):
            if case.state == CaseState.EXECUTING:
                await self._transition(case, CaseState.AWAITING_APPROVAL)
            elif case.state != CaseState.AWAITING_APPROVAL:
                return None

        future: asyncio.Future[ApprovalDecision] = asyncio.get_running_loop().create_future()
        self._waiters[pending.handle] = (case.case_id, future)
        logger.info(
            "awaiting_approval",
            step_id=step.id,
            handle=pending.handle,
            deadline=pending.deadline.isoformat(),
        )

        try:
            while True:
                remaining = (pending.deadline - _utcnow()).total_seconds()
                try:
                    decision = await asyncio.wait_for(asyncio.shield(future), max(remaining, 0.0))
                    outcome = "approved" if decision.approved else "denied"
                    break
                except TimeoutError:
                    if step.timeout_policy.on_timeout == OnTimeout.ESCALATE and not pending.escalated:
                        await self._escalate(case, step, pending)
                        continue
                    timeout = ApprovalTimeoutError(
                        case.case_id, step.id, step.timeout_policy.approval_timeout_seconds
                    )
                    logger.warning("approval_timed_out", step_id=step.id, handle=pending.handle)
                    decision = ApprovalDecision(
                        approved=False, decided_by=SYSTEM_ACTOR, reason=str(timeout)
                    )
                    outcome = "timeout"
                    break
        finally:
            self._waiters.pop(pending.handle, None)

        return await self._record_decision(case, step, pending, decision, outcome)

    async def _escalate(self, case: ResponseCase, step: ActionStep, pending: PendingApproval) -> None:
        """Run the ESCALATE action and extend the approval window once."""
        with start_span(
            "response.escalate_approval", case_id=case.case_id, step_id=step.id
        ):
            attempts, error = await self._call_with_retry(
                ActionType.ESCALATE, case, {**step.parameters, "gated_step": step.id}
            )
        deadline = _utcnow() + timedelta(seconds=step.timeout_policy.approval_timeout_seconds)

        async with self._lock(case):
            if case.is_terminal:
                return
            await self._append(
                case,
                AuditRecordType.APPROVAL_DECIDED,
                step_key(step.id, StepPhase.APPROVAL_DECIDED),
                1,
                {
                    "step_id": step.id,
                    "handle": pending.handle,
                    "escalation": True,
                    "deadline": deadline.isoformat(),
                    "succeeded": error is None,
                    "error": error,
                    "attempts": attempts,
                },
            )
            pending.escalated = True
            pending.deadline = deadline

        record_approval_decision("escalated")
        logger.warning("approval_escalated", step_id=step.id, handle=pending.handle, error=error)

    async def _record_decision(
        self,
        case: ResponseCase,
        step: ActionStep,
        pending: PendingApproval | None,
        decision: ApprovalDecision,
        outcome: str,
    ) -> bool | None:
        async with self._lock(case):
            if case.is_terminal:
                return None
            await self._append(
                case,
                AuditRecordType.APPROVAL_DECIDED,
                step_key(step.id, StepPhase.APPROVAL_DECIDED),
                2 if pending is not None and pending.escalated else 1,
                {
                    "step_id": step.id,
                    "handle": pending.handle if pending else None,
                    "decision": decision.to_dict(),
                },
            )
            case.approval_decisions[step.id] = decision.approved
            case.pending_approval = None

        record_approval_decision(outcome)
        logger.info(
            "approval_decided",
            step_id=step.id,
            approved=decision.approved,
            decided_by=decision.decided_by,
            reason=decision.reason,
        )
        return decision.approved

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    async def _rollback_executed(self, case: ResponseCase) -> list[ActionOutcome]:
        """Compensate SUCCEEDED forward steps, newest first.

        A step that started but never recorded an outcome may or may not
        have taken effect. It is recorded as interrupted and flagged for
        manual remediation.
        """
        for step_id in case.interrupted_steps():
            step = case.step(step_id)
            async with self._lock(case):
                await self._record_outcome(
                    case,
                    ActionOutcome(
                        step_id=step.id,
                        action_type=step.action_type,
                        result=StepResult.FAILED,
                        error=INTERRUPTED,
                    ),
                )
            await self._flag_manual(case, step, INTERRUPTED)

        outcomes: list[ActionOutcome] = []
        for forward in case.uncompensated():
            step = case.step(forward.step_id)
            if step.rollback_action_type is None:
                await self._flag_manual(case, step, IRREVERSIBLE)
                continue

            with start_span(
                "response.rollback_step", case_id=case.case_id, step_id=step.id
            ):
                attempts, error = await self._call_with_retry(
                    step.rollback_action_type, case, step.parameters, rollback=True
                )
            outcome = ActionOutcome(
                step_id=step.id,
                action_type=step.rollback_action_type,
                result=StepResult.ROLLED_BACK if error is None else StepResult.FAILED,
                error=error,
                attempts=attempts,
                is_rollback=True,
            )
            async with self._lock(case):
                await self._record_outcome(case, outcome)
            outcomes.append(outcome)

        return outcomes

    async def _flag_manual(self, case: ResponseCase, step: ActionStep, reason: str) -> None:
        async with self._lock(case):
            await self._append(
                case,
                AuditRecordType.MANUAL_REMEDIATION_REQUIRED,
                step_key(step.id, StepPhase.MANUAL),
                1,
                {"step_id": step.id, "action_type": step.action_type.value, "reason": reason},
            )
            case.manual_remediation.append(step.id)
        logger.warning(
            "manual_remediation_required",
            case_id=str(case.case_id),
            step_id=step.id,
            action_type=step.action_type.value,
            reason=reason,
        )

    @staticmethod
    def _rollback_interrupted(case: ResponseCase) -> bool:
        """True when a cancel or false-positive rollback stopped part way.

        A cancelled case still holding uncompensated steps never finished
        its rollback. A CLOSED or FAILED case with compensation records was
        mid false-positive: the ROLLED_BACK transition comes last.
        """
        if case.state == CaseState.CANCELLED:
            return bool(case.uncompensated() or case.interrupted_steps())
        return case.state in ROLLBACK_STATES and case.compensation_started

    async def _complete_rollback(self, case: ResponseCase) -> None:
        async with self._lock(case):
            if case.case_id in self._rolling_back:
                return
            self._rolling_back.add(case.case_id)

        try:
            await self._rollback_executed(case)
            if case.state in ROLLBACK_STATES:
                async with self._lock(case):
                    await self._transition(case, CaseState.ROLLED_BACK, "false_positive")
        finally:
            self._rolling_back.discard(case.case_id)

        logger.info(
            "rollback_completed_after_restart",
            state=case.state.value,
            manual_remediation=list(case.manual_remediation),
        )

    # -------------------------------------------------------------------------
    # Audit-backed state changes (callers hold the case lock)
    # -------------------------------------------------------------------------

    async def _append(
        self,
        case: ResponseCase,
        record_type: AuditRecordType,
        step_id: str,
        attempt: int | None,
        payload: dict[str, Any],
    ) -> AuditRecord:
        sequence = case.next_sequence
        record = AuditRecord(
            case_id=case.case_id,
            step_id=step_id,
            attempt=sequence if attempt is None else attempt,
            sequence=sequence,
            record_type=record_type,
            payload=payload,
        )
        await self.audit.write(record)
        case.next_sequence = sequence + 1
        return record

    async def _transition(
        self,
        case: ResponseCase,
        to_state: CaseState,
        reason: str | None = None,
    ) -> None:
        from_state = case.state
        check_transition(case.case_id, from_state, to_state)
        record = await self._append(
            case,
            AuditRecordType.STATE_TRANSITION,
            CASE_STEP_ID,
            None,
            {"from_state": from_state.value, "to_state": to_state.value, "reason": reason},
        )
        case.state = to_state
        if to_state in TERMINAL_STATES:
            case.closed_at = record.recorded_at
            case.close_reason = reason

        record_case_transition(from_state.value, to_state.value)
        logger.info(
            "case_transition",
            case_id=str(case.case_id),
            from_state=from_state.value,
            to_state=to_state.value,
            reason=reason,
        )

    async def _record_outcome(self, case: ResponseCase, outcome: ActionOutcome) -> None:
        phase = StepPhase.ROLLBACK if outcome.is_rollback else StepPhase.OUTCOME
        await self._append(
            case,
            AuditRecordType.ROLLBACK_OUTCOME if outcome.is_rollback else AuditRecordType.ACTION_OUTCOME,
            step_key(outcome.step_id, phase),
            outcome.attempts,
            {"outcome": outcome.to_dict()},
        )
        case.executed_steps.append(outcome)
        record_action_outcome(outcome.action_type.value, outcome.result.value, outcome.is_rollback)

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    def _register(self, case: ResponseCase) -> None:
        self._cases[case.case_id] = case

    def _retain(self, case: ResponseCase) -> None:
        """Keep a terminal case in the bounded recent set, evicting the oldest."""
        if self.config.retained_terminal_cases == 0:
            return
        self._retained[case.case_id] = case
        self._retained.move_to_end(case.case_id)
        while len(self._retained) > self.config.retained_terminal_cases:
            self._retained.popitem(last=False)

    def _retire(self, case: ResponseCase) -> None:
        self._cases.pop(case.case_id, None)
        self._locks.pop(case.case_id, None)
        self._idle.pop(case.case_id, None)
        self._retain(case)

    @contextmanager
    def _pinned(self, case: ResponseCase) -> Iterator[None]:
        """Hold a case's lock and idle event in place while an operation works on it.

        The last operation to finish on a terminal case retires it.
        """
        case_id = case.case_id
        self._pins[case_id] = self._pins.get(case_id, 0) + 1
        try:
            yield
        finally:
            remaining = self._pins.pop(case_id) - 1
            if remaining:
                self._pins[case_id] = remaining
            elif case.is_terminal:
                self._retire(case)

    async def _load(self, case_id: UUID) -> ResponseCase | None:
        """Rebuild a case that is no longer in memory from its audit records."""
        records = await self.audit.sink.list_records(case_id)
        if not records:
            return None
        try:
            case = rebuild_case(records)
        except ReplayError as e:
            logger.error("case_replay_failed", case_id=str(case_id), error=str(e))
            return None

        # Another lookup may have loaded it while the records were read
        cached = self.cached_case(case_id)
        if cached is not None:
            return cached
        if case.is_terminal:
            self._retain(case)
        logger.debug("case_loaded_from_audit", case_id=str(case_id), state=case.state.value)
        return case

    def _lock(self, case: ResponseCase) -> asyncio.Lock:
        lock = self._locks.get(case.case_id)
        if lock is None:
            lock = self._locks[case.case_id] = asyncio.Lock()
        return lock

    def _idle_event(self, case: ResponseCase) -> asyncio.Event:
        event = self._idle.get(case.case_id)
        if event is None:
            event = self._idle[case.case_id] = asyncio.Event()
            event.set()
        return event
