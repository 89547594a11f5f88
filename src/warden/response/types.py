"""Response domain types: action steps, outcomes and response cases."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
from uuid import UUID, uuid4, uuid5

from warden.detection.types import Event, ThreatAssessment

# =============================================================================
# Enums
# =============================================================================


class ActionType(str, Enum):
    """Containment and notification actions an executor can apply."""

    ISOLATE = "isolate"
    LOCK_ACCOUNT = "lock_account"
    BLOCK_IP = "block_ip"
    NOTIFY = "notify"
    ESCALATE = "escalate"
    CUSTOM = "custom"

    # Compensating actions
    RELEASE_ISOLATION = "release_isolation"
    UNLOCK_ACCOUNT = "unlock_account"
    UNBLOCK_IP = "unblock_ip"


class OnTimeout(str, Enum):
    """What happens when an approval gate times out."""

    DENY = "deny"
    ESCALATE = "escalate"


class FailurePolicy(str, Enum):
    """What happens when a step fails after all retries."""

    CONTINUE = "continue"  # Best-effort, proceed to the next step
    ABORT = "abort"  # Critical, fail the case


class StepResult(str, Enum):
    """Result of one action step attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"


class CaseState(str, Enum):
    """Lifecycle states of a response case."""

    CREATED = "created"
    EXECUTING = "executing"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    DENIED = "denied"
    CLOSED = "closed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Playbook Models
# =============================================================================


@dataclass(frozen=True)
class TimeoutPolicy:
    """Approval window and the policy applied when it elapses."""

    approval_timeout_seconds: float = 900.0
    on_timeout: OnTimeout = OnTimeout.DENY

    def to_dict(self) -> dict[str, Any]:
        return {
            "approval_timeout_seconds": self.approval_timeout_seconds,
            "on_timeout": self.on_timeout.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimeoutPolicy":
        return cls(
            approval_timeout_seconds=data.get("approval_timeout_seconds", 900.0),
            on_timeout=OnTimeout(data.get("on_timeout", OnTimeout.DENY.value)),
        )


@dataclass(frozen=True)
class ActionStep:
    """One step of a playbook plan."""

    id: str
    action_type: ActionType
    requires_approval: bool = False
    rollback_action_type: ActionType | None = None
    timeout_policy: TimeoutPolicy = field(default_factory=TimeoutPolicy)
    failure_policy: FailurePolicy = FailurePolicy.CONTINUE
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))

    @property
    def reversible(self) -> bool:
        """Whether the step has a compensating action."""
        return self.rollback_action_type is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action_type": self.action_type.value,
            "requires_approval": self.requires_approval,
            "rollback_action_type": (
                self.rollback_action_type.value if self.rollback_action_type else None
            ),
            "timeout_policy": self.timeout_policy.to_dict(),
            "failure_policy": self.failure_policy.value,
            "parameters": dict(self.parameters),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActionStep":
        rollback = data.get("rollback_action_type")
        return cls(
            id=data["id"],
            action_type=ActionType(data["action_type"]),
            requires_approval=data.get("requires_approval", False),
            rollback_action_type=ActionType(rollback) if rollback else None,
            timeout_policy=TimeoutPolicy.from_dict(data.get("timeout_policy", {})),
            failure_policy=FailurePolicy(data.get("failure_policy", FailurePolicy.CONTINUE.value)),
            parameters=data.get("parameters", {}),
        )


# =============================================================================
# Case Models
# =============================================================================


@dataclass(frozen=True)
class ActionOutcome:
    """Recorded result of executing (or skipping, or compensating) a step."""

    step_id: str
    action_type: ActionType
    result: StepResult
    executed_at: datetime = field(default_factory=_utcnow)
    error: str | None = None
    attempts: int = 0
    is_rollback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "action_type": self.action_type.value,
            "result": self.result.value,
            "executed_at": self.executed_at.isoformat(),
            "error": self.error,
            "attempts": self.attempts,
            "is_rollback": self.is_rollback,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActionOutcome":
        return cls(
            step_id=data["step_id"],
            action_type=ActionType(data["action_type"]),
            result=StepResult(data["result"]),
            executed_at=datetime.fromisoformat(data["executed_at"]),
            error=data.get("error"),
            attempts=data.get("attempts", 0),
            is_rollback=data.get("is_rollback", False),
        )


@dataclass
class PendingApproval:
    """An approval gate the case is currently parked on."""

    handle: str
    step_id: str
    requested_at: datetime
    deadline: datetime
    escalated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "handle": self.handle,
            "step_id": self.step_id,
            "requested_at": self.requested_at.isoformat(),
            "deadline": self.deadline.isoformat(),
            "escalated": self.escalated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingApproval":
        return cls(
            handle=data["handle"],
            step_id=data["step_id"],
            requested_at=datetime.fromisoformat(data["requested_at"]),
            deadline=datetime.fromisoformat(data["deadline"]),
            escalated=data.get("escalated", False),
        )


@dataclass(frozen=True)
class ApprovalDecision:
    """An operator's (or the system's) verdict on an approval gate."""

    approved: bool
    decided_by: str = "operator"
    reason: str = ""
    decided_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "approved": self.approved,
            "decided_by": self.decided_by,
            "reason": self.reason,
            "decided_at": self.decided_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApprovalDecision":
        return cls(
            approved=data["approved"],
            decided_by=data.get("decided_by", "operator"),
            reason=data.get("reason", ""),
            decided_at=datetime.fromisoformat(data["decided_at"]),
        )


SYSTEM_ACTOR = "system"

TERMINAL_STATES = frozenset(
    {CaseState.CLOSED, CaseState.FAILED, CaseState.ROLLED_BACK, CaseState.CANCELLED}
)

CASE_ID_NAMESPACE = UUID("6f1c2a4e-3b7d-5c8e-9a0f-1d2e3b4c5a6f")


def case_id_for(assessment_id: UUID) -> UUID:
    """Case id derived from the assessment id, stable across restarts."""
    return uuid5(CASE_ID_NAMESPACE, str(assessment_id))


@dataclass
class ResponseCase:
    """Per-assessment response workflow.

    Owned by the orchestrator and changed only through state-machine
    transitions. ``plan`` is the step list captured from the playbook when
    the case was opened; later playbook reloads do not affect it.
    """

    assessment: ThreatAssessment
    event: Event
    plan: tuple[ActionStep, ...] = ()
    case_id: UUID = field(default_factory=uuid4)
    state: CaseState = CaseState.CREATED
    executed_steps: list[ActionOutcome] = field(default_factory=list)
    pending_approval: PendingApproval | None = None
    playbook_version: str | None = None
    mapped: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    closed_at: datetime | None = None
    close_reason: str | None = None

    # Gate verdicts by step id
    approval_decisions: dict[str, bool] = field(default_factory=dict)
    manual_remediation: list[str] = field(default_factory=list)

    # Audit bookkeeping
    next_sequence: int = 0
    started_steps: set[str] = field(default_factory=set)
    log_only_recorded: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def forward_outcome(self, step_id: str) -> ActionOutcome | None:
        """The final non-rollback outcome recorded for a step, if any."""
        for outcome in reversed(self.executed_steps):
            if outcome.step_id == step_id and not outcome.is_rollback:
                return outcome
        return None

    def next_step_index(self) -> int:
        """Index of the first plan step without a forward outcome."""
        for index, step in enumerate(self.plan):
            if self.forward_outcome(step.id) is None:
                return index
        return len(self.plan)

    def step(self, step_id: str) -> ActionStep:
        """Look up a plan step by id."""
        for step in self.plan:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def uncompensated(self) -> list[ActionOutcome]:
        """SUCCEEDED forward outcomes not yet rolled back or flagged for manual work.

        Newest first, the order compensation runs in.
        """
        done = {o.step_id for o in self.executed_steps if o.is_rollback}
        done.update(self.manual_remediation)
        return [
            o
            for o in reversed(self.executed_steps)
            if not o.is_rollback and o.result == StepResult.SUCCEEDED and o.step_id not in done
        ]

    def interrupted_steps(self) -> list[str]:
        """Started steps with no recorded outcome, in plan order."""
        return [
            s.id
            for s in self.plan
            if s.id in self.started_steps and self.forward_outcome(s.id) is None
        ]

    @property
    def compensation_started(self) -> bool:
        """True once any rollback or manual-remediation record exists."""
        return bool(self.manual_remediation) or any(o.is_rollback for o in self.executed_steps)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (case view)."""
        return {
            "case_id": str(self.case_id),
            "assessment_id": str(self.assessment.assessment_id),
            "event_id": str(self.event.id),
            "state": self.state.value,
            "threat_level": self.assessment.threat_level.value,
            "overall_score": self.assessment.overall_score,
            "playbook_version": self.playbook_version,
            "mapped": self.mapped,
            "plan": [s.to_dict() for s in self.plan],
            "executed_steps": [o.to_dict() for o in self.executed_steps],
            "pending_approval": (
                self.pending_approval.to_dict() if self.pending_approval else None
            ),
            "manual_remediation": list(self.manual_remediation),
            "created_at": self.created_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "close_reason": self.close_reason,
        }
