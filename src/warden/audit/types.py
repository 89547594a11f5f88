"""Audit record model and idempotency key scheme.

Every record carries an idempotency key ``(case_id, step_id, attempt)``:

- Case-level records (assessment, case opened, state transitions, log-only
  default) use ``step_id="case"`` and the record's per-case sequence number
  as ``attempt``.
- Step-level records use ``"<plan step id>/<phase>"`` as ``step_id``, where
  phase is one of ``started``, ``outcome``, ``approval-requested``,
  ``approval-decided``, ``rollback`` or ``manual``. ``attempt`` is the
  executor attempt count for outcomes and rollbacks, and the approval round
  for approval records.

Re-sending a record with the same key never stores a second copy.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

CASE_STEP_ID = "case"


class AuditRecordType(str, Enum):
    """Kinds of audit records."""

    ASSESSMENT_RECORDED = "assessment_recorded"
    CASE_OPENED = "case_opened"
    STATE_TRANSITION = "state_transition"
    STEP_STARTED = "step_started"
    ACTION_OUTCOME = "action_outcome"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_DECIDED = "approval_decided"
    LOG_ONLY_DEFAULT = "log_only_default"
    ROLLBACK_OUTCOME = "rollback_outcome"
    MANUAL_REMEDIATION_REQUIRED = "manual_remediation_required"


class StepPhase(str, Enum):
    """Suffixes used to build step-level record keys."""

    STARTED = "started"
    OUTCOME = "outcome"
    APPROVAL_REQUESTED = "approval-requested"
    APPROVAL_DECIDED = "approval-decided"
    ROLLBACK = "rollback"
    MANUAL = "manual"


def step_key(step_id: str, phase: StepPhase) -> str:
    """Build the key step id for a step-level record."""
    return f"{step_id}/{phase.value}"


def plan_step_id(key_step_id: str) -> str | None:
    """Recover the plan step id from a record step id, None for case-level."""
    if key_step_id == CASE_STEP_ID:
        return None
    return key_step_id.rsplit("/", 1)[0]


AuditKey = tuple[UUID, str, int]


@dataclass(frozen=True)
class AuditRecord:
    """One append-only audit entry."""

    case_id: UUID
    step_id: str
    attempt: int
    sequence: int
    record_type: AuditRecordType
    payload: dict[str, Any] = field(default_factory=dict)
    record_id: UUID = field(default_factory=uuid4)
    recorded_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def key(self) -> AuditKey:
        """Idempotency key."""
        return (self.case_id, self.step_id, self.attempt)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "record_id": str(self.record_id),
            "case_id": str(self.case_id),
            "step_id": self.step_id,
            "attempt": self.attempt,
            "sequence": self.sequence,
            "record_type": self.record_type.value,
            "payload": self.payload,
            "recorded_at": self.recorded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditRecord":
        """Create from dictionary."""
        return cls(
            record_id=UUID(data["record_id"]),
            case_id=UUID(data["case_id"]),
            step_id=data["step_id"],
            attempt=data["attempt"],
            sequence=data["sequence"],
            record_type=AuditRecordType(data["record_type"]),
            payload=data.get("payload", {}),
            recorded_at=datetime.fromisoformat(data["recorded_at"]),
        )
