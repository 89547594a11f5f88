"""Rebuild response cases from their audit records.

Records are applied in sequence order, and each record type only appends to
or overwrites the field it describes. Rebuilding from any prefix of a
case's records therefore yields the committed outcomes of that prefix in
their original order.
"""

from collections.abc import Iterable
from datetime import datetime

from warden.audit.types import AuditRecord, AuditRecordType
from warden.detection.types import Event, ThreatAssessment
from warden.response.types import (
    TERMINAL_STATES,
    ActionOutcome,
    ActionStep,
    CaseState,
    PendingApproval,
    ResponseCase,
)


class ReplayError(ValueError):
    """Raised when a record stream cannot describe a case."""


def rebuild_case(records: Iterable[AuditRecord]) -> ResponseCase:
    """Reconstruct a case from its audit records.

    Raises:
        ReplayError: If the stream lacks the assessment or case-opened record.
    """
    ordered = sorted(records, key=lambda r: r.sequence)
    assessment: ThreatAssessment | None = None
    event: Event | None = None
    case: ResponseCase | None = None

    for record in ordered:
        payload = record.payload
        kind = record.record_type

        if kind == AuditRecordType.ASSESSMENT_RECORDED:
            assessment = ThreatAssessment.from_dict(payload["assessment"])
            event = Event.from_dict(payload["event"])
            continue

        if kind == AuditRecordType.CASE_OPENED:
            if assessment is None or event is None:
                raise ReplayError(f"Case {record.case_id} opened before its assessment")
            case = ResponseCase(
                case_id=record.case_id,
                assessment=assessment,
                event=event,
                plan=tuple(ActionStep.from_dict(s) for s in payload.get("plan", [])),
                playbook_version=payload.get("playbook_version"),
                mapped=payload.get("mapped", True),
                created_at=record.recorded_at,
            )
            continue

        if case is None:
            raise ReplayError(f"Record {record.record_type.value} precedes case opening")

        if kind == AuditRecordType.STATE_TRANSITION:
            case.state = CaseState(payload["to_state"])
            if case.state in TERMINAL_STATES:
                case.closed_at = record.recorded_at
                case.close_reason = payload.get("reason")
        elif kind == AuditRecordType.STEP_STARTED:
            case.started_steps.add(payload["step_id"])
        elif kind in (AuditRecordType.ACTION_OUTCOME, AuditRecordType.ROLLBACK_OUTCOME):
            case.executed_steps.append(ActionOutcome.from_dict(payload["outcome"]))
        elif kind == AuditRecordType.APPROVAL_REQUESTED:
            case.pending_approval = PendingApproval.from_dict(payload["pending"])
        elif kind == AuditRecordType.APPROVAL_DECIDED:
            _apply_approval_decided(case, payload)
        elif kind == AuditRecordType.LOG_ONLY_DEFAULT:
            case.log_only_recorded = True
        elif kind == AuditRecordType.MANUAL_REMEDIATION_REQUIRED:
            case.manual_remediation.append(payload["step_id"])

        case.next_sequence = record.sequence + 1

    if case is None:
        raise ReplayError("No case-opened record found")
    case.next_sequence = max(case.next_sequence, ordered[-1].sequence + 1)
    return case


def _apply_approval_decided(case: ResponseCase, payload: dict) -> None:
    if payload.get("escalation"):
        if case.pending_approval is not None:
            case.pending_approval.escalated = True
            case.pending_approval.deadline = datetime.fromisoformat(payload["deadline"])
        return

    case.approval_decisions[payload["step_id"]] = payload["decision"]["approved"]
    case.pending_approval = None
