"""Append-only, idempotent audit trail for assessments and response cases."""

from warden.audit.sql_store import SqlAuditStore
from warden.audit.store import AuditSink, InMemoryAuditStore
from warden.audit.types import (
    CASE_STEP_ID,
    AuditKey,
    AuditRecord,
    AuditRecordType,
    StepPhase,
    plan_step_id,
    step_key,
)
from warden.audit.writer import AuditWriter

__all__ = [
    "AuditRecord",
    "AuditRecordType",
    "AuditKey",
    "StepPhase",
    "CASE_STEP_ID",
    "step_key",
    "plan_step_id",
    "AuditSink",
    "InMemoryAuditStore",
    "SqlAuditStore",
    "AuditWriter",
]
