"""Audit record table backing the durable audit store."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, PortableJSON, PortableUUID, UTCDateTime


class AuditRecordModel(Base):
    """Immutable audit entry for a response case.

    Rows are append-only. ``(case_id, step_id, attempt)`` is the idempotency
    key: a second insert with the same key is rejected by the database and
    acknowledged by the store as a duplicate.
    """

    __tablename__ = "audit_records"

    record_id: Mapped[UUID] = mapped_column(PortableUUID(), primary_key=True)
    case_id: Mapped[UUID] = mapped_column(PortableUUID(), nullable=False)
    step_id: Mapped[str] = mapped_column(String(255), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    record_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(PortableJSON(), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        UniqueConstraint("case_id", "step_id", "attempt", name="uq_audit_records_key"),
        Index("idx_audit_records_case_sequence", "case_id", "sequence"),
        Index("idx_audit_records_type", "record_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditRecordModel(case={self.case_id}, step={self.step_id}, "
            f"attempt={self.attempt}, type={self.record_type})>"
        )
