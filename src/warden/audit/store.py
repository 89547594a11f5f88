"""Audit sink protocol and in-memory store."""

import asyncio
from typing import Protocol, runtime_checkable
from uuid import UUID

from warden.audit.types import AuditKey, AuditRecord
from warden.core.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class AuditSink(Protocol):
    """Append-only, idempotent audit storage.

    ``append_record`` must return only after the record is durably stored.
    A record whose key is already stored is acknowledged without a second
    copy. Implementations raise on failure; the writer retries.
    """

    async def append_record(self, record: AuditRecord) -> bool:
        """Store a record.

        Returns:
            True if the record was newly stored, False if the key existed.
        """
        ...

    async def list_records(self, case_id: UUID) -> list[AuditRecord]:
        """List a case's records in sequence order."""
        ...

    async def list_case_ids(self) -> list[UUID]:
        """List every case with at least one record."""
        ...


class InMemoryAuditStore:
    """In-memory audit store for tests and single-process use."""

    def __init__(self) -> None:
        self._records: dict[UUID, list[AuditRecord]] = {}
        self._keys: set[AuditKey] = set()
        self._lock = asyncio.Lock()

    async def append_record(self, record: AuditRecord) -> bool:
        async with self._lock:
            if record.key in self._keys:
                logger.debug(
                    "audit_record_duplicate",
                    case_id=str(record.case_id),
                    step_id=record.step_id,
                    attempt=record.attempt,
                )
                return False
            self._keys.add(record.key)
            self._records.setdefault(record.case_id, []).append(record)
            return True

    async def list_records(self, case_id: UUID) -> list[AuditRecord]:
        return sorted(self._records.get(case_id, []), key=lambda r: r.sequence)

    async def list_case_ids(self) -> list[UUID]:
        return list(self._records)

    def __len__(self) -> int:
        return sum(len(records) for records in self._records.values())
