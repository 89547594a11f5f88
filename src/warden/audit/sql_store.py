"""Durable audit store on SQLAlchemy async."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from warden.audit.types import AuditRecord, AuditRecordType
from warden.core.exceptions import AuditWriteError
from warden.core.logging import get_logger
from warden.db.models import AuditRecordModel

logger = get_logger(__name__)


class SqlAuditStore:
    """Audit store backed by the ``audit_records`` table.

    Each append commits its own transaction, so an acknowledged write is
    durable. The unique key constraint makes appends idempotent: an
    ``IntegrityError`` on insert means another writer (or an earlier retry)
    already stored the record.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append_record(self, record: AuditRecord) -> bool:
        try:
            async with self._session_factory() as session:
                if await self._exists(session, record):
                    return False
                session.add(self._to_model(record))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.debug(
                        "audit_record_duplicate",
                        case_id=str(record.case_id),
                        step_id=record.step_id,
                        attempt=record.attempt,
                    )
                    return False
                return True
        except SQLAlchemyError as e:
            raise AuditWriteError(
                f"Failed to store {record.record_type.value} record: {e}",
                case_id=record.case_id,
                step_id=record.step_id,
                attempt=record.attempt,
            ) from e

    async def list_records(self, case_id: UUID) -> list[AuditRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AuditRecordModel)
                .where(AuditRecordModel.case_id == case_id)
                .order_by(AuditRecordModel.sequence)
            )
            return [self._from_model(row) for row in result.scalars()]

    async def list_case_ids(self) -> list[UUID]:
        async with self._session_factory() as session:
            result = await session.execute(select(AuditRecordModel.case_id).distinct())
            return list(result.scalars())

    @staticmethod
    async def _exists(session: AsyncSession, record: AuditRecord) -> bool:
        result = await session.execute(
            select(AuditRecordModel.record_id).where(
                AuditRecordModel.case_id == record.case_id,
                AuditRecordModel.step_id == record.step_id,
                AuditRecordModel.attempt == record.attempt,
            )
        )
        return result.first() is not None

    @staticmethod
    def _to_model(record: AuditRecord) -> AuditRecordModel:
        return AuditRecordModel(
            record_id=record.record_id,
            case_id=record.case_id,
            step_id=record.step_id,
            attempt=record.attempt,
            sequence=record.sequence,
            record_type=record.record_type.value,
            payload=record.payload,
            recorded_at=record.recorded_at,
        )

    @staticmethod
    def _from_model(row: AuditRecordModel) -> AuditRecord:
        return AuditRecord(
            record_id=row.record_id,
            case_id=row.case_id,
            step_id=row.step_id,
            attempt=row.attempt,
            sequence=row.sequence,
            record_type=AuditRecordType(row.record_type),
            payload=row.payload,
            recorded_at=row.recorded_at,
        )
