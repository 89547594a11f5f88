"""Unit tests for the audit store, writer and key scheme."""

from uuid import uuid4

import pytest

from warden.audit import (
    CASE_STEP_ID,
    AuditRecord,
    AuditRecordType,
    AuditWriter,
    InMemoryAuditStore,
    StepPhase,
    plan_step_id,
    step_key,
)
from warden.config.settings import AuditSettings
from warden.core.exceptions import AuditWriteError


def record(case_id=None, step_id=CASE_STEP_ID, attempt=0, sequence=0, **payload):
    return AuditRecord(
        case_id=case_id or uuid4(),
        step_id=step_id,
        attempt=attempt,
        sequence=sequence,
        record_type=AuditRecordType.STATE_TRANSITION,
        payload=payload,
    )


class FlakySink(InMemoryAuditStore):
    """Store that fails a fixed number of appends before accepting."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def append_record(self, record):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise AuditWriteError("disk full", record.case_id, record.step_id, record.attempt)
        return await super().append_record(record)


class TestKeyScheme:
    """Tests for step keys."""

    def test_step_key(self):
        assert step_key("lock", StepPhase.OUTCOME) == "lock/outcome"
        assert step_key("block", StepPhase.APPROVAL_DECIDED) == "block/approval-decided"

    def test_plan_step_id(self):
        assert plan_step_id("lock/outcome") == "lock"
        assert plan_step_id(CASE_STEP_ID) is None


class TestInMemoryAuditStore:
    """Tests for InMemoryAuditStore."""

    @pytest.mark.asyncio
    async def test_append_and_list_in_sequence_order(self):
        store = InMemoryAuditStore()
        case_id = uuid4()
        await store.append_record(record(case_id, attempt=1, sequence=1))
        await store.append_record(record(case_id, attempt=0, sequence=0))

        records = await store.list_records(case_id)

        assert [r.sequence for r in records] == [0, 1]
        assert await store.list_case_ids() == [case_id]

    @pytest.mark.asyncio
    async def test_duplicate_key_stored_once(self):
        store = InMemoryAuditStore()
        case_id = uuid4()
        first = record(case_id, step_id="lock/outcome", attempt=1, sequence=3)
        retry = record(case_id, step_id="lock/outcome", attempt=1, sequence=3)

        assert await store.append_record(first) is True
        assert await store.append_record(retry) is False
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_unknown_case_has_no_records(self):
        assert await InMemoryAuditStore().list_records(uuid4()) == []


class TestAuditWriter:
    """Tests for AuditWriter retries."""

    @pytest.mark.asyncio
    async def test_retries_until_stored(self):
        sink = FlakySink(failures=3)
        writer = AuditWriter(sink, AuditSettings(retry_base_seconds=0.0, retry_max_seconds=0.0))
        entry = record()

        stored = await writer.write(entry)

        assert stored is True
        assert sink.calls == 4
        assert writer.total_failures == 3
        assert await sink.list_records(entry.case_id) == [entry]

    @pytest.mark.asyncio
    async def test_escalates_after_threshold(self):
        sink = FlakySink(failures=2)
        writer = AuditWriter(
            sink,
            AuditSettings(retry_base_seconds=0.0, retry_max_seconds=0.0, alert_after_failures=1),
        )

        assert await writer.write(record()) is True
        assert writer.total_failures == 2

    @pytest.mark.asyncio
    async def test_duplicate_write_acknowledged(self, audit_writer):
        entry = record()
        assert await audit_writer.write(entry) is True
        assert await audit_writer.write(entry) is False


class TestAuditRecord:
    """Tests for AuditRecord."""

    def test_key(self):
        entry = record(step_id="block/approval-decided", attempt=2)
        assert entry.key == (entry.case_id, "block/approval-decided", 2)

    def test_from_dict_restores_record(self):
        entry = record(from_state="executing", to_state="closed")
        assert AuditRecord.from_dict(entry.to_dict()) == entry
