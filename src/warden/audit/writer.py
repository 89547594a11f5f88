"""Audit writer: unbounded retry in front of an audit sink.

The orchestrator must not advance a case before its audit record is stored,
so a failing sink blocks the case rather than losing the record. The writer
retries forever with capped exponential backoff and escalates to the
operator through a critical log line once failures pass a threshold.
"""

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_never,
    wait_exponential,
)

from warden.audit.store import AuditSink
from warden.audit.types import AuditRecord
from warden.config.settings import AuditSettings
from warden.core.logging import get_logger
from warden.observability.metrics import record_audit_retry

logger = get_logger(__name__)


class AuditWriter:
    """Writes audit records, retrying until the sink accepts them."""

    def __init__(self, sink: AuditSink, config: AuditSettings | None = None):
        self.sink = sink
        self.config = config or AuditSettings()
        self.total_failures = 0

    async def write(self, record: AuditRecord) -> bool:
        """Write one record, blocking until it is stored.

        Returns:
            True if newly stored, False if the key was already present.
        """
        retrying = AsyncRetrying(
            stop=stop_never,
            wait=wait_exponential(
                multiplier=self.config.retry_base_seconds,
                max=self.config.retry_max_seconds,
            ),
            retry=retry_if_exception_type(Exception),
            before_sleep=lambda state: self._on_failure(record, state),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                stored = await self.sink.append_record(record)

        if retrying.statistics.get("attempt_number", 1) > 1:
            logger.info(
                "audit_write_recovered",
                case_id=str(record.case_id),
                record_type=record.record_type.value,
                attempts=retrying.statistics["attempt_number"],
            )
        return stored

    def _on_failure(self, record: AuditRecord, state: RetryCallState) -> None:
        self.total_failures += 1
        record_audit_retry(record.record_type.value)

        error = state.outcome.exception() if state.outcome else None
        context = {
            "case_id": str(record.case_id),
            "step_id": record.step_id,
            "attempt": record.attempt,
            "record_type": record.record_type.value,
            "failures": state.attempt_number,
            "error": str(error),
        }
        if state.attempt_number >= self.config.alert_after_failures:
            logger.critical("audit_write_blocked", **context)
        else:
            logger.warning("audit_write_failed", **context)
