"""Threat response service: the ingestion entry point.

``submit_event`` allocates an assessment id and spawns one tracked task per
event that assesses it and hands the assessment to the orchestrator. The
service owns startup resumption of persisted cases and graceful shutdown.
"""

import asyncio
from collections.abc import Iterable
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncEngine

from warden.audit import AuditSink, AuditWriter, InMemoryAuditStore, SqlAuditStore
from warden.config.settings import Settings, get_settings
from warden.core.exceptions import ServiceUnavailableError
from warden.core.logging import LogContext, get_logger
from warden.db.config import close_db, create_engine, create_session_factory, init_db
from warden.detection import (
    AggregatorConfig,
    Analyzer,
    Event,
    RiskAggregator,
    ScoringConfig,
    ThreatAssessment,
    create_threat_classifier,
)
from warden.detection.analyzers import (
    AccessBaselineAnalyzer,
    AuthFailureAnalyzer,
    GeoVelocityAnalyzer,
    IpReputationAnalyzer,
    RequestPatternAnalyzer,
)
from warden.observability.metrics import PIPELINES_IN_FLIGHT, record_event_submitted
from warden.response import (
    ApprovalDecision,
    ApprovalGateway,
    CaseState,
    ExecutorRegistry,
    InMemoryApprovalGateway,
    LogOnlyExecutor,
    OrchestratorConfig,
    Playbook,
    PlaybookRegistry,
    ResponseCase,
    ResponseOrchestrator,
    WebhookActionExecutor,
    WebhookApprovalGateway,
    case_id_for,
)
from warden.utils.exceptions import ConfigurationError

logger = get_logger(__name__)


class ThreatResponseService:
    """Wires the aggregator to the orchestrator and tracks event pipelines.

    Example:
        service = create_threat_response_service(settings)
        await service.start()
        assessment_id = await service.submit_event(event)
        ...
        await service.shutdown()
    """

    def __init__(
        self,
        aggregator: RiskAggregator,
        orchestrator: ResponseOrchestrator,
        *,
        settings: Settings | None = None,
        engine: AsyncEngine | None = None,
    ):
        self.aggregator = aggregator
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        self._engine = engine
        self._tasks: dict[asyncio.Task, UUID | None] = {}
        self._assessments: dict[UUID, ThreatAssessment] = {}
        self._accepting = True
        self._started = False

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def in_flight(self) -> int:
        """Pipelines and resumed cases still running."""
        return len(self._tasks)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> int:
        """Prepare storage and resume persisted cases.

        Returns:
            Number of resumed non-terminal cases.
        """
        if self._started:
            return 0
        if self._engine is not None:
            await init_db(self._engine, create_tables=self.settings.ENVIRONMENT != "production")

        resumable = await self.orchestrator.resume_cases()
        for case in resumable:
            self._track(self.orchestrator.run(case), case.assessment.assessment_id)
        self._started = True

        logger.info("threat_response_service_started", resumed=len(resumable))
        return len(resumable)

    async def shutdown(self, drain_timeout: float | None = None) -> None:
        """Stop accepting events and drain in-flight pipelines.

        Pipelines parked on an approval gate are cancelled straight away;
        their state is in the audit log and they resume on the next start.
        Other pipelines get ``drain_timeout`` seconds to finish.
        """
        self._accepting = False
        timeout = self.settings.SHUTDOWN_DRAIN_SECONDS if drain_timeout is None else drain_timeout

        for task, assessment_id in list(self._tasks.items()):
            case = (
                self.orchestrator.cached_case(case_id_for(assessment_id)) if assessment_id else None
            )
            if case is not None and case.state == CaseState.AWAITING_APPROVAL:
                task.cancel()

        pending: set[asyncio.Task] = set()
        if self._tasks:
            _, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self._close_clients()
        if self._engine is not None:
            await close_db(self._engine)

        logger.info("threat_response_service_stopped", cancelled=len(pending))

    async def join(self, timeout: float | None = None) -> None:
        """Wait for the current pipelines to finish (or suspend past ``timeout``)."""
        if self._tasks:
            await asyncio.wait(list(self._tasks), timeout=timeout)

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    async def submit_event(self, event: Event) -> UUID:
        """Accept an event for assessment and response.

        Returns immediately with the assessment id; the pipeline runs as a
        tracked background task.

        Raises:
            ServiceUnavailableError: If the service is shutting down.
        """
        if not self._accepting:
            raise ServiceUnavailableError()

        assessment_id = uuid4()
        record_event_submitted(event.kind.value)
        self._track(self._process(event, assessment_id), assessment_id)
        logger.debug(
            "event_submitted",
            event_id=str(event.id),
            event_kind=event.kind.value,
            assessment_id=str(assessment_id),
        )
        return assessment_id

    async def _process(self, event: Event, assessment_id: UUID) -> ResponseCase:
        with LogContext(assessment_id=str(assessment_id), event_id=str(event.id)):
            assessment = await self.aggregator.assess(event, assessment_id=assessment_id)
            # Held only until the case has recorded it
            self._assessments[assessment_id] = assessment
            try:
                case = await self.orchestrator.open_case(assessment, event)
            finally:
                self._assessments.pop(assessment_id, None)
            return await self.orchestrator.run(case)

    def _track(self, coro, assessment_id: UUID | None) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks[task] = assessment_id
        PIPELINES_IN_FLIGHT.inc()
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        assessment_id = self._tasks.pop(task, None)
        PIPELINES_IN_FLIGHT.dec()
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "pipeline_failed",
                assessment_id=str(assessment_id) if assessment_id else None,
                error_type=type(error).__name__,
                error=str(error),
                exc_info=error,
            )

    # -------------------------------------------------------------------------
    # Lookups and operator actions
    # -------------------------------------------------------------------------

    async def get_assessment(self, assessment_id: UUID) -> ThreatAssessment | None:
        """Get a finalized assessment, None while it is still being computed."""
        assessment = self._assessments.get(assessment_id)
        if assessment is not None:
            return assessment
        case = await self.orchestrator.case_for_assessment(assessment_id)
        return case.assessment if case else None

    async def get_case(self, case_id: UUID) -> ResponseCase:
        return await self.orchestrator.get_case(case_id)

    async def case_for_assessment(self, assessment_id: UUID) -> ResponseCase | None:
        return await self.orchestrator.case_for_assessment(assessment_id)

    async def submit_approval_decision(self, handle: str, decision: ApprovalDecision) -> UUID:
        return await self.orchestrator.submit_approval_decision(handle, decision)

    async def cancel_case(self, case_id: UUID, reason: str | None = None) -> ResponseCase:
        return await self.orchestrator.cancel_case(case_id, reason)

    async def mark_false_positive(self, case_id: UUID, reason: str | None = None) -> ResponseCase:
        return await self.orchestrator.mark_false_positive(case_id, reason)

    def reload_playbook(self) -> Playbook:
        """Reload the playbook file; in-flight cases keep their plans.

        Raises:
            ConfigurationError: If no file is configured or it is invalid.
        """
        if not self.settings.PLAYBOOK_PATH:
            raise ConfigurationError("PLAYBOOK_PATH is not configured")
        return self.orchestrator.playbooks.load_file(self.settings.PLAYBOOK_PATH)

    async def _close_clients(self) -> None:
        approvals = self.orchestrator.approvals
        if isinstance(approvals, WebhookApprovalGateway):
            await approvals.aclose()
        for executor in self.orchestrator.executors.executors():
            if isinstance(executor, WebhookActionExecutor):
                await executor.aclose()


def default_analyzers() -> list[Analyzer]:
    """Reference analyzers with their default configuration."""
    return [
        IpReputationAnalyzer(),
        AuthFailureAnalyzer(),
        RequestPatternAnalyzer(),
        AccessBaselineAnalyzer(),
        GeoVelocityAnalyzer(),
    ]


def create_threat_response_service(
    settings: Settings | None = None,
    *,
    analyzers: Iterable[Analyzer] | None = None,
    executors: ExecutorRegistry | None = None,
    approvals: ApprovalGateway | None = None,
    audit_sink: AuditSink | None = None,
    playbooks: PlaybookRegistry | None = None,
) -> ThreatResponseService:
    """Build a fully wired service from settings.

    Components not passed in are created from settings: the reference
    analyzers, a webhook or log-only executor, a webhook or in-memory
    approval gateway, and a SQL audit store on ``DATABASE_URL``.

    Raises:
        ConfigurationError: If the threshold bounds or playbook are invalid.
    """
    settings = settings or get_settings()
    detection = settings.detection
    response = settings.response

    aggregator = RiskAggregator(
        analyzers=default_analyzers() if analyzers is None else analyzers,
        classifier=create_threat_classifier(
            detection.low_max, detection.medium_max, detection.high_max
        ),
        config=AggregatorConfig(
            deadline_seconds=detection.analyzer_deadline_seconds,
            scoring=ScoringConfig(
                decay=detection.diminishing_decay,
                critical_floor=detection.critical_floor,
            ),
        ),
    )

    if playbooks is None:
        playbooks = PlaybookRegistry(
            default_approval_timeout=response.default_approval_timeout_seconds
        )
        if settings.PLAYBOOK_PATH:
            playbooks.load_file(settings.PLAYBOOK_PATH)

    if executors is None:
        executors = ExecutorRegistry()
        if response.executor_webhook_url:
            executors.set_default(
                WebhookActionExecutor(
                    response.executor_webhook_url,
                    timeout_seconds=response.webhook_timeout_seconds,
                )
            )
        else:
            executors.set_default(LogOnlyExecutor())

    if approvals is None:
        if response.approval_webhook_url:
            approvals = WebhookApprovalGateway(
                response.approval_webhook_url,
                timeout_seconds=response.webhook_timeout_seconds,
            )
        else:
            approvals = InMemoryApprovalGateway()

    engine: AsyncEngine | None = None
    if audit_sink is None:
        if settings.DATABASE_URL == "memory://":
            audit_sink = InMemoryAuditStore()
        else:
            engine = create_engine(settings)
            audit_sink = SqlAuditStore(create_session_factory(engine))

    orchestrator = ResponseOrchestrator(
        playbooks=playbooks,
        executors=executors,
        approvals=approvals,
        audit=AuditWriter(audit_sink, settings.audit),
        config=OrchestratorConfig.from_settings(response),
    )

    logger.info(
        "threat_response_service_configured",
        analyzers=[a.name for a in aggregator.analyzers],
        playbook_version=playbooks.current.version,
        audit_store=type(audit_sink).__name__,
        approvals=type(approvals).__name__,
    )
    return ThreatResponseService(aggregator, orchestrator, settings=settings, engine=engine)
