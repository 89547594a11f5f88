"""Risk Aggregator: concurrent analyzer fan-out with a bounded deadline.

For one event the aggregator:
1. Selects the registered analyzers that apply to the event kind
2. Runs each in its own asyncio task against the same event
3. Collects factors in completion order until all finish or the deadline passes
4. Cancels stragglers and records failed/timed-out analyzers as
   ``analyzer_unavailable`` factors
5. Combines the finalized factor set into one score and classifies it
"""

import asyncio
from collections.abc import Iterable
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from warden.core.logging import get_logger
from warden.detection.classifier import ThreatClassifier
from warden.detection.protocol import Analyzer, applies_to, normalize_output
from warden.detection.scoring import ScoringConfig, combine_scores
from warden.detection.types import Event, RiskFactor, ThreatAssessment
from warden.observability.metrics import observe_assessment, record_analyzer_failure
from warden.observability.tracing import annotate_span, traced_async

logger = get_logger(__name__)

TIMEOUT_REASON = "timeout"


class AggregatorConfig(BaseModel):
    """Configuration for the risk aggregator."""

    deadline_seconds: float = Field(
        default=2.0, gt=0.0, description="Bounded wait for all analyzers of one event"
    )
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)


class RiskAggregator:
    """Runs analyzers concurrently and produces a finalized ThreatAssessment.

    Example:
        aggregator = RiskAggregator(
            analyzers=[IpReputationAnalyzer(config), AuthFailureAnalyzer()],
            classifier=ThreatClassifier(),
        )
        assessment = await aggregator.assess(event)
    """

    def __init__(
        self,
        analyzers: Iterable[Analyzer] = (),
        classifier: ThreatClassifier | None = None,
        config: AggregatorConfig | None = None,
    ):
        """Initialize the aggregator.

        Args:
            analyzers: Initial analyzers.
            classifier: Threat classifier (default bands if None).
            config: Aggregator configuration.
        """
        self.config = config or AggregatorConfig()
        self.classifier = classifier or ThreatClassifier()
        self._analyzers: dict[str, Analyzer] = {}
        for analyzer in analyzers:
            self.register(analyzer)

    def register(self, analyzer: Analyzer) -> None:
        """Register an analyzer.

        Raises:
            ValueError: If an analyzer with the same name is already registered.
        """
        if analyzer.name in self._analyzers:
            raise ValueError(f"Analyzer already registered: {analyzer.name}")
        self._analyzers[analyzer.name] = analyzer
        logger.debug("analyzer_registered", analyzer=analyzer.name)

    @property
    def analyzers(self) -> list[Analyzer]:
        """Registered analyzers in registration order."""
        return list(self._analyzers.values())

    @traced_async("detection.assess")
    async def assess(self, event: Event, assessment_id: UUID | None = None) -> ThreatAssessment:
        """Assess one event.

        Never raises because of an analyzer: errors and deadline overruns
        become ``analyzer_unavailable`` factors with zero score.

        Args:
            event: Event under assessment.
            assessment_id: Pre-allocated assessment id (generated if None).

        Returns:
            Finalized, immutable ThreatAssessment.
        """
        applicable = [a for a in self._analyzers.values() if applies_to(a, event)]
        annotate_span(
            event_id=event.id, event_kind=event.kind, analyzers=len(applicable)
        )

        with observe_assessment(event.kind.value) as metrics_ctx:
            factors, failed, timed_out = await self._collect(event, applicable)

            overall_score = combine_scores(factors, self.config.scoring)
            threat_level = self.classifier.classify(overall_score)
            metrics_ctx["score"] = overall_score
            metrics_ctx["level"] = threat_level.value

        assessment = ThreatAssessment(
            assessment_id=assessment_id or uuid4(),
            event_id=event.id,
            event_kind=event.kind,
            factors=tuple(factors),
            overall_score=overall_score,
            threat_level=threat_level,
            analyzers_run=len(applicable),
            analyzers_failed=failed,
            timed_out=tuple(timed_out),
        )

        annotate_span(overall_score=overall_score, threat_level=threat_level)
        logger.info(
            "assessment_finalized",
            assessment_id=str(assessment.assessment_id),
            event_id=str(event.id),
            event_kind=event.kind.value,
            overall_score=overall_score,
            threat_level=threat_level.value,
            factors=len(factors),
            analyzers_failed=failed,
        )
        return assessment

    async def _collect(
        self,
        event: Event,
        analyzers: list[Analyzer],
    ) -> tuple[list[RiskFactor], int, list[str]]:
        """Run analyzers until all complete or the deadline passes.

        Returns:
            Factors in completion order, failed analyzer count, and the
            names of analyzers cancelled at the deadline.
        """
        if not analyzers:
            return [], 0, []

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.deadline_seconds

        tasks: dict[asyncio.Task, Analyzer] = {
            asyncio.create_task(
                self._run(analyzer, event, deadline), name=f"analyzer:{analyzer.name}"
            ): analyzer
            for analyzer in analyzers
        }

        factors: list[RiskFactor] = []
        failed = 0
        timed_out: list[str] = []
        pending = set(tasks)

        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    analyzer = tasks[task]
                    produced = self._harvest(task, analyzer)
                    if produced is None:
                        failed += 1
                        factors.append(RiskFactor.unavailable(analyzer.name, "error"))
                    else:
                        factors.extend(produced)
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for task in pending:
            analyzer = tasks[task]
            failed += 1
            timed_out.append(analyzer.name)
            factors.append(RiskFactor.unavailable(analyzer.name, TIMEOUT_REASON))
            record_analyzer_failure(analyzer.name, TIMEOUT_REASON)
            logger.warning(
                "analyzer_timed_out",
                analyzer=analyzer.name,
                event_id=str(event.id),
                deadline_seconds=self.config.deadline_seconds,
            )

        return factors, failed, timed_out

    @staticmethod
    async def _run(analyzer: Analyzer, event: Event, deadline: float):
        """Call an analyzer with whatever is left of the deadline when its task starts."""
        remaining = max(deadline - asyncio.get_running_loop().time(), 0.0)
        return await analyzer.analyze(event, timeout_seconds=remaining)

    def _harvest(self, task: asyncio.Task, analyzer: Analyzer) -> list[RiskFactor] | None:
        """Extract factors from a finished analyzer task, None on failure."""
        if task.cancelled():
            error: BaseException = asyncio.CancelledError()
        else:
            error = task.exception()

        if error is None:
            try:
                produced = normalize_output(task.result())
                if all(isinstance(f, RiskFactor) for f in produced):
                    return produced
                error = TypeError(f"Analyzer {analyzer.name} returned a non-RiskFactor value")
            except TypeError as e:
                error = e

        record_analyzer_failure(analyzer.name, "error")
        logger.warning(
            "analyzer_failed",
            analyzer=analyzer.name,
            error_type=type(error).__name__,
            error=str(error),
        )
        return None


def create_risk_aggregator(
    analyzers: Iterable[Analyzer] = (),
    classifier: ThreatClassifier | None = None,
    config: AggregatorConfig | None = None,
) -> RiskAggregator:
    """Create a risk aggregator.

    Args:
        analyzers: Analyzers to register.
        classifier: Threat classifier.
        config: Aggregator configuration.

    Returns:
        Configured RiskAggregator.
    """
    return RiskAggregator(analyzers=analyzers, classifier=classifier, config=config)
