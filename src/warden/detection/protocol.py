"""Analyzer protocol for pluggable signal collectors.

Every source of risk signal (IP reputation, geolocation, device fingerprint,
request/auth pattern, behavioral baseline deviation) is an analyzer. The
aggregator treats them uniformly: it only knows the contract below.
"""

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from warden.detection.types import Event, EventKind, RiskFactor

AnalyzerOutput = RiskFactor | Sequence[RiskFactor] | None


@runtime_checkable
class Analyzer(Protocol):
    """Interface all analyzers must implement.

    Example implementation:
        class BlocklistAnalyzer:
            name = "blocklist"
            event_kinds = frozenset({EventKind.AUTH_ATTEMPT})

            async def analyze(self, event, *, timeout_seconds):
                if event.source_address in BLOCKED:
                    return RiskFactor(
                        type="blocked_source",
                        severity=Severity.CRITICAL,
                        score=80,
                        source_analyzer=self.name,
                    )
                return None
    """

    @property
    def name(self) -> str:
        """Unique analyzer name, used as ``RiskFactor.source_analyzer``."""
        ...

    @property
    def event_kinds(self) -> frozenset[EventKind]:
        """Event kinds this analyzer applies to. Empty means all kinds."""
        ...

    async def analyze(self, event: Event, *, timeout_seconds: float) -> AnalyzerOutput:
        """Analyze one event.

        Implementations must finish within ``timeout_seconds`` and must
        tolerate cancellation; the aggregator cancels analyzers that overrun
        the deadline.

        Args:
            event: The event under assessment.
            timeout_seconds: Time remaining before the assessment deadline.

        Returns:
            A single factor, several factors, or None when nothing is suspicious.

        Raises:
            Exception: Any error; it is contained by the aggregator.
        """
        ...


def applies_to(analyzer: Analyzer, event: Event) -> bool:
    """Check whether an analyzer should run for an event."""
    kinds = analyzer.event_kinds
    return not kinds or event.kind in kinds


def normalize_output(output: AnalyzerOutput) -> list[RiskFactor]:
    """Normalize analyzer output to a list of factors."""
    if output is None:
        return []
    if isinstance(output, RiskFactor):
        return [output]
    return list(output)
