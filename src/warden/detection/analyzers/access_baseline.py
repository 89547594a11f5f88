"""Behavioral baseline analyzer for data access volume.

Each subject has a running baseline of accessed record counts, maintained
with Welford's online algorithm. Once the baseline holds ``min_samples``
observations, the z-score of a new access is mapped to a severity. The new
observation is folded into the baseline after it is scored.

The standard deviation used for scoring never drops below a floor, so a
subject with a perfectly flat history still gets flagged for a spike.
Non-finite volumes are rejected before they reach the baseline.
"""

import math
from dataclasses import dataclass

from pydantic import BaseModel, Field

from warden.core.logging import get_logger
from warden.detection.analyzers.state import BoundedState
from warden.detection.types import Event, EventKind, RiskFactor, Severity

logger = get_logger(__name__)


@dataclass
class RunningStats:
    """Welford running mean and variance."""

    count: int = 0
    mean: float = 0.0
    m2: float = 0.0

    def update(self, value: float) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)

    @property
    def variance(self) -> float:
        if self.count < 2:
            return 0.0
        return self.m2 / (self.count - 1)

    @property
    def std_dev(self) -> float:
        return math.sqrt(self.variance)

    def z_score(self, value: float, min_std_dev: float = 0.0) -> float:
        """Deviation of a value in standard deviations.

        Args:
            value: Observation to score.
            min_std_dev: Floor applied to the baseline's standard deviation.

        Returns:
            The z-score, or 0 if the baseline is flat and no floor is given.
        """
        std = max(self.std_dev, min_std_dev)
        if std == 0:
            return 0.0
        return (value - self.mean) / std


class AccessBaselineConfig(BaseModel):
    """Thresholds for baseline deviation."""

    attribute: str = "records"
    """Raw attribute holding the accessed volume."""

    min_samples: int = Field(default=10, ge=2)
    medium_z: float = Field(default=2.0, gt=0.0)
    high_z: float = Field(default=3.0, gt=0.0)
    critical_z: float = Field(default=5.0, gt=0.0)
    medium_score: int = Field(default=30, ge=0, le=100)
    high_score: int = Field(default=55, ge=0, le=100)
    critical_score: int = Field(default=80, ge=0, le=100)

    min_std_dev: float = Field(default=1.0, ge=0.0)
    """Absolute floor on the standard deviation used for scoring."""

    min_relative_std: float = Field(default=0.05, ge=0.0)
    """Floor on the standard deviation as a fraction of the baseline mean."""

    max_subjects: int = Field(default=50_000, ge=1)


class AccessBaselineAnalyzer:
    """Flags data access volumes far above a subject's own baseline."""

    name = "access_baseline"
    event_kinds = frozenset({EventKind.DATA_ACCESS})

    def __init__(self, config: AccessBaselineConfig | None = None):
        self.config = config or AccessBaselineConfig()
        self._baselines: BoundedState[RunningStats] = BoundedState(
            self.config.max_subjects, RunningStats
        )

    def baseline(self, subject: str) -> RunningStats | None:
        """Get the current baseline for a subject."""
        return self._baselines.peek(subject)

    async def analyze(self, event: Event, *, timeout_seconds: float) -> RiskFactor | None:
        subject = event.subject_identity
        raw_value = event.attribute(self.config.attribute)
        if not subject or raw_value is None:
            return None

        try:
            value = float(raw_value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(value):
            logger.warning(
                "access_volume_rejected",
                subject=subject,
                attribute=self.config.attribute,
                value=str(raw_value),
            )
            return None

        stats = self._baselines.touch(subject)
        factor = None
        if stats.count >= self.config.min_samples:
            factor = self._factor(subject, value, stats)
        stats.update(value)
        return factor

    def _std_floor(self, stats: RunningStats) -> float:
        return max(self.config.min_std_dev, self.config.min_relative_std * abs(stats.mean))

    def _factor(self, subject: str, value: float, stats: RunningStats) -> RiskFactor | None:
        z = stats.z_score(value, self._std_floor(stats))
        if z >= self.config.critical_z:
            severity, score = Severity.CRITICAL, self.config.critical_score
        elif z >= self.config.high_z:
            severity, score = Severity.HIGH, self.config.high_score
        elif z >= self.config.medium_z:
            severity, score = Severity.MEDIUM, self.config.medium_score
        else:
            return None

        return RiskFactor(
            type="access_volume_anomaly",
            severity=severity,
            score=score,
            source_analyzer=self.name,
            description=(
                f"{subject} accessed {value:g} {self.config.attribute}, "
                f"{z:.1f} standard deviations above baseline mean {stats.mean:.1f}"
            ),
        )
