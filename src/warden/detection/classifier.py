"""Threat classification over configurable score bands.

Bands are validated once, when they are built. A valid band set has exactly
one band per threat level in level order, starts at 0, ends at 100, and has
no gaps or overlaps, so ``classify`` is total over 0-100 and monotonic.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from warden.core.logging import get_logger
from warden.detection.scoring import MAX_SCORE
from warden.detection.types import ThreatLevel
from warden.utils.exceptions import ConfigurationError

logger = get_logger(__name__)


@dataclass(frozen=True)
class ThresholdBand:
    """Inclusive score range mapped to one threat level."""

    level: ThreatLevel
    min_score: int
    max_score: int

    def contains(self, score: int) -> bool:
        """Check if a score falls inside this band."""
        return self.min_score <= score <= self.max_score

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "level": self.level.value,
            "min_score": self.min_score,
            "max_score": self.max_score,
        }


class ThresholdBands:
    """Validated, ordered set of threshold bands."""

    def __init__(self, bands: Sequence[ThresholdBand]):
        """Build and validate a band set.

        Args:
            bands: One band per threat level, lowest level first.

        Raises:
            ConfigurationError: If the bands are not monotonic, leave gaps,
                overlap, or do not cover 0-100.
        """
        self._bands = tuple(bands)
        self._validate()

    @classmethod
    def from_bounds(cls, low_max: int, medium_max: int, high_max: int) -> "ThresholdBands":
        """Build bands from inclusive upper bounds of the first three levels."""
        return cls(
            [
                ThresholdBand(ThreatLevel.LOW, 0, low_max),
                ThresholdBand(ThreatLevel.MEDIUM, low_max + 1, medium_max),
                ThresholdBand(ThreatLevel.HIGH, medium_max + 1, high_max),
                ThresholdBand(ThreatLevel.CRITICAL, high_max + 1, MAX_SCORE),
            ]
        )

    @property
    def bands(self) -> tuple[ThresholdBand, ...]:
        """Bands in ascending level order."""
        return self._bands

    def min_score_for(self, level: ThreatLevel) -> int:
        """Get the lowest score classified as the given level."""
        for band in self._bands:
            if band.level == level:
                return band.min_score
        raise KeyError(level)

    def _validate(self) -> None:
        levels = [band.level for band in self._bands]
        if levels != list(ThreatLevel):
            raise ConfigurationError(
                "Threshold bands must define each threat level exactly once, in order "
                f"{[lvl.value for lvl in ThreatLevel]}; got {[lvl.value for lvl in levels]}"
            )

        for band in self._bands:
            if band.min_score > band.max_score:
                raise ConfigurationError(
                    f"Threshold band {band.level.value} is empty "
                    f"({band.min_score} > {band.max_score})"
                )

        if self._bands[0].min_score != 0:
            raise ConfigurationError(
                f"Threshold bands must start at 0, first band starts at {self._bands[0].min_score}"
            )
        if self._bands[-1].max_score != MAX_SCORE:
            raise ConfigurationError(
                f"Threshold bands must end at {MAX_SCORE}, "
                f"last band ends at {self._bands[-1].max_score}"
            )

        for previous, current in zip(self._bands, self._bands[1:]):
            if current.min_score != previous.max_score + 1:
                kind = "overlap" if current.min_score <= previous.max_score else "gap"
                raise ConfigurationError(
                    f"Threshold bands {previous.level.value} and {current.level.value} "
                    f"{kind}: {previous.max_score} -> {current.min_score}"
                )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"bands": [band.to_dict() for band in self._bands]}


DEFAULT_BANDS = ThresholdBands.from_bounds(low_max=24, medium_max=49, high_max=74)


class ThreatClassifier:
    """Maps an overall score to a threat level.

    Example:
        classifier = ThreatClassifier(ThresholdBands.from_bounds(29, 49, 69))
        level = classifier.classify(72)  # ThreatLevel.CRITICAL
    """

    def __init__(self, bands: ThresholdBands | None = None):
        """Initialize the classifier.

        Args:
            bands: Validated threshold bands (defaults if None).
        """
        self.bands = bands or DEFAULT_BANDS

    def classify(self, overall_score: int) -> ThreatLevel:
        """Classify an overall score.

        Args:
            overall_score: Score within 0-100.

        Returns:
            The threat level of the band containing the score.

        Raises:
            ValueError: If the score is outside 0-100.
        """
        for band in self.bands.bands:
            if band.contains(overall_score):
                return band.level
        raise ValueError(f"Score {overall_score} is outside 0-{MAX_SCORE}")


def create_threat_classifier(
    low_max: int = 24,
    medium_max: int = 49,
    high_max: int = 74,
) -> ThreatClassifier:
    """Create a classifier from band upper bounds.

    Raises:
        ConfigurationError: If the bounds do not form valid bands.
    """
    bands = ThresholdBands.from_bounds(low_max, medium_max, high_max)
    logger.info(
        "threat_classifier_configured",
        bands=[band.to_dict() for band in bands.bands],
    )
    return ThreatClassifier(bands)
