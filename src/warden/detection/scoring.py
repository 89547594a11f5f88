"""Risk score combination.

The overall score is a capped sum with diminishing returns: factor scores are
ranked highest first and the i-th factor contributes ``score * decay**i``.
One strong signal therefore dominates, additional weak signals add less and
less, and the total never exceeds 100. A CRITICAL factor raises the result to
at least ``critical_floor`` so a definitive indicator is never diluted by
low-severity noise.
"""

from collections.abc import Iterable

from pydantic import BaseModel, Field

from warden.detection.types import RiskFactor, Severity

MAX_SCORE = 100


class ScoringConfig(BaseModel):
    """Tunable coefficients for score combination."""

    decay: float = Field(
        default=0.5, gt=0.0, le=1.0, description="Weight multiplier per ranked factor"
    )
    critical_floor: int = Field(
        default=75, ge=0, le=100, description="Minimum score when a CRITICAL factor is present"
    )


def combine_scores(
    factors: Iterable[RiskFactor],
    config: ScoringConfig | None = None,
) -> int:
    """Combine factor scores into an overall score.

    Pure and order-independent: the same factor set always yields the same
    score regardless of the order analyzers finished in.

    Args:
        factors: Finalized risk factors of one assessment.
        config: Scoring coefficients (defaults if None).

    Returns:
        Overall score within 0-100.
    """
    config = config or ScoringConfig()
    factors = list(factors)

    ranked = sorted((f.score for f in factors), reverse=True)
    weighted = sum(score * (config.decay**rank) for rank, score in enumerate(ranked))
    score = min(MAX_SCORE, round(weighted))

    if any(f.severity == Severity.CRITICAL for f in factors):
        score = max(score, config.critical_floor)

    return score
