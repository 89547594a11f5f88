"""Authentication failure analyzer (brute force and password spraying).

Keeps a sliding window of failed authentication timestamps per subject and
per source address. The window is driven by event timestamps, not the wall
clock, so replayed or delayed events are judged by when they happened.
"""

from collections import deque
from datetime import datetime, timedelta

from pydantic import BaseModel, Field, model_validator

from warden.detection.analyzers.state import BoundedState
from warden.detection.types import Event, EventKind, RiskFactor, Severity


class AuthFailureConfig(BaseModel):
    """Thresholds for failed authentication bursts."""

    window_seconds: float = Field(default=300.0, gt=0.0)
    medium_threshold: int = Field(default=5, ge=1)
    high_threshold: int = Field(default=10, ge=1)
    medium_score: int = Field(default=35, ge=0, le=100)
    high_score: int = Field(default=60, ge=0, le=100)
    max_keys: int = Field(default=100_000, ge=1)
    """Subjects plus source addresses tracked at once."""

    @model_validator(mode="after")
    def check_thresholds(self) -> "AuthFailureConfig":
        if self.high_threshold < self.medium_threshold:
            raise ValueError("high_threshold must be >= medium_threshold")
        return self


class AuthFailureAnalyzer:
    """Flags subjects or sources with too many recent failed logins.

    A failed attempt is an AUTH_ATTEMPT whose ``success`` attribute is False.
    """

    name = "auth_failure"
    event_kinds = frozenset({EventKind.AUTH_ATTEMPT})

    def __init__(self, config: AuthFailureConfig | None = None):
        self.config = config or AuthFailureConfig()
        self._window = timedelta(seconds=self.config.window_seconds)
        self._failures: BoundedState[deque[datetime]] = BoundedState(self.config.max_keys, deque)

    async def analyze(self, event: Event, *, timeout_seconds: float) -> list[RiskFactor]:
        if event.attribute("success", True):
            return []

        factors = []
        for scope, value in (
            ("subject", event.subject_identity),
            ("source", event.source_address),
        ):
            if not value:
                continue
            count = self._record(f"{scope}:{value}", event.timestamp)
            factor = self._factor(scope, value, count)
            if factor is not None:
                factors.append(factor)
        return factors

    def failure_count(self, scope: str, value: str) -> int:
        """Current number of failures in the window for a key."""
        return len(self._failures.peek(f"{scope}:{value}") or ())

    def _record(self, key: str, timestamp: datetime) -> int:
        window = self._failures.touch(key)
        window.append(timestamp)
        cutoff = timestamp - self._window
        while window and window[0] < cutoff:
            window.popleft()
        return len(window)

    def _factor(self, scope: str, value: str, count: int) -> RiskFactor | None:
        if count >= self.config.high_threshold:
            severity, score = Severity.HIGH, self.config.high_score
        elif count >= self.config.medium_threshold:
            severity, score = Severity.MEDIUM, self.config.medium_score
        else:
            return None

        kind = "brute_force" if scope == "subject" else "password_spray"
        return RiskFactor(
            type=kind,
            severity=severity,
            score=score,
            source_analyzer=self.name,
            description=(
                f"{count} failed authentication attempts for {scope} {value} "
                f"in the last {int(self.config.window_seconds)}s"
            ),
        )
