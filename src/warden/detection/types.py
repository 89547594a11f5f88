"""Domain types for event assessment.

Events, risk factors and threat assessments are immutable records. They are
created once, passed between the aggregator, classifier and orchestrator,
and persisted through the audit store via ``to_dict``/``from_dict``.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
from uuid import UUID, uuid4


# =============================================================================
# Enums
# =============================================================================


class EventKind(str, Enum):
    """Kinds of inbound activity that can be assessed."""

    AUTH_ATTEMPT = "auth_attempt"
    HTTP_REQUEST = "http_request"
    DATA_ACCESS = "data_access"


class _OrderedLevel(str, Enum):
    """String enum whose members compare by declaration order."""

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, type(self)):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, type(self)):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, type(self)):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, type(self)):
            return NotImplemented
        return self.rank >= other.rank


class Severity(_OrderedLevel):
    """Severity of a single risk factor."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ThreatLevel(_OrderedLevel):
    """Threat level derived from the overall score."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


ANALYZER_UNAVAILABLE = "analyzer_unavailable"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Models
# =============================================================================


@dataclass(frozen=True)
class Event:
    """A unit of assessment: one authentication attempt, request or data access."""

    kind: EventKind
    subject_identity: str | None = None
    source_address: str | None = None
    user_agent: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)
    raw_attributes: Mapping[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        # Freeze the attribute map so analyzers cannot mutate a shared event
        object.__setattr__(
            self, "raw_attributes", MappingProxyType(dict(self.raw_attributes))
        )

    def attribute(self, key: str, default: Any = None) -> Any:
        """Get a raw attribute value."""
        return self.raw_attributes.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": str(self.id),
            "kind": self.kind.value,
            "subject_identity": self.subject_identity,
            "source_address": self.source_address,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp.isoformat(),
            "raw_attributes": dict(self.raw_attributes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        """Create from dictionary."""
        return cls(
            id=UUID(data["id"]),
            kind=EventKind(data["kind"]),
            subject_identity=data.get("subject_identity"),
            source_address=data.get("source_address"),
            user_agent=data.get("user_agent"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            raw_attributes=data.get("raw_attributes", {}),
        )


@dataclass(frozen=True)
class RiskFactor:
    """One analyzer's finding about an event."""

    type: str
    severity: Severity
    score: int
    source_analyzer: str
    description: str = ""

    def __post_init__(self) -> None:
        if not 0 <= self.score <= 100:
            raise ValueError(f"Risk factor score must be within 0-100, got {self.score}")

    @classmethod
    def unavailable(cls, analyzer: str, reason: str) -> "RiskFactor":
        """Placeholder factor for an analyzer that failed or timed out."""
        return cls(
            type=ANALYZER_UNAVAILABLE,
            severity=Severity.LOW,
            score=0,
            source_analyzer=analyzer,
            description=reason,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "type": self.type,
            "severity": self.severity.value,
            "score": self.score,
            "source_analyzer": self.source_analyzer,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RiskFactor":
        """Create from dictionary."""
        return cls(
            type=data["type"],
            severity=Severity(data["severity"]),
            score=data["score"],
            source_analyzer=data["source_analyzer"],
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class ThreatAssessment:
    """Finalized aggregate result for one event.

    ``factors`` is kept in analyzer completion order; ``overall_score`` does
    not depend on that order.
    """

    event_id: UUID
    event_kind: EventKind
    factors: tuple[RiskFactor, ...]
    overall_score: int
    threat_level: ThreatLevel
    assessment_id: UUID = field(default_factory=uuid4)
    computed_at: datetime = field(default_factory=_utcnow)

    # Observability
    analyzers_run: int = 0
    analyzers_failed: int = 0
    timed_out: tuple[str, ...] = ()

    @property
    def degraded(self) -> bool:
        """Whether any analyzer failed to contribute a signal."""
        return self.analyzers_failed > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "assessment_id": str(self.assessment_id),
            "event_id": str(self.event_id),
            "event_kind": self.event_kind.value,
            "factors": [f.to_dict() for f in self.factors],
            "overall_score": self.overall_score,
            "threat_level": self.threat_level.value,
            "computed_at": self.computed_at.isoformat(),
            "analyzers_run": self.analyzers_run,
            "analyzers_failed": self.analyzers_failed,
            "timed_out": list(self.timed_out),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ThreatAssessment":
        """Create from dictionary."""
        return cls(
            assessment_id=UUID(data["assessment_id"]),
            event_id=UUID(data["event_id"]),
            event_kind=EventKind(data["event_kind"]),
            factors=tuple(RiskFactor.from_dict(f) for f in data.get("factors", [])),
            overall_score=data["overall_score"],
            threat_level=ThreatLevel(data["threat_level"]),
            computed_at=datetime.fromisoformat(data["computed_at"]),
            analyzers_run=data.get("analyzers_run", 0),
            analyzers_failed=data.get("analyzers_failed", 0),
            timed_out=tuple(data.get("timed_out", [])),
        )
