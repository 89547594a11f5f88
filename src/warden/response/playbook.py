"""Versioned response playbooks.

A playbook maps ``(event kind, threat level)`` to an ordered list of action
steps. Playbooks are loaded from a JSON document, validated with pydantic,
and frozen into an immutable snapshot. Reloading builds a new snapshot and
swaps the registry reference in one assignment; cases keep the plan they
captured when they were opened.

Document format:

    {
      "version": "2024-06-01",
      "entries": [
        {
          "event_kind": "auth_attempt",
          "threat_level": "critical",
          "steps": [
            {"id": "lock", "action_type": "lock_account",
             "rollback_action_type": "unlock_account",
             "failure_policy": "abort"}
          ]
        }
      ]
    }
"""

from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from warden.core.logging import get_logger
from warden.detection.types import EventKind, ThreatLevel
from warden.response.types import (
    ActionStep,
    ActionType,
    FailurePolicy,
    OnTimeout,
    TimeoutPolicy,
)
from warden.utils.exceptions import ConfigurationError

logger = get_logger(__name__)

PlanKey = tuple[EventKind, ThreatLevel]


# =============================================================================
# Document Models
# =============================================================================


class TimeoutPolicyModel(BaseModel):
    """Approval timeout policy as written in the document."""

    model_config = ConfigDict(extra="forbid")

    approval_timeout_seconds: float | None = Field(default=None, gt=0.0)
    on_timeout: OnTimeout = OnTimeout.DENY


class ActionStepModel(BaseModel):
    """One step as written in the document."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1, max_length=200, pattern=r"^[^/]+$")
    action_type: ActionType
    requires_approval: bool = False
    rollback_action_type: ActionType | None = None
    timeout_policy: TimeoutPolicyModel = Field(default_factory=TimeoutPolicyModel)
    failure_policy: FailurePolicy = FailurePolicy.CONTINUE
    parameters: dict[str, Any] = Field(default_factory=dict)

    def to_step(self, default_approval_timeout: float) -> ActionStep:
        return ActionStep(
            id=self.id,
            action_type=self.action_type,
            requires_approval=self.requires_approval,
            rollback_action_type=self.rollback_action_type,
            timeout_policy=TimeoutPolicy(
                approval_timeout_seconds=(
                    self.timeout_policy.approval_timeout_seconds or default_approval_timeout
                ),
                on_timeout=self.timeout_policy.on_timeout,
            ),
            failure_policy=self.failure_policy,
            parameters=self.parameters,
        )


class PlaybookEntryModel(BaseModel):
    """Plan for one (event kind, threat level) pair."""

    model_config = ConfigDict(extra="forbid")

    event_kind: EventKind
    threat_level: ThreatLevel
    steps: list[ActionStepModel] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_step_ids(self) -> "PlaybookEntryModel":
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(
                    f"Duplicate step id {step.id!r} in plan "
                    f"({self.event_kind.value}, {self.threat_level.value})"
                )
            seen.add(step.id)
        return self


class PlaybookDocument(BaseModel):
    """Top-level playbook document."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(min_length=1)
    entries: list[PlaybookEntryModel] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_entries(self) -> "PlaybookDocument":
        seen: set[PlanKey] = set()
        for entry in self.entries:
            key = (entry.event_kind, entry.threat_level)
            if key in seen:
                raise ValueError(
                    f"Duplicate entry for ({entry.event_kind.value}, {entry.threat_level.value})"
                )
            seen.add(key)
        return self


# =============================================================================
# Snapshot and Registry
# =============================================================================


class Playbook:
    """Immutable, versioned playbook snapshot."""

    def __init__(
        self,
        version: str,
        plans: Mapping[PlanKey, tuple[ActionStep, ...]] | None = None,
        loaded_at: datetime | None = None,
    ):
        self._version = version
        self._plans: Mapping[PlanKey, tuple[ActionStep, ...]] = MappingProxyType(
            {key: tuple(steps) for key, steps in (plans or {}).items()}
        )
        self._loaded_at = loaded_at or datetime.now(UTC)

    @classmethod
    def from_document(
        cls,
        document: PlaybookDocument,
        default_approval_timeout: float = 900.0,
    ) -> "Playbook":
        """Freeze a validated document into a snapshot."""
        plans = {
            (entry.event_kind, entry.threat_level): tuple(
                step.to_step(default_approval_timeout) for step in entry.steps
            )
            for entry in document.entries
        }
        return cls(version=document.version, plans=plans)

    @property
    def version(self) -> str:
        return self._version

    @property
    def loaded_at(self) -> datetime:
        return self._loaded_at

    def plan_for(self, event_kind: EventKind, threat_level: ThreatLevel) -> tuple[ActionStep, ...] | None:
        """Get the plan for a pair, None if the pair is unmapped."""
        return self._plans.get((event_kind, threat_level))

    def keys(self) -> list[PlanKey]:
        """Mapped (event kind, threat level) pairs."""
        return list(self._plans)

    def __len__(self) -> int:
        return len(self._plans)


EMPTY_PLAYBOOK = Playbook(version="empty")


class PlaybookRegistry:
    """Holds the current playbook snapshot.

    Readers take ``registry.current`` once and use that snapshot; a
    concurrent reload never changes a snapshot already taken.
    """

    def __init__(
        self,
        playbook: Playbook | None = None,
        default_approval_timeout: float = 900.0,
    ):
        self._current = playbook or EMPTY_PLAYBOOK
        self.default_approval_timeout = default_approval_timeout

    @property
    def current(self) -> Playbook:
        """The active snapshot."""
        return self._current

    def swap(self, playbook: Playbook) -> Playbook:
        """Activate a snapshot and return the previous one."""
        previous, self._current = self._current, playbook
        logger.info(
            "playbook_activated",
            version=playbook.version,
            previous_version=previous.version,
            plans=len(playbook),
        )
        return previous

    def load(self, data: dict[str, Any] | str) -> Playbook:
        """Validate a document, freeze it and activate it.

        Args:
            data: Parsed document or its JSON text.

        Raises:
            ConfigurationError: If the document is malformed. The active
                snapshot is left unchanged.
        """
        try:
            if isinstance(data, str):
                document = PlaybookDocument.model_validate_json(data)
            else:
                document = PlaybookDocument.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid playbook document: {e}") from e

        playbook = Playbook.from_document(document, self.default_approval_timeout)
        self.swap(playbook)
        return playbook

    def load_file(self, path: str | Path) -> Playbook:
        """Load and activate a playbook JSON file.

        Raises:
            ConfigurationError: If the file cannot be read or is malformed.
        """
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read playbook file {path}: {e}") from e

        playbook = self.load(text)
        logger.info("playbook_file_loaded", path=str(path), version=playbook.version)
        return playbook
