"""Pytest fixtures for Warden tests."""

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import pytest
import structlog
from pydantic import SecretStr

from warden.audit import AuditWriter, InMemoryAuditStore
from warden.config.settings import AuditSettings, Settings
from warden.detection.types import (
    Event,
    EventKind,
    RiskFactor,
    Severity,
    ThreatAssessment,
    ThreatLevel,
)
from warden.response import (
    ActionResult,
    ActionStep,
    ActionType,
    ExecutorRegistry,
    FailurePolicy,
    InMemoryApprovalGateway,
    OnTimeout,
    OrchestratorConfig,
    Playbook,
    PlaybookRegistry,
    ResponseOrchestrator,
    TimeoutPolicy,
)


# =============================================================================
# Structlog Configuration Fixture
# =============================================================================


@pytest.fixture(scope="function", autouse=True)
def reset_structlog_after_test():
    """Reset structlog configuration after each test.

    This ensures tests that modify structlog global state
    don't affect other tests.
    """
    yield
    # Reset structlog to default configuration after each test
    structlog.reset_defaults()
    # Re-apply minimal configuration for consistent behavior
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Settings for tests: in-memory audit store, fast retries."""
    return Settings(
        ENVIRONMENT="test",
        DEBUG=True,
        log_level="DEBUG",
        DATABASE_URL="memory://",
        API_SECRET_KEY=SecretStr("test-api-secret-key-with-32-characters"),
        SHUTDOWN_DRAIN_SECONDS=1.0,
        response={
            "executor_max_attempts": 3,
            "executor_backoff_base_seconds": 0.0,
            "executor_backoff_max_seconds": 0.0,
            "default_approval_timeout_seconds": 5.0,
        },
        audit={"retry_base_seconds": 0.0, "retry_max_seconds": 0.0},
    )


# =============================================================================
# Detection fixtures
# =============================================================================


def _make_event(kind: EventKind = EventKind.AUTH_ATTEMPT, **kwargs: Any) -> Event:
    """Build an event with sensible defaults."""
    defaults: dict[str, Any] = {
        "subject_identity": "alice@example.com",
        "source_address": "203.0.113.7",
        "timestamp": datetime(2026, 10, 1, 12, 0, tzinfo=UTC),
    }
    defaults.update(kwargs)
    return Event(kind=kind, **defaults)


def _make_assessment(
    event: Event,
    level: ThreatLevel,
    score: int | None = None,
) -> ThreatAssessment:
    """Build a finalized assessment for an event."""
    scores = {
        ThreatLevel.LOW: 10,
        ThreatLevel.MEDIUM: 35,
        ThreatLevel.HIGH: 60,
        ThreatLevel.CRITICAL: 90,
    }
    overall = scores[level] if score is None else score
    return ThreatAssessment(
        event_id=event.id,
        event_kind=event.kind,
        factors=(
            RiskFactor(
                type="test_factor",
                severity=Severity.HIGH,
                score=overall,
                source_analyzer="test",
            ),
        ),
        overall_score=overall,
        threat_level=level,
        analyzers_run=1,
    )


@pytest.fixture
def auth_event() -> Event:
    """Failed authentication attempt."""
    return _make_event(EventKind.AUTH_ATTEMPT, raw_attributes={"success": False})


@pytest.fixture
def critical_assessment(auth_event: Event) -> ThreatAssessment:
    """CRITICAL assessment of the auth event."""
    return _make_assessment(auth_event, ThreatLevel.CRITICAL)


# =============================================================================
# Response fixtures
# =============================================================================


class RecordingExecutor:
    """Executor that records calls and fails on demand.

    Args:
        fail_times: Per action type, how many calls fail before one succeeds.
            Use a large number for a permanently failing action.
    """

    def __init__(self, fail_times: Mapping[ActionType, int] | None = None):
        self.fail_times = dict(fail_times or {})
        self.calls: list[tuple[str, ActionType]] = []

    async def execute(self, action_type, event, case, *, parameters=None) -> ActionResult:
        return self._call("execute", action_type)

    async def rollback(self, action_type, event, case, *, parameters=None) -> ActionResult:
        return self._call("rollback", action_type)

    def _call(self, kind: str, action_type: ActionType) -> ActionResult:
        self.calls.append((kind, action_type))
        remaining = self.fail_times.get(action_type, 0)
        if remaining > 0:
            self.fail_times[action_type] = remaining - 1
            return ActionResult(success=False, detail=f"{action_type.value} unavailable")
        return ActionResult(success=True, detail="ok")

    def executed(self, kind: str = "execute") -> list[ActionType]:
        return [action for call_kind, action in self.calls if call_kind == kind]


def _make_step(
    step_id: str,
    action_type: ActionType,
    *,
    requires_approval: bool = False,
    rollback: ActionType | None = None,
    timeout: float = 5.0,
    on_timeout: OnTimeout = OnTimeout.DENY,
    failure_policy: FailurePolicy = FailurePolicy.CONTINUE,
) -> ActionStep:
    """Build a plan step."""
    return ActionStep(
        id=step_id,
        action_type=action_type,
        requires_approval=requires_approval,
        rollback_action_type=rollback,
        timeout_policy=TimeoutPolicy(approval_timeout_seconds=timeout, on_timeout=on_timeout),
        failure_policy=failure_policy,
    )


def _make_playbook(plans: dict, version: str = "test-1") -> Playbook:
    """Build a playbook snapshot from {(kind, level): [steps]}."""
    return Playbook(version=version, plans={key: tuple(steps) for key, steps in plans.items()})


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def audit_writer(audit_store: InMemoryAuditStore) -> AuditWriter:
    return AuditWriter(
        audit_store,
        AuditSettings(retry_base_seconds=0.0, retry_max_seconds=0.0),
    )


@pytest.fixture
def approvals() -> InMemoryApprovalGateway:
    return InMemoryApprovalGateway()


@pytest.fixture
def orchestrator_config() -> OrchestratorConfig:
    """No backoff so retry tests run instantly."""
    return OrchestratorConfig(
        executor_max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        default_approval_timeout_seconds=5.0,
    )


@pytest.fixture
def build_orchestrator(executor, approvals, audit_writer, orchestrator_config):
    """Factory building an orchestrator around a playbook."""

    def _build(playbook: Playbook | None = None, executor_override=None) -> ResponseOrchestrator:
        registry = ExecutorRegistry()
        registry.set_default(executor_override or executor)
        return ResponseOrchestrator(
            playbooks=PlaybookRegistry(playbook),
            executors=registry,
            approvals=approvals,
            audit=audit_writer,
            config=orchestrator_config,
        )

    return _build


@pytest.fixture
def event_factory():
    return _make_event


@pytest.fixture
def assessment_factory():
    return _make_assessment


@pytest.fixture
def step_factory():
    return _make_step


@pytest.fixture
def playbook_factory():
    return _make_playbook
