"""Prometheus metrics for the ingestion, detection and response pipeline.

Collectors are module-level and registered on the default registry at
import time, named ``<prefix>_*`` where the prefix comes from
``METRICS_PREFIX`` (default ``warden``). Callers go through the
``record_*`` helpers rather than touching collectors directly, so label
values stay consistent.
"""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

__all__ = [
    "MetricsConfig",
    "MetricsManager",
    "EVENTS_SUBMITTED",
    "PIPELINES_IN_FLIGHT",
    "ASSESSMENT_DURATION",
    "RISK_SCORE_DISTRIBUTION",
    "THREAT_LEVEL_COUNT",
    "ANALYZER_FAILURES",
    "CASE_TRANSITIONS",
    "ACTION_OUTCOMES",
    "APPROVAL_DECISIONS",
    "AUDIT_WRITE_RETRIES",
    "HTTP_REQUEST_DURATION",
    "HTTP_REQUEST_COUNT",
    "observe_assessment",
    "record_event_submitted",
    "record_analyzer_failure",
    "record_case_transition",
    "record_action_outcome",
    "record_approval_decision",
    "record_audit_retry",
    "record_http_request",
    "get_metrics",
    "get_metrics_manager",
    "create_metrics_manager",
]

# Seconds. Analyzer deadlines are sub-second, webhook calls a few seconds.
LATENCY_BUCKETS: tuple[float, ...] = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)

# Risk scores are 0-100; edges sit on the default classifier thresholds.
SCORE_BUCKETS: tuple[float, ...] = (0, 10, 20, 25, 30, 40, 50, 60, 70, 75, 80, 90, 100)


@dataclass
class MetricsConfig:
    """Metrics switches, read from ``METRICS_ENABLED`` and ``METRICS_PREFIX``."""

    enabled: bool = True
    prefix: str = "warden"

    @classmethod
    def from_env(cls) -> MetricsConfig:
        return cls(
            enabled=os.getenv("METRICS_ENABLED", "true").strip().lower() in {"1", "true", "yes", "on"},
            prefix=os.getenv("METRICS_PREFIX", cls.prefix),
        )


_prefix = os.getenv("METRICS_PREFIX", MetricsConfig.prefix)


def _metric(suffix: str) -> str:
    return f"{_prefix}_{suffix}"


# Ingestion
EVENTS_SUBMITTED = Counter(
    _metric("events_submitted_total"), "Events accepted for assessment", ["kind"]
)
PIPELINES_IN_FLIGHT = Gauge(
    _metric("pipelines_in_flight"), "Event pipelines (assessment plus response) still running"
)

# Detection
ASSESSMENT_DURATION = Histogram(
    _metric("assessment_duration_seconds"),
    "Wall time from first analyzer dispatch to finalized assessment",
    ["kind"],
    buckets=LATENCY_BUCKETS,
)
RISK_SCORE_DISTRIBUTION = Histogram(
    _metric("risk_score"), "Overall risk score per assessment", ["kind"], buckets=SCORE_BUCKETS
)
THREAT_LEVEL_COUNT = Counter(
    _metric("threat_levels_total"), "Assessments by resulting threat level", ["kind", "level"]
)
ANALYZER_FAILURES = Counter(
    _metric("analyzer_failures_total"),
    "Analyzer calls that raised or missed the deadline",
    ["analyzer", "reason"],
)

# Response
CASE_TRANSITIONS = Counter(
    _metric("case_transitions_total"), "Response case state changes", ["from_state", "to_state"]
)
ACTION_OUTCOMES = Counter(
    _metric("action_outcomes_total"),
    "Step results, forward and compensating",
    ["action_type", "result", "rollback"],
)
APPROVAL_DECISIONS = Counter(
    _metric("approval_decisions_total"), "How approval gates were resolved", ["outcome"]
)
AUDIT_WRITE_RETRIES = Counter(
    _metric("audit_write_retries_total"), "Audit appends retried after a store error", ["record_type"]
)

# API
HTTP_REQUEST_DURATION = Histogram(
    _metric("http_request_duration_seconds"),
    "API request latency",
    ["method", "endpoint", "status_code"],
    buckets=LATENCY_BUCKETS,
)
HTTP_REQUEST_COUNT = Counter(
    _metric("http_requests_total"), "API requests served", ["method", "endpoint", "status_code"]
)

SERVICE_INFO = Info(_metric("service"), "Build and deployment labels")


class MetricsManager:
    """Publishes service info once and renders the exposition payload.

    A custom ``registry`` is only used for rendering; the collectors above
    always live on the default registry.
    """

    def __init__(
        self,
        config: MetricsConfig | None = None,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self.config = config or MetricsConfig()
        self.registry = registry or REGISTRY
        self._initialized = False

    def initialize(
        self,
        service_name: str = "warden",
        service_version: str = "0.1.0",
        environment: str = "development",
    ) -> None:
        if self._initialized or not self.config.enabled:
            return
        SERVICE_INFO.info(
            {"name": service_name, "version": service_version, "environment": environment}
        )
        self._initialized = True

    def get_metrics(self) -> bytes:
        return generate_latest(self.registry)


_manager: MetricsManager | None = None


def get_metrics_manager() -> MetricsManager:
    global _manager
    if _manager is None:
        _manager = MetricsManager(MetricsConfig.from_env())
    return _manager


def create_metrics_manager(
    config: MetricsConfig | None = None,
    registry: CollectorRegistry | None = None,
) -> MetricsManager:
    """Replace the process-wide metrics manager."""
    global _manager
    _manager = MetricsManager(config, registry)
    return _manager


def get_metrics() -> bytes:
    """Prometheus text exposition for ``/metrics``."""
    return get_metrics_manager().get_metrics()


@contextmanager
def observe_assessment(kind: str) -> Iterator[dict[str, Any]]:
    """Time one assessment of an event of ``kind``.

    The caller fills ``score`` and ``level`` in the yielded dict once the
    assessment is final. Duration is recorded even if the block raises;
    score and level only when they were set.
    """
    outcome: dict[str, Any] = {"score": None, "level": None}
    started = time.perf_counter()
    try:
        yield outcome
    finally:
        ASSESSMENT_DURATION.labels(kind=kind).observe(time.perf_counter() - started)
        if outcome["score"] is not None:
            RISK_SCORE_DISTRIBUTION.labels(kind=kind).observe(outcome["score"])
        if outcome["level"] is not None:
            THREAT_LEVEL_COUNT.labels(kind=kind, level=outcome["level"]).inc()


def record_event_submitted(kind: str) -> None:
    EVENTS_SUBMITTED.labels(kind=kind).inc()


def record_analyzer_failure(analyzer: str, reason: str) -> None:
    """``reason`` is ``timeout`` or ``error``."""
    ANALYZER_FAILURES.labels(analyzer=analyzer, reason=reason).inc()


def record_case_transition(from_state: str, to_state: str) -> None:
    CASE_TRANSITIONS.labels(from_state=from_state, to_state=to_state).inc()


def record_action_outcome(action_type: str, result: str, rollback: bool = False) -> None:
    ACTION_OUTCOMES.labels(
        action_type=action_type, result=result, rollback="true" if rollback else "false"
    ).inc()


def record_approval_decision(outcome: str) -> None:
    """One of approved, denied, timeout, escalated or request_failed."""
    APPROVAL_DECISIONS.labels(outcome=outcome).inc()


def record_audit_retry(record_type: str) -> None:
    AUDIT_WRITE_RETRIES.labels(record_type=record_type).inc()


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    labels = {"method": method, "endpoint": endpoint, "status_code": str(status_code)}
    HTTP_REQUEST_DURATION.labels(**labels).observe(duration_seconds)
    HTTP_REQUEST_COUNT.labels(**labels).inc()
