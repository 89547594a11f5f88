"""Observability module for Warden.

Usage:
    from warden.observability import start_span, record_action_outcome

    with start_span("response.execute_step", step_id=step.id):
        ...
    record_action_outcome("lock_account", "succeeded")
"""

from warden.observability.metrics import (
    ACTION_OUTCOMES,
    ANALYZER_FAILURES,
    APPROVAL_DECISIONS,
    ASSESSMENT_DURATION,
    AUDIT_WRITE_RETRIES,
    CASE_TRANSITIONS,
    EVENTS_SUBMITTED,
    HTTP_REQUEST_COUNT,
    HTTP_REQUEST_DURATION,
    PIPELINES_IN_FLIGHT,
    RISK_SCORE_DISTRIBUTION,
    THREAT_LEVEL_COUNT,
    MetricsConfig,
    MetricsManager,
    create_metrics_manager,
    get_metrics,
    get_metrics_manager,
    observe_assessment,
    record_action_outcome,
    record_analyzer_failure,
    record_approval_decision,
    record_audit_retry,
    record_case_transition,
    record_event_submitted,
    record_http_request,
)
from warden.observability.tracing import (
    TracingConfig,
    TracingManager,
    annotate_span,
    configure_tracing,
    get_tracer,
    get_tracing_manager,
    inject_trace_context,
    span_attributes,
    start_span,
    traced_async,
)

__all__ = [
    # Tracing
    "TracingConfig",
    "TracingManager",
    "traced_async",
    "start_span",
    "annotate_span",
    "span_attributes",
    "inject_trace_context",
    "get_tracer",
    "get_tracing_manager",
    "configure_tracing",
    # Metrics
    "MetricsConfig",
    "MetricsManager",
    "get_metrics",
    "get_metrics_manager",
    "create_metrics_manager",
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
]
