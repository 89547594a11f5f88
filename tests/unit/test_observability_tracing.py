"""Unit tests for OpenTelemetry tracing module."""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

import pytest
from opentelemetry import trace
from opentelemetry.trace import NonRecordingSpan, SpanContext

from warden.detection.types import ThreatLevel
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


class TestTracingConfig:
    """Tests for TracingConfig."""

    def test_default_config(self) -> None:
        config = TracingConfig()

        assert config.service_name == "warden"
        assert config.otlp_endpoint is None
        assert config.enabled is True

    def test_from_env_custom(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OTEL_SERVICE_NAME", "warden-edge")
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://otel:4317")
        monkeypatch.setenv("OTEL_TRACING_ENABLED", "off")

        config = TracingConfig.from_env()

        assert config.service_name == "warden-edge"
        assert config.otlp_endpoint == "http://otel:4317"
        assert config.enabled is False

    def test_from_env_blank_endpoint(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")

        assert TracingConfig.from_env().otlp_endpoint is None


class TestTracingManager:
    """Tests for TracingManager."""

    def test_initialize_disabled(self) -> None:
        manager = TracingManager(TracingConfig(enabled=False))

        manager.initialize()

        assert manager._initialized is False

    def test_no_processor_without_endpoint(self) -> None:
        assert TracingManager(TracingConfig())._span_processor() is None

    def test_tracer_is_cached(self) -> None:
        manager = TracingManager()

        assert manager.tracer is manager.tracer

    def test_configure_tracing_replaces_global(self) -> None:
        manager = configure_tracing(TracingConfig(service_name="other"))

        assert get_tracing_manager() is manager
        assert get_tracer() is manager.tracer


class TestSpanHelpers:
    """Tests for span helpers."""

    def test_span_attributes_conversion(self) -> None:
        case_id = uuid4()
        moment = datetime(2026, 10, 1, tzinfo=UTC)

        converted = span_attributes(
            {"case_id": case_id, "at": moment, "level": ThreatLevel.HIGH, "n": 42, "gone": None}
        )

        assert converted == {
            "case_id": str(case_id),
            "at": moment.isoformat(),
            "level": "high",
            "n": 42,
        }

    def test_start_span_accepts_rich_attributes(self) -> None:
        with start_span("response.execute_step", step_id="lock", error=None) as span:
            assert span is not None
            annotate_span(case_id=uuid4(), missing=None)

    def test_start_span_propagates_exception(self) -> None:
        with pytest.raises(RuntimeError, match="executor down"):
            with start_span("response.rollback_step"):
                raise RuntimeError("executor down")


class TestTraceContextInjection:
    """Tests for outbound traceparent headers."""

    def test_injects_traceparent_inside_span(self) -> None:
        span = NonRecordingSpan(SpanContext(trace_id=0xABC, span_id=0x12, is_remote=False))

        with trace.use_span(span):
            headers = inject_trace_context({"X-Api-Key": "k"})

        assert headers["X-Api-Key"] == "k"
        assert headers["traceparent"] == f"00-{0xABC:032x}-{0x12:016x}-00"

    def test_no_header_outside_span(self) -> None:
        assert inject_trace_context({}) == {}


class TestTracedAsync:
    """Tests for the traced_async decorator."""

    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        @traced_async("test.operation")
        async def operation(value: int) -> int:
            return value * 2

        assert await operation(21) == 42

    @pytest.mark.asyncio
    async def test_propagates_exception(self) -> None:
        @traced_async()
        async def failing() -> None:
            raise ValueError("analyzer exploded")

        with pytest.raises(ValueError, match="analyzer exploded"):
            await failing()

    def test_preserves_metadata(self) -> None:
        @traced_async()
        async def documented() -> None:
            """Docstring."""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docstring."
