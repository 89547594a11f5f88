"""Distributed tracing for the detection and response pipeline.

One span per assessment, per executed or rolled-back step and per
escalation, plus one per API request. Outbound webhooks carry the W3C
``traceparent`` header so action and approval services can join the trace.

Export is optional. Without ``OTEL_EXPORTER_OTLP_ENDPOINT`` the SDK
provider is still installed, which keeps trace ids valid for log
correlation while nothing leaves the process.
"""

from __future__ import annotations

import functools
import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar
from uuid import UUID

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterator, Mapping

__all__ = [
    "TracingConfig",
    "TracingManager",
    "annotate_span",
    "configure_tracing",
    "get_tracer",
    "get_tracing_manager",
    "inject_trace_context",
    "span_attributes",
    "start_span",
    "traced_async",
]

P = ParamSpec("P")
R = TypeVar("R")

_propagator = TraceContextTextMapPropagator()


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class TracingConfig:
    """Tracer provider settings, read from the standard OTEL_* variables."""

    service_name: str = "warden"
    service_version: str = "0.1.0"
    environment: str = "development"
    otlp_endpoint: str | None = None
    enabled: bool = True
    batch_export: bool = True

    @classmethod
    def from_env(cls) -> TracingConfig:
        return cls(
            service_name=os.getenv("OTEL_SERVICE_NAME", cls.service_name),
            service_version=os.getenv("WARDEN_VERSION", cls.service_version),
            environment=os.getenv("ENVIRONMENT", cls.environment),
            otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
            enabled=_env_flag("OTEL_TRACING_ENABLED", True),
            batch_export=_env_flag("OTEL_BATCH_EXPORT", True),
        )


class TracingManager:
    """Owns the SDK tracer provider for the lifetime of the service.

    ``initialize`` is idempotent and a no-op when tracing is disabled, in
    which case spans come from the API's no-op provider.
    """

    def __init__(self, config: TracingConfig | None = None) -> None:
        self.config = config or TracingConfig()
        self._provider: TracerProvider | None = None
        self._tracer: trace.Tracer | None = None
        self._initialized = False

    @property
    def tracer(self) -> trace.Tracer:
        if self._tracer is None:
            self._tracer = trace.get_tracer("warden", self.config.service_version)
        return self._tracer

    def _span_processor(self) -> SpanProcessor | None:
        if not self.config.otlp_endpoint:
            return None
        exporter = OTLPSpanExporter(endpoint=self.config.otlp_endpoint)
        if self.config.batch_export:
            return BatchSpanProcessor(exporter)
        return SimpleSpanProcessor(exporter)

    def initialize(self) -> None:
        if self._initialized or not self.config.enabled:
            return

        self._provider = TracerProvider(
            resource=Resource.create(
                {
                    "service.name": self.config.service_name,
                    "service.version": self.config.service_version,
                    "deployment.environment": self.config.environment,
                }
            )
        )
        processor = self._span_processor()
        if processor is not None:
            self._provider.add_span_processor(processor)

        trace.set_tracer_provider(self._provider)
        self._initialized = True

    def shutdown(self) -> None:
        """Flush buffered spans and release the exporter."""
        if self._provider is None:
            return
        self._provider.shutdown()
        self._provider = None
        self._initialized = False


_manager: TracingManager | None = None


def get_tracing_manager() -> TracingManager:
    global _manager
    if _manager is None:
        _manager = TracingManager(TracingConfig.from_env())
    return _manager


def configure_tracing(config: TracingConfig | None = None) -> TracingManager:
    """Replace the process-wide tracing manager."""
    global _manager
    _manager = TracingManager(config)
    return _manager


def get_tracer() -> trace.Tracer:
    return get_tracing_manager().tracer


def span_attributes(attributes: Mapping[str, Any]) -> dict[str, Any]:
    """Convert ids, timestamps and enums to OTel primitives; drop Nones."""
    converted: dict[str, Any] = {}
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, UUID):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        converted[key] = value
    return converted


def annotate_span(**attributes: Any) -> None:
    """Attach attributes to whichever span is current."""
    trace.get_current_span().set_attributes(span_attributes(attributes))


@contextmanager
def start_span(name: str, **attributes: Any) -> Iterator[trace.Span]:
    """Open a child span of the current context.

    Exceptions escaping the block are recorded on the span and mark it as
    errored before propagating.
    """
    with get_tracer().start_as_current_span(
        name, attributes=span_attributes(attributes)
    ) as span:
        yield span


def traced_async(
    name: str | None = None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Run a coroutine function inside its own span."""

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        span_name = name or f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            with start_span(span_name):
                return await func(*args, **kwargs)

        return wrapper

    return decorator


def inject_trace_context(headers: dict[str, str]) -> dict[str, str]:
    """Add ``traceparent`` for the current span to outbound request headers.

    Headers are returned unchanged when there is no valid span context.
    """
    _propagator.inject(headers)
    return headers
