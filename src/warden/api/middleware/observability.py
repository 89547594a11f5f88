"""Request metrics and spans."""

import re
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from warden.observability.metrics import record_http_request
from warden.observability.tracing import annotate_span, start_span

_UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)
_HANDLE_PATTERN = re.compile(r"(/approvals/)[^/]+")


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Times every API request into Prometheus and wraps it in a span.

    Health and scrape endpoints are left uninstrumented.
    """

    EXCLUDED_PATHS = frozenset({"/health", "/metrics"})

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        route = self._normalize_path(request.url.path)
        method = request.method
        started = time.perf_counter()
        status_code = 500

        try:
            with start_span(f"{method} {route}", http_method=method, http_route=route):
                response = await call_next(request)
                status_code = response.status_code
                annotate_span(http_status_code=status_code)
                return response
        finally:
            record_http_request(method, route, status_code, time.perf_counter() - started)

    def _normalize_path(self, path: str) -> str:
        """Collapse case ids and approval handles so label cardinality stays bounded."""
        return _HANDLE_PATTERN.sub(r"\1{handle}", _UUID_PATTERN.sub("{id}", path))
