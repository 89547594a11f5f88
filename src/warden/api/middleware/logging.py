"""Per-request id and access log."""

import time
from collections.abc import Callable
from uuid import uuid4

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from warden.core.logging import LogContext, get_logger

logger = get_logger("warden.api.requests")


def client_address(request: Request) -> str | None:
    """First hop of ``X-Forwarded-For``, falling back to the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    first_hop = forwarded.split(",", 1)[0].strip()
    if first_hop:
        return first_hop
    return request.client.host if request.client else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Binds ``request_id`` to the log context and writes one access line.

    A caller-supplied ``X-Request-ID`` is reused so ids can be followed
    across services; it is echoed on the response either way.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        with LogContext(request_id=request_id):
            response = await call_next(request)
            status = response.status_code
            log = logger.error if status >= 500 else logger.warning if status >= 400 else logger.info
            log(
                "http_request",
                method=request.method,
                path=request.url.path,
                status_code=status,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                client_ip=client_address(request),
            )

        response.headers["X-Request-ID"] = request_id
        return response
