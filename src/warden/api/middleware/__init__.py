"""API middleware components."""

from .auth import AuthenticationMiddleware
from .errors import ErrorHandlingMiddleware, error_response
from .logging import RequestLoggingMiddleware
from .observability import ObservabilityMiddleware

__all__ = [
    "AuthenticationMiddleware",
    "ErrorHandlingMiddleware",
    "ObservabilityMiddleware",
    "RequestLoggingMiddleware",
    "error_response",
]
