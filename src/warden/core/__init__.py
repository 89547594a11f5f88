"""Core services and utilities for Warden."""

from .exceptions import (
    AnalyzerUnavailableError,
    ApprovalTimeoutError,
    AuditWriteError,
    CaseNotFoundError,
    ExecutorFailureError,
    InvalidTransitionError,
    ServiceUnavailableError,
    UnknownApprovalHandleError,
)
from .logging import LogContext, get_logger, setup_logging

__all__ = [
    # Exceptions
    "AnalyzerUnavailableError",
    "ApprovalTimeoutError",
    "AuditWriteError",
    "CaseNotFoundError",
    "ExecutorFailureError",
    "InvalidTransitionError",
    "ServiceUnavailableError",
    "UnknownApprovalHandleError",
    # Logging
    "LogContext",
    "get_logger",
    "setup_logging",
]
