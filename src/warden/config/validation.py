"""Startup checks on top of pydantic's field validation.

Pydantic guarantees types; these checks cover cross-field coherence
(threshold ordering, critical floor against the CRITICAL band) and
deployment hygiene (production keys, debug flags, playbook presence).
Errors stop the service from starting, warnings are logged.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from warden.config.settings import Settings, get_settings
from warden.core.logging import get_logger
from warden.detection.classifier import ThresholdBands
from warden.detection.types import ThreatLevel
from warden.utils.exceptions import ConfigurationError

logger = get_logger("warden.config")

_SUPPORTED_URL_SCHEMES = ("postgresql", "sqlite", "memory://")


class ValidationSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ValidationResult:
    """One finding against a settings field."""

    field: str
    severity: ValidationSeverity
    message: str
    suggestion: str | None = None

    def __str__(self) -> str:
        line = f"{self.field} ({self.severity.value}): {self.message}"
        return f"{line}; {self.suggestion}" if self.suggestion else line


class _Findings(list[ValidationResult]):
    def error(self, field: str, message: str, suggestion: str | None = None) -> None:
        self.append(ValidationResult(field, ValidationSeverity.ERROR, message, suggestion))

    def warn(self, field: str, message: str, suggestion: str | None = None) -> None:
        self.append(ValidationResult(field, ValidationSeverity.WARNING, message, suggestion))


def validate_configuration(settings: Settings | None = None) -> list[ValidationResult]:
    """Run every check and return the findings, errors and warnings mixed."""
    settings = settings or get_settings()
    findings = _Findings()
    for check in (_check_detection, _check_response, _check_persistence, _check_deployment):
        check(settings, findings)
    return list(findings)


def validate_or_raise(settings: Settings | None = None) -> None:
    """Raise ConfigurationError listing every error; log the warnings otherwise."""
    findings = validate_configuration(settings)
    errors = [f for f in findings if f.severity is ValidationSeverity.ERROR]
    if errors:
        raise ConfigurationError(
            "invalid configuration: " + " | ".join(str(e) for e in errors)
        )
    for finding in findings:
        logger.warning(
            "configuration_warning",
            field=finding.field,
            message=finding.message,
            suggestion=finding.suggestion,
        )


def _check_detection(settings: Settings, findings: _Findings) -> None:
    detection = settings.detection

    try:
        bands = ThresholdBands.from_bounds(
            detection.low_max, detection.medium_max, detection.high_max
        )
    except ConfigurationError as e:
        bands = None
        findings.error(
            "detection.low_max/medium_max/high_max",
            str(e),
            "bounds must increase strictly within 0-99, e.g. 24/49/74",
        )

    if not 0.0 < detection.diminishing_decay <= 1.0:
        findings.error(
            "detection.diminishing_decay",
            f"decay {detection.diminishing_decay} is outside (0, 1]",
        )

    if not 0 <= detection.critical_floor <= 100:
        findings.error(
            "detection.critical_floor", f"floor {detection.critical_floor} is outside 0-100"
        )
    elif bands is not None:
        critical_min = bands.min_score_for(ThreatLevel.CRITICAL)
        if detection.critical_floor < critical_min:
            findings.warn(
                "detection.critical_floor",
                f"floor {detection.critical_floor} sits below the CRITICAL band starting at "
                f"{critical_min}, so a CRITICAL factor can classify lower",
                f"raise critical_floor to {critical_min} or more",
            )

    if detection.analyzer_deadline_seconds <= 0:
        findings.error("detection.analyzer_deadline_seconds", "deadline must be positive")


def _check_response(settings: Settings, findings: _Findings) -> None:
    response = settings.response

    if response.executor_max_attempts < 1:
        findings.error("response.executor_max_attempts", "at least one attempt is required")
    if response.executor_backoff_max_seconds < response.executor_backoff_base_seconds:
        findings.warn("response.executor_backoff_max_seconds", "cap is below the base delay")
    if response.default_approval_timeout_seconds <= 0:
        findings.error(
            "response.default_approval_timeout_seconds", "approval window must be positive"
        )
    if response.retained_terminal_cases < 0:
        findings.error("response.retained_terminal_cases", "must not be negative")
    if settings.audit.alert_after_failures < 1:
        findings.error("audit.alert_after_failures", "threshold must be at least 1")


def _check_persistence(settings: Settings, findings: _Findings) -> None:
    url = settings.DATABASE_URL
    if not url:
        findings.error("DATABASE_URL", "no audit store configured")
    elif not url.startswith(_SUPPORTED_URL_SCHEMES):
        findings.warn("DATABASE_URL", f"unrecognised scheme in {url.split(':', 1)[0]!r}")
    elif url == "memory://" and settings.ENVIRONMENT == "production":
        findings.error(
            "DATABASE_URL",
            "in-memory audit store loses pending cases on restart",
            "point DATABASE_URL at PostgreSQL",
        )

    if settings.PLAYBOOK_PATH is None:
        findings.warn(
            "PLAYBOOK_PATH",
            "no playbook loaded, every case closes as log-only",
            "set PLAYBOOK_PATH to a playbook JSON document",
        )
    elif not Path(settings.PLAYBOOK_PATH).is_file():
        findings.error("PLAYBOOK_PATH", f"{settings.PLAYBOOK_PATH} does not exist")


def _check_deployment(settings: Settings, findings: _Findings) -> None:
    production = settings.ENVIRONMENT == "production"
    key = settings.API_SECRET_KEY

    if key is None:
        message = "no API key, authenticated endpoints will reject every request"
        if production:
            findings.error("API_SECRET_KEY", message)
        else:
            findings.warn("API_SECRET_KEY", message)
    elif len(key.get_secret_value()) < 32:
        findings.warn("API_SECRET_KEY", "key is shorter than 32 characters")

    if production and settings.DEBUG:
        findings.error("DEBUG", "debug mode exposes internals in production", "set DEBUG=false")


def get_configuration_summary(settings: Settings | None = None) -> dict[str, Any]:
    """Non-secret view of the effective configuration for the startup log."""
    settings = settings or get_settings()
    detection = settings.detection
    return {
        "environment": settings.ENVIRONMENT,
        "debug": settings.DEBUG,
        "audit_store": settings.DATABASE_URL.split(":", 1)[0],
        "playbook_path": settings.PLAYBOOK_PATH,
        "api_key_configured": settings.API_SECRET_KEY is not None,
        "analyzer_deadline_seconds": detection.analyzer_deadline_seconds,
        "threshold_bounds": [detection.low_max, detection.medium_max, detection.high_max],
        "executor_max_attempts": settings.response.executor_max_attempts,
    }
