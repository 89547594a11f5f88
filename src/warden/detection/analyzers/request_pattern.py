"""HTTP request signature analyzer.

Scans the request path, query string and body of HTTP_REQUEST events for
common injection signatures, and the user agent for known scanning tools.
One factor is produced per matched category.
"""

import re
from dataclasses import dataclass
from urllib.parse import unquote_plus

from warden.detection.types import Event, EventKind, RiskFactor, Severity


@dataclass(frozen=True)
class Signature:
    """A category of request patterns and the factor it produces."""

    category: str
    severity: Severity
    score: int
    patterns: tuple[re.Pattern[str], ...]


_SQL_INJECTION = Signature(
    category="sql_injection",
    severity=Severity.HIGH,
    score=60,
    patterns=(
        re.compile(r"'\s*OR\s+'[^']*'\s*=\s*'", re.IGNORECASE),
        re.compile(r"'\s*OR\s+\d+\s*=\s*\d+", re.IGNORECASE),
        re.compile(r"UNION\s+(ALL\s+)?SELECT", re.IGNORECASE),
        re.compile(r";\s*DROP\s+(TABLE|DATABASE)", re.IGNORECASE),
        re.compile(r"'\s*;\s*--"),
        re.compile(r"SLEEP\s*\(\s*\d+\s*\)", re.IGNORECASE),
        re.compile(r"WAITFOR\s+DELAY", re.IGNORECASE),
        re.compile(r"INTO\s+(OUT|DUMP)FILE", re.IGNORECASE),
    ),
)

_XSS = Signature(
    category="cross_site_scripting",
    severity=Severity.HIGH,
    score=55,
    patterns=(
        re.compile(r"<script[^>]*>", re.IGNORECASE),
        re.compile(r"javascript\s*:", re.IGNORECASE),
        re.compile(r"\bon(error|load|mouseover|focus)\s*=", re.IGNORECASE),
        re.compile(r"<iframe[^>]*>", re.IGNORECASE),
        re.compile(r"document\.cookie", re.IGNORECASE),
    ),
)

_PATH_TRAVERSAL = Signature(
    category="path_traversal",
    severity=Severity.HIGH,
    score=55,
    patterns=(
        re.compile(r"(\.\.[\\/]){2,}"),
        re.compile(r"[\\/]etc[\\/]passwd", re.IGNORECASE),
        re.compile(r"[\\/]windows[\\/]system32", re.IGNORECASE),
        re.compile(r"%2e%2e(%2f|%5c)", re.IGNORECASE),
    ),
)

_COMMAND_INJECTION = Signature(
    category="command_injection",
    severity=Severity.HIGH,
    score=65,
    patterns=(
        re.compile(r"[;&|]\s*(cat|ls|id|whoami|uname|wget|curl|nc|bash|sh)\b", re.IGNORECASE),
        re.compile(r"\$\([^)]*\)"),
        re.compile(r"`[^`]+`"),
    ),
)

DEFAULT_SIGNATURES: tuple[Signature, ...] = (
    _SQL_INJECTION,
    _XSS,
    _PATH_TRAVERSAL,
    _COMMAND_INJECTION,
)

SCANNER_USER_AGENTS: tuple[str, ...] = (
    "sqlmap",
    "nikto",
    "nmap",
    "masscan",
    "zgrab",
    "nuclei",
    "dirbuster",
    "gobuster",
    "wpscan",
    "acunetix",
)


class RequestPatternAnalyzer:
    """Detects injection payloads and scanner user agents in HTTP requests.

    Reads ``path``, ``query`` and ``body`` from the event's raw attributes.
    """

    name = "request_pattern"
    event_kinds = frozenset({EventKind.HTTP_REQUEST})

    def __init__(
        self,
        signatures: tuple[Signature, ...] = DEFAULT_SIGNATURES,
        scanner_user_agents: tuple[str, ...] = SCANNER_USER_AGENTS,
        scanner_score: int = 30,
    ):
        self.signatures = signatures
        self.scanner_user_agents = tuple(ua.lower() for ua in scanner_user_agents)
        self.scanner_score = scanner_score

    async def analyze(self, event: Event, *, timeout_seconds: float) -> list[RiskFactor]:
        surface = self._surface(event)
        factors = []

        for signature in self.signatures:
            matched = next((p for p in signature.patterns if p.search(surface)), None)
            if matched is not None:
                factors.append(
                    RiskFactor(
                        type=signature.category,
                        severity=signature.severity,
                        score=signature.score,
                        source_analyzer=self.name,
                        description=f"Request matched {signature.category} pattern {matched.pattern!r}",
                    )
                )

        agent = (event.user_agent or "").lower()
        tool = next((ua for ua in self.scanner_user_agents if ua in agent), None)
        if tool is not None:
            factors.append(
                RiskFactor(
                    type="scanner_user_agent",
                    severity=Severity.MEDIUM,
                    score=self.scanner_score,
                    source_analyzer=self.name,
                    description=f"User agent identifies scanning tool {tool}",
                )
            )

        return factors

    @staticmethod
    def _surface(event: Event) -> str:
        parts = [
            str(event.attribute(key) or "") for key in ("path", "query", "body")
        ]
        raw = "\n".join(parts)
        # Match both the raw and the URL-decoded form
        return f"{raw}\n{unquote_plus(raw)}"
