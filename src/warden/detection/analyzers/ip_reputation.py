"""IP reputation analyzer.

Matches the event source address against configured malicious and suspicious
networks, then optionally asks an external reputation lookup. Private,
loopback and link-local addresses are never scored.
"""

import ipaddress
from collections.abc import Awaitable, Callable

from pydantic import BaseModel, Field, field_validator

from warden.core.exceptions import AnalyzerUnavailableError
from warden.core.logging import get_logger
from warden.detection.types import Event, RiskFactor, Severity

logger = get_logger(__name__)

IpAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IpNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network

ReputationLookup = Callable[[str], Awaitable[Severity | None]]
"""Async callable returning a severity for an address, or None if clean."""

# Score contributed for each lookup-reported severity
LOOKUP_SEVERITY_SCORES: dict[Severity, int] = {
    Severity.LOW: 10,
    Severity.MEDIUM: 30,
    Severity.HIGH: 55,
    Severity.CRITICAL: 80,
}


class IpReputationConfig(BaseModel):
    """Configuration for IP reputation matching."""

    malicious_networks: list[str] = Field(default_factory=list)
    suspicious_networks: list[str] = Field(default_factory=list)
    malicious_score: int = Field(default=80, ge=0, le=100)
    suspicious_score: int = Field(default=30, ge=0, le=100)
    ignore_private: bool = True

    @field_validator("malicious_networks", "suspicious_networks")
    @classmethod
    def validate_networks(cls, value: list[str]) -> list[str]:
        for network in value:
            ipaddress.ip_network(network, strict=False)
        return value


class IpReputationAnalyzer:
    """Scores events by the reputation of their source address."""

    name = "ip_reputation"
    event_kinds: frozenset = frozenset()

    def __init__(
        self,
        config: IpReputationConfig | None = None,
        lookup: ReputationLookup | None = None,
    ):
        """Initialize the analyzer.

        Args:
            config: Network lists and scores.
            lookup: Optional external reputation lookup.
        """
        self.config = config or IpReputationConfig()
        self._lookup = lookup
        self._malicious: list[IpNetwork] = [
            ipaddress.ip_network(n, strict=False) for n in self.config.malicious_networks
        ]
        self._suspicious: list[IpNetwork] = [
            ipaddress.ip_network(n, strict=False) for n in self.config.suspicious_networks
        ]

    async def analyze(self, event: Event, *, timeout_seconds: float) -> RiskFactor | None:
        address = self._parse(event.source_address)
        if address is None:
            return None

        if self.config.ignore_private and (
            address.is_private or address.is_loopback or address.is_link_local
        ):
            return None

        if self._matches(address, self._malicious):
            return RiskFactor(
                type="malicious_source_address",
                severity=Severity.CRITICAL,
                score=self.config.malicious_score,
                source_analyzer=self.name,
                description=f"{address} is in a known malicious network",
            )

        if self._matches(address, self._suspicious):
            return RiskFactor(
                type="suspicious_source_address",
                severity=Severity.MEDIUM,
                score=self.config.suspicious_score,
                source_analyzer=self.name,
                description=f"{address} is in a suspicious network",
            )

        if self._lookup is not None:
            try:
                severity = await self._lookup(str(address))
            except (OSError, TimeoutError) as e:
                raise AnalyzerUnavailableError(self.name, f"reputation lookup failed: {e}") from e
            if severity is not None:
                return RiskFactor(
                    type="reputation_lookup_hit",
                    severity=severity,
                    score=LOOKUP_SEVERITY_SCORES[severity],
                    source_analyzer=self.name,
                    description=f"Reputation service rated {address} {severity.value}",
                )

        return None

    @staticmethod
    def _parse(source_address: str | None) -> IpAddress | None:
        if not source_address:
            return None
        try:
            return ipaddress.ip_address(source_address)
        except ValueError:
            logger.debug("unparseable_source_address", source_address=source_address)
            return None

    @staticmethod
    def _matches(address: IpAddress, networks: list[IpNetwork]) -> bool:
        return any(
            address.version == network.version and address in network for network in networks
        )
