"""Reference analyzers implementing the Analyzer protocol."""

from warden.detection.analyzers.access_baseline import (
    AccessBaselineAnalyzer,
    AccessBaselineConfig,
    RunningStats,
)
from warden.detection.analyzers.auth_failure import AuthFailureAnalyzer, AuthFailureConfig
from warden.detection.analyzers.geo_velocity import (
    GeoVelocityAnalyzer,
    GeoVelocityConfig,
    haversine_km,
)
from warden.detection.analyzers.ip_reputation import (
    IpReputationAnalyzer,
    IpReputationConfig,
    ReputationLookup,
)
from warden.detection.analyzers.request_pattern import (
    DEFAULT_SIGNATURES,
    SCANNER_USER_AGENTS,
    RequestPatternAnalyzer,
    Signature,
)

__all__ = [
    "AccessBaselineAnalyzer",
    "AccessBaselineConfig",
    "RunningStats",
    "AuthFailureAnalyzer",
    "AuthFailureConfig",
    "GeoVelocityAnalyzer",
    "GeoVelocityConfig",
    "haversine_km",
    "IpReputationAnalyzer",
    "IpReputationConfig",
    "ReputationLookup",
    "RequestPatternAnalyzer",
    "Signature",
    "DEFAULT_SIGNATURES",
    "SCANNER_USER_AGENTS",
]
