"""Impossible travel analyzer.

Compares each geolocated login of a subject with the previous one. If the
great-circle distance implies a travel speed above ``max_speed_kmh`` the
login is flagged. Locations are read from the ``latitude`` and ``longitude``
raw attributes. Only the last sighting of the ``max_subjects`` most recently
seen subjects is kept.
"""

import math
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field

from warden.detection.analyzers.state import BoundedState
from warden.detection.types import Event, EventKind, RiskFactor, Severity

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


@dataclass(frozen=True)
class _Sighting:
    latitude: float
    longitude: float
    timestamp: datetime


class GeoVelocityConfig(BaseModel):
    """Thresholds for impossible travel."""

    max_speed_kmh: float = Field(default=1000.0, gt=0.0)
    min_distance_km: float = Field(default=100.0, ge=0.0)
    """Hops shorter than this are ignored (geolocation noise)."""

    high_score: int = Field(default=60, ge=0, le=100)
    critical_score: int = Field(default=80, ge=0, le=100)
    critical_speed_factor: float = Field(default=3.0, ge=1.0)
    """Speed multiple of ``max_speed_kmh`` at which the hop is CRITICAL."""

    max_subjects: int = Field(default=50_000, ge=1)


class GeoVelocityAnalyzer:
    """Flags logins that would require faster-than-possible travel."""

    name = "geo_velocity"
    event_kinds = frozenset({EventKind.AUTH_ATTEMPT})

    def __init__(self, config: GeoVelocityConfig | None = None):
        self.config = config or GeoVelocityConfig()
        self._last_seen: BoundedState[_Sighting] = BoundedState(self.config.max_subjects)

    async def analyze(self, event: Event, *, timeout_seconds: float) -> RiskFactor | None:
        if not event.subject_identity or not event.attribute("success", True):
            return None

        try:
            current = _Sighting(
                latitude=float(event.attribute("latitude")),
                longitude=float(event.attribute("longitude")),
                timestamp=event.timestamp,
            )
        except (TypeError, ValueError):
            return None
        # Also rejects NaN and infinities
        if not (-90.0 <= current.latitude <= 90.0 and -180.0 <= current.longitude <= 180.0):
            return None

        previous = self._last_seen.peek(event.subject_identity)
        self._last_seen.put(event.subject_identity, current)
        if previous is None:
            return None

        distance = haversine_km(
            previous.latitude, previous.longitude, current.latitude, current.longitude
        )
        if distance < self.config.min_distance_km:
            return None

        hours = abs((current.timestamp - previous.timestamp).total_seconds()) / 3600.0
        speed = distance / max(hours, 1e-6)
        if speed <= self.config.max_speed_kmh:
            return None

        if speed >= self.config.max_speed_kmh * self.config.critical_speed_factor:
            severity, score = Severity.CRITICAL, self.config.critical_score
        else:
            severity, score = Severity.HIGH, self.config.high_score

        return RiskFactor(
            type="impossible_travel",
            severity=severity,
            score=score,
            source_analyzer=self.name,
            description=(
                f"{event.subject_identity} moved {distance:.0f} km in {hours * 60:.0f} min "
                f"({speed:.0f} km/h)"
            ),
        )
