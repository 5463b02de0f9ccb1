"""Data models for locations, entity caches and sync state."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Final

from gym_proximity.geo import is_valid_coordinates


PLACEHOLDER_CITY: Final[str] = "Unknown City"
PLACEHOLDER_ADDRESS: Final[str] = "Unknown Address"
DEFAULT_COUNTRY: Final[str] = "US"

SYNC_COOLDOWN: Final[timedelta] = timedelta(minutes=30)
SYNC_POLL_INTERVAL: Final[timedelta] = timedelta(minutes=30)
SIGNIFICANT_DISTANCE_M: Final[float] = 500.0
ENTITY_TTL: Final[timedelta] = timedelta(minutes=5)

BEST_LOCATION_MAX_AGE_HOURS: Final[float] = 168.0
SMART_DETECTION_MAX_AGE_HOURS: Final[float] = 24.0


class LocationSource(str, Enum):
    """Canonical origin of a location fix."""

    GPS = "gps"
    IP_GEOLOCATION = "ip-geolocation"
    MANUAL = "manual"
    IMPORTED = "imported"


class Accuracy(str, Enum):
    """Coarse confidence bucket for a location fix."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    APPROXIMATE = "approximate"


@dataclass(frozen=True, slots=True)
class Location:
    """Canonical location record.

    Attributes:
        lat: Latitude in decimal degrees, or None when the raw value was missing/unparseable.
        lng: Longitude in decimal degrees, or None when the raw value was missing/unparseable.
        city: City name, "Unknown City" when nothing better is known.
        address: Free-form address, "Unknown Address" when nothing better is known.
        state: State/province, may be empty.
        country: Country code (e.g. "CA", "US").
        zip_code: Postal code, may be empty.
        source: Where the fix came from.
        accuracy: Confidence bucket.
        timestamp: ISO-8601 observation time (UTC).
    """

    lat: float | None
    lng: float | None
    city: str = PLACEHOLDER_CITY
    address: str = PLACEHOLDER_ADDRESS
    state: str = ""
    country: str = DEFAULT_COUNTRY
    zip_code: str = ""
    source: LocationSource = LocationSource.MANUAL
    accuracy: Accuracy = Accuracy.MEDIUM
    timestamp: str = ""

    @property
    def has_coordinates(self) -> bool:
        """True when lat/lng are present, in range and not the (0, 0) coercion artifact."""

        return is_valid_coordinates(self.lat, self.lng)

    @property
    def has_city(self) -> bool:
        return bool(self.city.strip()) and self.city != PLACEHOLDER_CITY

    @property
    def is_complete(self) -> bool:
        """Only complete locations may be stored as current or pushed to the backend."""

        return self.has_coordinates and self.has_city

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready mapping using the backend's field names."""

        return {
            "lat": self.lat,
            "lng": self.lng,
            "city": self.city,
            "address": self.address,
            "state": self.state,
            "country": self.country,
            "zipCode": self.zip_code,
            "source": self.source.value,
            "accuracy": self.accuracy.value,
            "timestamp": self.timestamp,
        }

    def to_legacy_dict(self) -> dict[str, Any]:
        """Subset understood by older readers of the general storage key."""

        return {
            "lat": self.lat,
            "lng": self.lng,
            "city": self.city,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class CacheEntry:
    """Cached collection for one entity type.

    Note:
        ``pending`` holds the in-flight fetch; ``loading`` mirrors whether it is set.
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    last_fetched_at: datetime | None = None
    loading: bool = False
    params_key: str | None = None
    pending: asyncio.Future[list[dict[str, Any]]] | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class CacheSnapshot:
    """Read-only view of a CacheEntry."""

    entity_type: str
    items: tuple[dict[str, Any], ...]
    last_fetched_at: datetime | None
    loading: bool


@dataclass(slots=True)
class SyncState:
    """Per-session bookkeeping for server location pushes."""

    last_sync_time: datetime | None = None
    last_known_location: Location | None = None
    cooldown: timedelta = SYNC_COOLDOWN
    significant_distance_m: float = SIGNIFICANT_DISTANCE_M
    last_nearby_gyms: list[dict[str, Any]] = field(default_factory=list)


class SyncStatus(str, Enum):
    PUSHED = "pushed"
    COOLDOWN = "cooldown"
    NO_LOCATION = "no-location"
    INCOMPLETE = "incomplete"
    INSIGNIFICANT = "insignificant"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class LocationUpdateAck:
    """Backend acknowledgement of a location push."""

    success: bool
    nearby_gyms: list[dict[str, Any]]
    raw: dict[str, Any]


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Outcome of one sync evaluation."""

    status: SyncStatus
    distance_m: float | None = None
    ack: LocationUpdateAck | None = None
    error: str | None = None

    @property
    def pushed(self) -> bool:
        return self.status is SyncStatus.PUSHED
