"""Location acquisition with source fallbacks.

Priority chain: stored cache -> IP lookup -> GPS -> manual entry. Each failing source is
logged and the next one tried; ``LocationUnavailableError`` surfaces only when every source
is exhausted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from gym_proximity.config import AcquisitionConfig
from gym_proximity.geocode import IpGeolocator, NominatimForwardGeocoder, NominatimReverseGeocoder
from gym_proximity.location_store import LocationStore
from gym_proximity.models import Location, LocationSource
from gym_proximity.normalize import normalize_location
from gym_proximity.timeutils import Clock, utc_now

logger = logging.getLogger(__name__)


class GeolocationErrorCode(str, Enum):
    PERMISSION_DENIED = "PERMISSION_DENIED"
    POSITION_UNAVAILABLE = "POSITION_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"


_MESSAGES = {
    GeolocationErrorCode.PERMISSION_DENIED: "Location access denied. Please enable location permissions.",
    GeolocationErrorCode.POSITION_UNAVAILABLE: "Location information unavailable.",
    GeolocationErrorCode.TIMEOUT: "Location request timed out.",
}


class GeolocationError(Exception):
    """Device geolocation failure."""

    def __init__(self, code: GeolocationErrorCode, message: str | None = None) -> None:
        super().__init__(message or _MESSAGES[code])
        self.code = code


class LocationUnavailableError(Exception):
    """Every acquisition source failed; the caller should offer manual entry."""


@dataclass(frozen=True, slots=True)
class GpsFix:
    """A raw device fix."""

    latitude: float
    longitude: float
    accuracy_m: float | None = None


class GpsProvider(Protocol):
    async def current_position(self) -> GpsFix: ...


class UnavailableGpsProvider:
    """Provider for hosts without positioning hardware."""

    async def current_position(self) -> GpsFix:
        raise GeolocationError(GeolocationErrorCode.POSITION_UNAVAILABLE, "Geolocation is not supported on this device")


class FixedGpsProvider:
    """Provider returning a preset fix (command line ``--gps``, tests)."""

    def __init__(self, fix: GpsFix) -> None:
        self._fix = fix

    async def current_position(self) -> GpsFix:
        return self._fix


@dataclass(frozen=True, slots=True)
class DetectionResult:
    """Outcome of consent-free detection."""

    location: Location | None
    method: str
    requires_user_consent: bool


class LocationAcquirer:
    """Acquire the device location from the best available source."""

    def __init__(
        self,
        store: LocationStore,
        *,
        ip_geolocator: IpGeolocator | None = None,
        gps_provider: GpsProvider | None = None,
        reverse_geocoder: NominatimReverseGeocoder | None = None,
        forward_geocoder: NominatimForwardGeocoder | None = None,
        config: AcquisitionConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._ip = ip_geolocator
        self._gps = gps_provider or UnavailableGpsProvider()
        self._reverse = reverse_geocoder
        self._forward = forward_geocoder
        self._cfg = config or AcquisitionConfig()
        self._clock = clock

    def _stored(self, max_age_hours: float) -> Location | None:
        loc = self._store.get(max_age_hours)
        if loc is not None and loc.is_complete:
            return loc
        return None

    def _remember(self, location: Location) -> Location:
        if location.is_complete:
            self._store.store(location)
        else:
            logger.debug("Not storing incomplete %s location", location.source.value)
        return location

    async def locate_by_ip(self) -> Location | None:
        if self._ip is None:
            return None
        loc = await asyncio.to_thread(self._ip.lookup)
        if loc is None or not loc.has_coordinates:
            logger.warning("IP geolocation failed")
            return None
        return loc

    async def locate_by_gps(self, timeout: float | None = None) -> Location:
        """Ask the device for a fix and reverse-geocode its city.

        Raises:
            GeolocationError: Permission denied, position unavailable or timeout.
        """

        seconds = self._cfg.gps_timeout_seconds if timeout is None else timeout
        try:
            fix = await asyncio.wait_for(self._gps.current_position(), timeout=seconds)
        except TimeoutError as exc:
            raise GeolocationError(GeolocationErrorCode.TIMEOUT) from exc

        raw: dict[str, object] = {
            "lat": fix.latitude,
            "lng": fix.longitude,
            "source": LocationSource.GPS.value,
        }
        if fix.accuracy_m is not None:
            raw["accuracy"] = fix.accuracy_m
        if self._reverse is not None:
            place = await asyncio.to_thread(self._reverse.reverse, fix.latitude, fix.longitude)
            if place is None:
                logger.warning("Reverse geocoding failed; keeping coordinates only")
            else:
                raw.update(
                    city=place.city,
                    address=place.display_name,
                    state=place.state,
                    country=place.country,
                    zipCode=place.postcode,
                )
        loc = normalize_location(raw, clock=self._clock)
        if not loc.has_coordinates:
            raise GeolocationError(GeolocationErrorCode.POSITION_UNAVAILABLE, "Device returned invalid coordinates")
        return loc

    async def locate_manual(self, text: str) -> Location:
        """Manual entry; coordinates are attached when forward geocoding succeeds."""

        query = text.strip()
        raw: dict[str, object] = {"city": query, "address": query, "source": LocationSource.MANUAL.value}
        if self._forward is not None and query:
            place = await asyncio.to_thread(self._forward.search, query)
            if place is None:
                logger.warning("Could not geocode manual location %r", query)
            else:
                raw.update(
                    lat=place.lat,
                    lng=place.lng,
                    city=place.city or query,
                    address=place.display_name or query,
                    state=place.state,
                    country=place.country,
                    zipCode=place.postcode,
                )
        return normalize_location(raw, clock=self._clock)

    async def detect_smart(self) -> DetectionResult:
        """Consent-free detection: recent stored fix (24h), then IP lookup."""

        stored = self._stored(self._cfg.smart_max_age_hours)
        if stored is not None:
            return DetectionResult(stored, "stored", requires_user_consent=False)
        ip_loc = await self.locate_by_ip()
        if ip_loc is not None:
            return DetectionResult(ip_loc, "ip", requires_user_consent=False)
        return DetectionResult(None, "gps-available", requires_user_consent=True)

    async def get_best_location(self) -> Location:
        """Stored fix within 7 days, otherwise smart detection.

        Raises:
            LocationUnavailableError: If no consent-free source produced a location.
        """

        stored = self._stored(self._cfg.best_max_age_hours)
        if stored is not None:
            logger.debug("Using stored location %s", stored.city)
            return stored
        result = await self.detect_smart()
        if result.location is None:
            raise LocationUnavailableError("No stored or IP-based location; GPS permission required")
        return self._remember(result.location)

    async def acquire(self, manual_text: str | None = None) -> Location:
        """Full chain: stored -> IP -> GPS -> manual.

        Returns:
            A complete location, which has been stored.

        Raises:
            LocationUnavailableError: If every source failed or produced an incomplete location.
        """

        stored = self._stored(self._cfg.best_max_age_hours)
        if stored is not None:
            return stored

        ip_loc = await self.locate_by_ip()
        if ip_loc is not None and ip_loc.is_complete:
            return self._remember(ip_loc)
        logger.info("IP location unavailable; trying GPS")

        try:
            gps_loc = await self.locate_by_gps()
        except GeolocationError as exc:
            logger.info("GPS unavailable (%s); trying manual entry", exc.code.value)
        else:
            if gps_loc.is_complete:
                return self._remember(gps_loc)
            logger.info("GPS fix has no city; trying manual entry")

        if manual_text:
            manual = await self.locate_manual(manual_text)
            if manual.is_complete:
                return self._remember(manual)
            logger.info("Manual location %r could not be geocoded", manual_text)

        raise LocationUnavailableError("Unable to determine your location; please enter it manually")
