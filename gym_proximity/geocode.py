"""Geocoding utilities: IP lookup, reverse (lat/lng -> place) and forward (text -> lat/lng).

This module intentionally uses only Python standard library for HTTP.

Important:
    - Public geocoding services are rate-limited.
    - For Nominatim (OpenStreetMap), please respect their usage policy and set a reasonable
      request interval and a descriptive User-Agent.
"""

from __future__ import annotations

import json
import logging
import time
import urllib.parse
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from gym_proximity.models import Location, LocationSource
from gym_proximity.normalize import coerce_float, normalize_location
from gym_proximity.storage import KeyValueStorage

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "gym-proximity/0.1.0 (location-sync; please set your own UA)"


@dataclass(frozen=True, slots=True)
class PlaceResult:
    """A minimal geocoding result."""

    city: str = ""
    state: str = ""
    country: str = ""
    postcode: str = ""
    display_name: str = ""
    lat: float | None = None
    lng: float | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def coord_key(lat: float, lon: float, precision: int) -> str:
    """Build a stable cache key by rounding coordinates.

    Notes:
        Precision=4 is often a good default (lat ~ 11m resolution).
    """

    return f"{round(lat, precision):.{precision}f},{round(lon, precision):.{precision}f}"


def get_json(url: str, *, user_agent: str, timeout_seconds: float) -> Any | None:
    """GET a URL and decode JSON; None on any transport or decode failure."""

    req = urllib.request.Request(
        url,
        headers={
            "User-Agent": user_agent,
            "Accept": "application/json",
        },
        method="GET",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:  # noqa: S310
            body = resp.read().decode("utf-8", errors="replace")
        return json.loads(body)
    except (OSError, ValueError):
        logger.warning("GET %s failed", url.split("?", 1)[0], exc_info=True)
        return None


def place_from_nominatim(raw: Mapping[str, Any]) -> PlaceResult:
    """Extract city/state/country/postcode from a Nominatim record (reverse or search)."""

    address = raw.get("address") if isinstance(raw.get("address"), Mapping) else {}
    city = address.get("city") or address.get("town") or address.get("village") or address.get("municipality")
    return PlaceResult(
        city=str(city or ""),
        state=str(address.get("state") or address.get("province") or ""),
        country=str(address.get("country_code") or "").upper(),
        postcode=str(address.get("postcode") or ""),
        display_name=str(raw.get("display_name") or ""),
        lat=coerce_float(raw.get("lat")),
        lng=coerce_float(raw.get("lon")),
        raw=dict(raw),
    )


@dataclass(frozen=True, slots=True)
class NominatimConfig:
    """Configuration for the Nominatim reverse/search APIs."""

    base_url: str = "https://nominatim.openstreetmap.org"
    accept_language: str = "en"
    zoom: int = 18
    addressdetails: int = 1
    timeout_seconds: float = 20.0
    min_interval_seconds: float = 1.0
    user_agent: str = DEFAULT_USER_AGENT


def nominatim_reverse_raw(lat: float, lon: float, cfg: NominatimConfig) -> dict[str, Any] | None:
    """Call Nominatim reverse API and return raw JSON dict.

    This is a pure function (no cache, no throttling state).

    Returns:
        Parsed JSON dict on success, otherwise None.
    """

    params = {
        "format": "jsonv2",
        "lat": f"{lat:.8f}",
        "lon": f"{lon:.8f}",
        "zoom": str(cfg.zoom),
        "addressdetails": str(cfg.addressdetails),
        "accept-language": cfg.accept_language,
    }
    url = f"{cfg.base_url}/reverse?{urllib.parse.urlencode(params)}"
    raw = get_json(url, user_agent=cfg.user_agent, timeout_seconds=cfg.timeout_seconds)
    if not isinstance(raw, dict) or "error" in raw:
        return None
    return raw


def nominatim_search_raw(text: str, cfg: NominatimConfig) -> dict[str, Any] | None:
    """Call Nominatim search API; return the best match or None."""

    params = {
        "format": "jsonv2",
        "q": text,
        "limit": "1",
        "addressdetails": str(cfg.addressdetails),
        "accept-language": cfg.accept_language,
    }
    url = f"{cfg.base_url}/search?{urllib.parse.urlencode(params)}"
    raw = get_json(url, user_agent=cfg.user_agent, timeout_seconds=cfg.timeout_seconds)
    if not isinstance(raw, list) or not raw or not isinstance(raw[0], dict):
        return None
    return raw[0]


class _Throttle:
    """Enforce a minimum interval between consecutive requests."""

    def __init__(self, min_interval_seconds: float) -> None:
        self._min_interval = min_interval_seconds
        self._last_request_at = 0.0

    def wait(self) -> None:
        now = time.monotonic()
        wait = self._min_interval - (now - self._last_request_at)
        if wait > 0:
            time.sleep(wait)
        self._last_request_at = time.monotonic()


class NominatimReverseGeocoder:
    """Reverse geocoder using OpenStreetMap Nominatim."""

    CACHE_PREFIX = "geocode:reverse:"

    def __init__(
        self,
        config: NominatimConfig,
        cache: KeyValueStorage | None = None,
        *,
        precision: int = 4,
    ) -> None:
        self._cfg = config
        self._cache = cache
        self._precision = precision
        self._throttle = _Throttle(config.min_interval_seconds)

    def reverse(self, lat: float, lng: float) -> PlaceResult | None:
        """Reverse geocode one coordinate.

        Returns:
            PlaceResult or None if the request failed.
        """

        key = self.CACHE_PREFIX + coord_key(lat, lng, self._precision)
        if self._cache is not None:
            cached = self._cache.get_item(key)
            if isinstance(cached, dict):
                return place_from_nominatim(cached)

        self._throttle.wait()
        raw = nominatim_reverse_raw(lat, lng, self._cfg)
        if raw is None:
            return None
        if self._cache is not None:
            self._cache.set_item(key, raw)
        return place_from_nominatim(raw)


class NominatimForwardGeocoder:
    """Forward geocoder (free text -> coordinates) for manual location entry."""

    def __init__(self, config: NominatimConfig) -> None:
        self._cfg = config
        self._throttle = _Throttle(config.min_interval_seconds)

    def search(self, text: str) -> PlaceResult | None:
        query = text.strip()
        if not query:
            return None
        self._throttle.wait()
        raw = nominatim_search_raw(query, self._cfg)
        if raw is None:
            return None
        place = place_from_nominatim(raw)
        if place.lat is None or place.lng is None:
            return None
        return place


@dataclass(frozen=True, slots=True)
class IpLookupConfig:
    """Configuration for an ipapi.co-compatible IP geolocation endpoint."""

    url: str = "https://ipapi.co/json/"
    timeout_seconds: float = 10.0
    user_agent: str = DEFAULT_USER_AGENT


def ip_lookup_raw(cfg: IpLookupConfig) -> dict[str, Any] | None:
    raw = get_json(cfg.url, user_agent=cfg.user_agent, timeout_seconds=cfg.timeout_seconds)
    if not isinstance(raw, dict) or raw.get("error"):
        return None
    return raw


def location_from_ip_payload(raw: Mapping[str, Any]) -> dict[str, Any] | None:
    """Map an ipapi.co payload onto the raw location shape; None without coordinates."""

    lat = coerce_float(raw.get("latitude"))
    lng = coerce_float(raw.get("longitude"))
    if lat is None or lng is None:
        return None
    city = str(raw.get("city") or "")
    region = str(raw.get("region") or "")
    postal = str(raw.get("postal") or "")
    address = f"{city}, {region} {postal}".strip(" ,") if city else ""
    return {
        "lat": lat,
        "lng": lng,
        "city": city,
        "address": address,
        "state": region,
        "country": str(raw.get("country_code") or raw.get("country") or ""),
        "zipCode": postal,
        "source": LocationSource.IP_GEOLOCATION.value,
    }


class IpGeolocator:
    """Consent-free, low accuracy location from the device's public IP."""

    def __init__(self, config: IpLookupConfig) -> None:
        self._cfg = config

    def lookup(self) -> Location | None:
        raw = ip_lookup_raw(self._cfg)
        if raw is None:
            return None
        payload = location_from_ip_payload(raw)
        if payload is None:
            logger.warning("IP geolocation returned no coordinates")
            return None
        return normalize_location(payload)

