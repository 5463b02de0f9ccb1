"""Location normalization: heterogeneous raw payloads -> canonical Location.

Accepted inputs include browser GPS fixes, IP lookup payloads, manual address entries,
backend records (flat ``lat``/``lng`` or GeoJSON ``location.coordinates``) and Location
instances. ``normalize_location`` is total: malformed fields degrade to defaults.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import replace
from typing import Any, Final

from gym_proximity.geo import in_continental_canada
from gym_proximity.models import (
    DEFAULT_COUNTRY,
    PLACEHOLDER_ADDRESS,
    PLACEHOLDER_CITY,
    Accuracy,
    Location,
    LocationSource,
)
from gym_proximity.timeutils import Clock, isoformat_utc, parse_iso, utc_now


CANADIAN_CITIES: Final[tuple[str, ...]] = (
    "toronto",
    "montreal",
    "montréal",
    "vancouver",
    "calgary",
    "edmonton",
    "ottawa",
    "winnipeg",
    "quebec",
    "québec",
    "hamilton",
    "kitchener",
    "halifax",
    "saskatoon",
    "regina",
    "laval",
    "gatineau",
    "longueuil",
    "mississauga",
    "brampton",
    "burnaby",
    "markham",
    "sherbrooke",
    "st. john's",
    "moncton",
    "fredericton",
    "charlottetown",
    "whitehorse",
    "yellowknife",
    "iqaluit",
    "kelowna",
    "barrie",
    "guelph",
    "oshawa",
    "trois-rivières",
    "trois-rivieres",
    "saguenay",
    "terrebonne",
)

_COUNTRY_ALIASES: Final[dict[str, str]] = {
    "canada": "CA",
    "ca": "CA",
    "can": "CA",
    "united states": "US",
    "united states of america": "US",
    "usa": "US",
    "us": "US",
}


def canonical_source(value: object) -> LocationSource:
    """Map a free-form source string onto a canonical LocationSource.

    Unknown strings fall into the single default arm (``manual``).
    """

    if isinstance(value, LocationSource):
        return value
    key = str(value or "").strip().lower()
    match key:
        case "gps" | "fresh-gps" | "fresh-gps-guest" | "auto-refresh" | "browser" | "geolocation" | "watch":
            return LocationSource.GPS
        case "ip-geolocation" | "ip" | "ipapi" | "ip-lookup":
            return LocationSource.IP_GEOLOCATION
        case "imported" | "backend" | "server" | "user_profile" | "gymbros_profile" | "user_model":
            return LocationSource.IMPORTED
        case _:
            return LocationSource.MANUAL


def accuracy_from_meters(meters: float) -> Accuracy:
    """Bucket a horizontal accuracy radius (meters)."""

    if meters < 10:
        return Accuracy.HIGH
    if meters < 100:
        return Accuracy.MEDIUM
    if meters < 500:
        return Accuracy.LOW
    return Accuracy.APPROXIMATE


def accuracy_from_source(source: LocationSource) -> Accuracy:
    match source:
        case LocationSource.GPS:
            return Accuracy.HIGH
        case LocationSource.IP_GEOLOCATION:
            return Accuracy.LOW
        case _:
            return Accuracy.MEDIUM


def resolve_accuracy(value: object, source: LocationSource) -> Accuracy:
    """Use an explicit bucket, a numeric radius in meters, or fall back to the source."""

    if isinstance(value, Accuracy):
        return value
    if isinstance(value, str):
        key = value.strip().lower()
        for bucket in Accuracy:
            if bucket.value == key:
                return bucket
    meters = coerce_float(value)
    if meters is not None and meters >= 0:
        return accuracy_from_meters(meters)
    return accuracy_from_source(source)


def coerce_float(value: object) -> float | None:
    """Coerce numbers and numeric strings to float; None for anything else."""

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        f = float(value)
    elif isinstance(value, str):
        try:
            f = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return f if math.isfinite(f) else None


def _text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        v = raw.get(k)
        if v is not None and v != "":
            return v
    return None


def _coordinates(raw: Mapping[str, Any]) -> tuple[float | None, float | None]:
    lat = coerce_float(_first(raw, "lat", "latitude"))
    lng = coerce_float(_first(raw, "lng", "lon", "longitude"))
    if lat is not None and lng is not None:
        return lat, lng

    # GeoJSON order: [lng, lat]
    geo = raw.get("location")
    coords = geo.get("coordinates") if isinstance(geo, Mapping) else raw.get("coordinates")
    if isinstance(coords, (list, tuple)) and len(coords) >= 2:
        g_lng = coerce_float(coords[0])
        g_lat = coerce_float(coords[1])
        if g_lat is not None and g_lng is not None:
            return g_lat, g_lng
    return lat, lng


def _explicit_country(value: str) -> str:
    alias = _COUNTRY_ALIASES.get(value.lower())
    if alias is not None:
        return alias
    if len(value) == 2:
        return value.upper()
    return value


def infer_country(
    explicit: str,
    city: str,
    address: str,
    lat: float | None,
    lng: float | None,
) -> str:
    """Infer a country code.

    Order (first match wins): explicit field, known Canadian city, Canadian bounding box.
    A mention of "canada" in the address overrides everything.
    """

    if "canada" in address.lower():
        return "CA"
    if explicit:
        return _explicit_country(explicit)
    city_l = city.lower()
    if city_l and city != PLACEHOLDER_CITY and any(name in city_l for name in CANADIAN_CITIES):
        return "CA"
    if lat is not None and lng is not None and in_continental_canada(lat, lng):
        return "CA"
    return DEFAULT_COUNTRY


def _timestamp(value: object, clock: Clock) -> str:
    dt = parse_iso(value)
    if dt is None:
        return isoformat_utc(clock())
    return isoformat_utc(dt)


def normalize_location(raw: object, *, clock: Clock = utc_now) -> Location:
    """Normalize any raw location payload into a Location.

    Never raises. Unparseable coordinates become None (never 0), so callers can tell
    "no location" apart from a real fix.

    Args:
        raw: Mapping, Location, or anything else (treated as empty).
        clock: Time source for a missing/invalid timestamp.

    Returns:
        Location. ``normalize_location(normalize_location(x)) == normalize_location(x)``.
    """

    if isinstance(raw, Location):
        data: Mapping[str, Any] = raw.to_dict()
    elif isinstance(raw, Mapping):
        data = raw
    else:
        data = {}

    lat, lng = _coordinates(data)
    if lat is not None and not -90.0 <= lat <= 90.0:
        lat = None
    if lng is not None and not -180.0 <= lng <= 180.0:
        lng = None

    city = _text(_first(data, "city", "town", "village"))
    address = _text(_first(data, "address", "formattedAddress", "display_name"))
    if city == PLACEHOLDER_CITY:
        city = ""
    if address == PLACEHOLDER_ADDRESS:
        address = ""
    if not city and address:
        city = address
    if not address and city:
        address = city
    city = city or PLACEHOLDER_CITY
    address = address or PLACEHOLDER_ADDRESS

    source = canonical_source(data.get("source"))
    accuracy = resolve_accuracy(data.get("accuracy"), source)

    return Location(
        lat=lat,
        lng=lng,
        city=city,
        address=address,
        state=_text(_first(data, "state", "region", "province")),
        country=infer_country(_text(_first(data, "country", "country_code", "countryCode")), city, address, lat, lng),
        zip_code=_text(_first(data, "zipCode", "zip_code", "postal", "postcode")),
        source=source,
        accuracy=accuracy,
        timestamp=_timestamp(_first(data, "timestamp", "lastUpdated", "updatedAt"), clock),
    )


def stamp(location: Location, *, clock: Clock = utc_now) -> Location:
    """Return a copy with ``timestamp`` set to now."""

    return replace(location, timestamp=isoformat_utc(clock()))
