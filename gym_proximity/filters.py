"""Distance and attribute filters over cached entities (pure, no I/O).

Stages compose by sequential application, cheapest/most selective first:
distance -> text -> categorical -> numeric.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from gym_proximity.geo import haversine_m, is_inside_circle, is_valid_coordinates, km_to_m, m_to_km
from gym_proximity.models import Location
from gym_proximity.normalize import coerce_float

logger = logging.getLogger(__name__)

Entity = Mapping[str, Any]
Origin = Location | tuple[float, float]


def distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters (same function the sync controller uses)."""

    return haversine_m(lat1, lng1, lat2, lng2)


def origin_pair(origin: Origin | None) -> tuple[float, float] | None:
    """Extract (lat, lng) from a Location or tuple; None when unusable."""

    if origin is None:
        return None
    if isinstance(origin, Location):
        lat, lng = origin.lat, origin.lng
    else:
        lat, lng = origin
    if not is_valid_coordinates(lat, lng):
        return None
    return float(lat), float(lng)  # type: ignore[arg-type]


def entity_coordinates(item: Entity) -> tuple[float, float] | None:
    lat = item.get("lat")
    lng = item.get("lng")
    if not is_valid_coordinates(lat, lng):
        return None
    return float(lat), float(lng)


def filter_by_radius(items: Iterable[Entity], origin: Origin, max_distance_km: float) -> list[Entity]:
    """Keep items with coordinates within ``max_distance_km`` of ``origin``.

    Raises:
        ValueError: If the origin has no usable coordinates.
    """

    center = origin_pair(origin)
    if center is None:
        raise ValueError("origin has no valid coordinates")
    limit_m = km_to_m(max_distance_km)
    out: list[Entity] = []
    for item in items:
        coords = entity_coordinates(item)
        if coords is None:
            continue
        if is_inside_circle(coords[0], coords[1], center[0], center[1], limit_m):
            out.append(item)
    return out


def with_distance(items: Iterable[Entity], origin: Origin) -> list[dict[str, Any]]:
    """Attach ``distanceKm`` (0.1 km precision) and sort nearest first; items without coordinates go last."""

    center = origin_pair(origin)
    if center is None:
        raise ValueError("origin has no valid coordinates")
    known: list[dict[str, Any]] = []
    unknown: list[dict[str, Any]] = []
    for item in items:
        coords = entity_coordinates(item)
        if coords is None:
            unknown.append({**item, "distanceKm": None})
            continue
        km = m_to_km(distance(center[0], center[1], coords[0], coords[1]))
        known.append({**item, "distanceKm": round(km, 1)})
    known.sort(key=lambda d: d["distanceKm"])
    return known + unknown


def _field_value(item: Entity, field: str) -> Any:
    """Resolve a dotted path like ``location.city``."""

    value: Any = item
    for part in field.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def _contains(value: Any, needle: str) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, set)):
        return any(_contains(v, needle) for v in value)
    return needle in str(value).lower()


def search_text(items: Iterable[Entity], query: str, fields: Sequence[str]) -> list[Entity]:
    """Case-insensitive substring match across ``fields``; list values match on any element."""

    needle = query.strip().lower()
    if not needle:
        return list(items)
    return [item for item in items if any(_contains(_field_value(item, f), needle) for f in fields)]


def filter_by_category(items: Iterable[Entity], field: str, allowed: Iterable[str]) -> list[Entity]:
    """Keep items whose ``field`` (scalar or list) intersects ``allowed`` (case-insensitive)."""

    wanted = {str(a).strip().lower() for a in allowed if str(a).strip()}
    if not wanted:
        return list(items)
    out: list[Entity] = []
    for item in items:
        value = _field_value(item, field)
        values = value if isinstance(value, (list, tuple, set)) else [value]
        if any(v is not None and str(v).strip().lower() in wanted for v in values):
            out.append(item)
    return out


def filter_by_range(
    items: Iterable[Entity],
    field: str,
    minimum: float | None = None,
    maximum: float | None = None,
) -> list[Entity]:
    """Keep items whose numeric ``field`` lies in [minimum, maximum]; non-numeric values are dropped."""

    if minimum is None and maximum is None:
        return list(items)
    out: list[Entity] = []
    for item in items:
        value = coerce_float(_field_value(item, field))
        if value is None:
            continue
        if minimum is not None and value < minimum:
            continue
        if maximum is not None and value > maximum:
            continue
        out.append(item)
    return out


@dataclass(frozen=True, slots=True)
class FilterCriteria:
    """Filter pipeline parameters; unset stages are skipped."""

    max_distance_km: float | None = None
    query: str = ""
    search_fields: tuple[str, ...] = ("name",)
    category_field: str | None = None
    categories: tuple[str, ...] = ()
    range_field: str | None = None
    range_min: float | None = None
    range_max: float | None = None


def apply_filters(items: Iterable[Entity], origin: Origin | None, criteria: FilterCriteria) -> list[Entity]:
    """Apply distance -> text -> categorical -> numeric stages in order."""

    result = list(items)
    if criteria.max_distance_km is not None:
        if origin_pair(origin) is None:
            logger.debug("No usable origin; skipping distance filter")
        else:
            result = filter_by_radius(result, origin, criteria.max_distance_km)  # type: ignore[arg-type]
    if criteria.query:
        result = search_text(result, criteria.query, criteria.search_fields)
    if criteria.category_field and criteria.categories:
        result = filter_by_category(result, criteria.category_field, criteria.categories)
    if criteria.range_field:
        result = filter_by_range(result, criteria.range_field, criteria.range_min, criteria.range_max)
    return result
