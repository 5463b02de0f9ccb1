"""Process-wide cache of remote entity collections (map users, gyms, recommended profiles).

Each entity type has its own freshness window and loading flag. Concurrent ``fetch`` calls
for a type share one in-flight request.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from gym_proximity.backend import BackendClient, BackendError
from gym_proximity.geo import is_valid_coordinates
from gym_proximity.models import ENTITY_TTL, CacheEntry, CacheSnapshot
from gym_proximity.normalize import coerce_float
from gym_proximity.timeutils import Clock, utc_now

logger = logging.getLogger(__name__)

Params = Mapping[str, Any] | None
Fetcher = Callable[[Params], Awaitable[Sequence[Mapping[str, Any]]]]

USERS = "users"
GYMS = "gyms"
PROFILES = "profiles"


def project_entity(raw: Mapping[str, Any]) -> dict[str, Any] | None:
    """Flatten GeoJSON ``location.coordinates`` ([lng, lat]) into ``lat``/``lng`` and add ``id``.

    Returns:
        Projected dict, or None when the entity has no usable coordinates.
    """

    location = raw.get("location")
    coords = location.get("coordinates") if isinstance(location, Mapping) else None
    if not isinstance(coords, (list, tuple)) or len(coords) < 2:
        return None
    lng = coerce_float(coords[0])
    lat = coerce_float(coords[1])
    if not is_valid_coordinates(lat, lng):
        logger.debug("Dropping entity %s with invalid coordinates %r", raw.get("_id") or raw.get("id"), coords)
        return None
    entity_id = raw.get("_id") or raw.get("id")
    return {**raw, "lat": lat, "lng": lng, "id": None if entity_id is None else str(entity_id)}


def _with_id(raw: Mapping[str, Any]) -> dict[str, Any]:
    projected = project_entity(raw)
    if projected is not None:
        return projected
    entity_id = raw.get("_id") or raw.get("id")
    return {**raw, "id": None if entity_id is None else str(entity_id)}


def _params_key(params: Params) -> str | None:
    if not params:
        return None
    return json.dumps(dict(params), sort_keys=True, default=str)


@dataclass(frozen=True, slots=True)
class _EntityType:
    fetcher: Fetcher
    ttl: timedelta
    require_coordinates: bool


class EntityCache:
    """Cache of entity collections keyed by entity type."""

    def __init__(self, *, ttl: timedelta = ENTITY_TTL, clock: Clock = utc_now) -> None:
        self._ttl = ttl
        self._clock = clock
        self._types: dict[str, _EntityType] = {}
        self._entries: dict[str, CacheEntry] = {}

    @classmethod
    def for_backend(cls, backend: BackendClient, *, ttl: timedelta = ENTITY_TTL, clock: Clock = utc_now) -> EntityCache:
        """Cache wired to the backend's users/gyms/profiles endpoints."""

        cache = cls(ttl=ttl, clock=clock)
        # params are forwarded as keyword arguments (bounds, max_distance_km, limit)
        cache.register(USERS, lambda params: backend.get_map_users(**dict(params or {})))
        cache.register(GYMS, lambda params: backend.get_gyms(**dict(params or {})))
        cache.register(PROFILES, backend.get_recommended_profiles, require_coordinates=False)
        return cache

    def register(
        self,
        entity_type: str,
        fetcher: Fetcher,
        *,
        ttl: timedelta | None = None,
        require_coordinates: bool = True,
    ) -> None:
        """Register an entity type.

        Args:
            entity_type: Name, e.g. "gyms".
            fetcher: Async callable returning raw entities; receives the fetch params.
            ttl: Freshness window for this type (defaults to the cache-wide TTL).
            require_coordinates: Drop entities lacking ``location.coordinates``.
        """

        self._types[entity_type] = _EntityType(
            fetcher=fetcher,
            ttl=self._ttl if ttl is None else ttl,
            require_coordinates=require_coordinates,
        )
        self._entries.setdefault(entity_type, CacheEntry())

    @property
    def entity_types(self) -> list[str]:
        return list(self._types)

    def _entry(self, entity_type: str) -> CacheEntry:
        if entity_type not in self._types:
            raise KeyError(f"unknown entity type: {entity_type!r}")
        return self._entries[entity_type]

    def is_fresh(self, entity_type: str) -> bool:
        entry = self._entry(entity_type)
        if entry.last_fetched_at is None:
            return False
        return self._clock() - entry.last_fetched_at < self._types[entity_type].ttl

    async def fetch(self, entity_type: str, *, force: bool = False, params: Params = None) -> list[dict[str, Any]]:
        """Return cached items when fresh, otherwise fetch (sharing any in-flight request).

        A failed fetch keeps existing items and returns them (empty if nothing was cached).
        """

        entry = self._entry(entity_type)
        key = _params_key(params)
        if not force and entry.items and entry.params_key == key and self.is_fresh(entity_type):
            logger.debug("Using cached %s (%d items)", entity_type, len(entry.items))
            return list(entry.items)

        if entry.pending is None:
            entry.loading = True
            entry.pending = asyncio.ensure_future(self._load(entity_type, entry, key, params))
        else:
            logger.debug("%s already loading; joining in-flight fetch", entity_type)
        return list(await asyncio.shield(entry.pending))

    async def _load(self, entity_type: str, entry: CacheEntry, key: str | None, params: Params) -> list[dict[str, Any]]:
        spec = self._types[entity_type]
        try:
            raw_items = await spec.fetcher(params)
        except (BackendError, OSError, ValueError) as exc:
            logger.warning("Fetching %s failed: %s", entity_type, exc)
            return list(entry.items)
        finally:
            entry.loading = False
            entry.pending = None

        if spec.require_coordinates:
            items = [p for p in (project_entity(r) for r in raw_items) if p is not None]
        else:
            items = [_with_id(r) for r in raw_items]
        entry.items = items
        entry.params_key = key
        entry.last_fetched_at = self._clock()
        logger.debug("Fetched %d %s (%d dropped)", len(items), entity_type, len(raw_items) - len(items))
        return list(items)

    def invalidate(self, entity_type: str) -> None:
        """Force the next fetch of this type past the freshness check."""

        self._entry(entity_type).last_fetched_at = None

    def clear(self) -> None:
        for entity_type in self._types:
            self.invalidate(entity_type)

    def snapshot(self, entity_type: str) -> CacheSnapshot:
        entry = self._entry(entity_type)
        return CacheSnapshot(
            entity_type=entity_type,
            items=tuple(entry.items),
            last_fetched_at=entry.last_fetched_at,
            loading=entry.loading,
        )
