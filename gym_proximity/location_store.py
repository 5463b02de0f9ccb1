"""Durable cache of the device's current location.

Storage layout:
    - ``gymbros.location``: full normalized Location (the single source of truth).
    - ``userLocation``: legacy ``{lat, lng, city, timestamp}`` projection. It is rewritten on
      every ``store`` for external readers, and only read here to migrate devices that have
      nothing under the canonical key yet.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Final

from gym_proximity.models import BEST_LOCATION_MAX_AGE_HOURS, Location
from gym_proximity.normalize import normalize_location, stamp
from gym_proximity.storage import KeyValueStorage, StorageError
from gym_proximity.timeutils import Clock, is_within, utc_now

logger = logging.getLogger(__name__)

CANONICAL_KEY: Final[str] = "gymbros.location"
LEGACY_KEY: Final[str] = "userLocation"

# Failures of any concrete storage are swallowed: the store degrades to "no location".
_STORAGE_ERRORS = (StorageError, OSError, ValueError, TypeError)


class LocationStore:
    """Persist and read back the current Location."""

    def __init__(self, storage: KeyValueStorage, *, clock: Clock = utc_now) -> None:
        self._storage = storage
        self._clock = clock

    def store(self, location: Location | Mapping[str, Any]) -> bool:
        """Normalize (if needed), stamp with now and persist.

        Completeness is not checked here; the previous value is always overwritten.
        Callers that need the invariant check ``location.is_complete`` first.

        Returns:
            True on success, False if the storage write failed.
        """

        loc = location if isinstance(location, Location) else normalize_location(location, clock=self._clock)
        loc = stamp(loc, clock=self._clock)
        try:
            self._storage.set_item(CANONICAL_KEY, loc.to_dict())
            self._storage.set_item(LEGACY_KEY, loc.to_legacy_dict())
        except _STORAGE_ERRORS:
            logger.warning("Failed to store location", exc_info=True)
            return False
        logger.debug("Stored location %s (%s)", loc.city, loc.source.value)
        return True

    def get(self, max_age_hours: float | None = BEST_LOCATION_MAX_AGE_HOURS) -> Location | None:
        """Return the stored location, or None if missing, unreadable or stale.

        Args:
            max_age_hours: Freshness window; None disables the staleness check.
        """

        loc = self._read_canonical()
        if loc is None:
            loc = self._migrate_legacy()
        if loc is None:
            return None
        if max_age_hours is not None and not self.is_fresh(loc, max_age_hours):
            logger.debug("Stored location is older than %sh", max_age_hours)
            return None
        return loc

    def is_fresh(self, location: Location | None, max_age_hours: float = BEST_LOCATION_MAX_AGE_HOURS) -> bool:
        """True iff ``now - location.timestamp < max_age_hours``."""

        if location is None:
            return False
        return is_within(location.timestamp, timedelta(hours=max_age_hours), self._clock())

    def clear(self) -> None:
        try:
            self._storage.remove_item(CANONICAL_KEY)
            self._storage.remove_item(LEGACY_KEY)
        except _STORAGE_ERRORS:
            logger.warning("Failed to clear stored location", exc_info=True)

    def _read(self, key: str) -> Mapping[str, Any] | None:
        try:
            raw = self._storage.get_item(key)
        except _STORAGE_ERRORS:
            logger.warning("Failed to read %s", key, exc_info=True)
            return None
        return raw if isinstance(raw, Mapping) else None

    def _read_canonical(self) -> Location | None:
        raw = self._read(CANONICAL_KEY)
        if raw is None:
            return None
        return normalize_location(raw, clock=self._clock)

    def _migrate_legacy(self) -> Location | None:
        raw = self._read(LEGACY_KEY)
        if raw is None or not raw.get("timestamp"):
            return None
        loc = normalize_location(raw, clock=self._clock)
        try:
            self._storage.set_item(CANONICAL_KEY, loc.to_dict())
        except _STORAGE_ERRORS:
            logger.warning("Failed to migrate legacy location", exc_info=True)
        else:
            logger.info("Migrated legacy stored location to %s", CANONICAL_KEY)
        return loc
