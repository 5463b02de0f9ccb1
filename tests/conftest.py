from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from gym_proximity.location_store import LocationStore
from gym_proximity.storage import MemoryStorage


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def store(storage: MemoryStorage, clock: FakeClock) -> LocationStore:
    return LocationStore(storage, clock=clock)


@pytest.fixture
def montreal() -> dict[str, object]:
    return {"lat": 45.5017, "lng": -73.5673, "city": "Montreal", "address": "Montreal, QC", "source": "gps"}
