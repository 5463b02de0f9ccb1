from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from gym_proximity.backend import BackendError
from gym_proximity.entity_cache import GYMS, PROFILES, USERS, EntityCache, project_entity


def _gym(gym_id: str, lng: float, lat: float, name: str = "Gym") -> dict[str, Any]:
    return {"_id": gym_id, "name": name, "location": {"type": "Point", "coordinates": [lng, lat]}}


class CountingFetcher:
    def __init__(self, items: list[dict[str, Any]]) -> None:
        self.items = items
        self.calls: list[Any] = []
        self.fail: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def __call__(self, params: Any) -> list[dict[str, Any]]:
        self.calls.append(params)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        return list(self.items)


@pytest.fixture
def fetcher() -> CountingFetcher:
    return CountingFetcher([_gym("g1", -73.57, 45.50, "Iron Temple"), _gym("g2", -73.60, 45.52, "Body Shop")])


@pytest.fixture
def cache(fetcher, clock) -> EntityCache:
    c = EntityCache(clock=clock)
    c.register(GYMS, fetcher)
    return c


def test_project_entity() -> None:
    projected = project_entity({"_id": 7, "location": {"coordinates": ["-73.5", "45.5"]}})
    assert projected["lat"] == 45.5
    assert projected["lng"] == -73.5
    assert projected["id"] == "7"
    assert project_entity({"_id": 1}) is None
    assert project_entity({"_id": 1, "location": {"coordinates": [0, 0]}}) is None
    assert project_entity({"_id": 1, "location": {"coordinates": [200, 45]}}) is None


def test_fetch_projects_and_caches(cache, fetcher) -> None:
    items = asyncio.run(cache.fetch(GYMS))
    assert [i["id"] for i in items] == ["g1", "g2"]
    assert items[0]["lat"] == 45.50 and items[0]["lng"] == -73.57
    assert asyncio.run(cache.fetch(GYMS)) == items
    assert len(fetcher.calls) == 1


def test_entities_without_coordinates_are_dropped(cache, fetcher) -> None:
    fetcher.items.append({"_id": "g3", "name": "No location"})
    assert [i["id"] for i in asyncio.run(cache.fetch(GYMS))] == ["g1", "g2"]


def test_ttl_expiry_refetches(cache, fetcher, clock) -> None:
    asyncio.run(cache.fetch(GYMS))
    clock.advance(minutes=4, seconds=59)
    assert cache.is_fresh(GYMS)
    asyncio.run(cache.fetch(GYMS))
    assert len(fetcher.calls) == 1

    clock.advance(seconds=1)
    assert not cache.is_fresh(GYMS)
    asyncio.run(cache.fetch(GYMS))
    assert len(fetcher.calls) == 2


def test_force_and_invalidate_bypass_freshness(cache, fetcher) -> None:
    asyncio.run(cache.fetch(GYMS))
    asyncio.run(cache.fetch(GYMS, force=True))
    assert len(fetcher.calls) == 2
    cache.invalidate(GYMS)
    assert not cache.is_fresh(GYMS)
    asyncio.run(cache.fetch(GYMS))
    assert len(fetcher.calls) == 3


def test_empty_result_is_not_served_from_cache(cache, fetcher) -> None:
    fetcher.items = []
    assert asyncio.run(cache.fetch(GYMS)) == []
    asyncio.run(cache.fetch(GYMS))
    assert len(fetcher.calls) == 2


def test_params_change_bypasses_freshness(cache, fetcher) -> None:
    asyncio.run(cache.fetch(GYMS, params={"limit": 10}))
    asyncio.run(cache.fetch(GYMS, params={"limit": 10}))
    asyncio.run(cache.fetch(GYMS, params={"limit": 20}))
    assert fetcher.calls == [{"limit": 10}, {"limit": 20}]


def test_concurrent_fetches_share_one_request(cache, fetcher) -> None:
    async def scenario():
        fetcher.gate = asyncio.Event()
        first = asyncio.create_task(cache.fetch(GYMS))
        second = asyncio.create_task(cache.fetch(GYMS, force=True))
        await asyncio.sleep(0)
        loading = cache.snapshot(GYMS).loading
        fetcher.gate.set()
        results = await asyncio.gather(first, second)
        return loading, results

    loading, (a, b) = asyncio.run(scenario())
    assert loading is True
    assert len(fetcher.calls) == 1
    assert a == b
    assert cache.snapshot(GYMS).loading is False


def test_failure_keeps_stale_items(cache, fetcher) -> None:
    first = asyncio.run(cache.fetch(GYMS))
    fetcher.fail = BackendError("GET /gym-bros/gyms failed: HTTP 500", status=500)
    again = asyncio.run(cache.fetch(GYMS, force=True))
    assert again == first
    snap = cache.snapshot(GYMS)
    assert snap.loading is False
    assert len(snap.items) == 2


def test_failure_with_nothing_cached_returns_empty(cache, fetcher) -> None:
    fetcher.fail = OSError("unreachable")
    assert asyncio.run(cache.fetch(GYMS)) == []
    assert cache.snapshot(GYMS).last_fetched_at is None


def test_entity_types_are_independent(clock) -> None:
    gyms = CountingFetcher([_gym("g1", -73.5, 45.5)])
    users = CountingFetcher([_gym("u1", -73.6, 45.6)])
    c = EntityCache(clock=clock)
    c.register(GYMS, gyms, ttl=timedelta(minutes=1))
    c.register(USERS, users)
    asyncio.run(c.fetch(GYMS))
    asyncio.run(c.fetch(USERS))
    clock.advance(minutes=2)
    assert not c.is_fresh(GYMS)
    assert c.is_fresh(USERS)
    c.clear()
    assert not c.is_fresh(USERS)
    assert sorted(c.entity_types) == [GYMS, USERS]


def test_profiles_keep_entities_without_coordinates(clock) -> None:
    profiles = CountingFetcher([{"_id": "p1", "name": "Sam"}, _gym("p2", -73.5, 45.5, "Alex")])
    c = EntityCache(clock=clock)
    c.register(PROFILES, profiles, require_coordinates=False)
    items = asyncio.run(c.fetch(PROFILES, params={"goal": "strength"}))
    assert [i["id"] for i in items] == ["p1", "p2"]
    assert "lat" not in items[0]
    assert items[1]["lat"] == 45.5


def test_unknown_entity_type(cache) -> None:
    with pytest.raises(KeyError):
        asyncio.run(cache.fetch("coaches"))


class FakeBackend:
    def __init__(self) -> None:
        self.kwargs: dict[str, Any] = {}

    async def get_map_users(self, **kwargs: Any) -> list[dict[str, Any]]:
        self.kwargs[USERS] = kwargs
        return [_gym("u1", -73.6, 45.6)]

    async def get_gyms(self, **kwargs: Any) -> list[dict[str, Any]]:
        self.kwargs[GYMS] = kwargs
        return [_gym("g1", -73.5, 45.5)]

    async def get_recommended_profiles(self, filters: Any = None) -> list[dict[str, Any]]:
        self.kwargs[PROFILES] = filters
        return [{"_id": "p1"}]


def test_for_backend_wires_endpoints(clock) -> None:
    backend = FakeBackend()
    c = EntityCache.for_backend(backend, clock=clock)  # type: ignore[arg-type]
    assert [i["id"] for i in asyncio.run(c.fetch(GYMS, params={"limit": 5}))] == ["g1"]
    assert [i["id"] for i in asyncio.run(c.fetch(USERS))] == ["u1"]
    assert [i["id"] for i in asyncio.run(c.fetch(PROFILES, params={"goal": "cardio"}))] == ["p1"]
    assert backend.kwargs == {GYMS: {"limit": 5}, USERS: {}, PROFILES: {"goal": "cardio"}}
