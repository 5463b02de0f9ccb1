from __future__ import annotations

import asyncio
import math
from typing import Any

import pytest

from gym_proximity.backend import BackendError
from gym_proximity.config import SyncConfig
from gym_proximity.models import Location, LocationUpdateAck, SyncStatus
from gym_proximity.sync import ProximitySyncController


class FakeBackend:
    def __init__(self, *, fail: Exception | None = None, success: bool = True) -> None:
        self.calls: list[tuple[Location, str | None, str | None]] = []
        self.fail = fail
        self.success = success
        self.gate: asyncio.Event | None = None

    async def update_location(
        self,
        location: Location,
        *,
        user_id: str | None = None,
        phone: str | None = None,
    ) -> LocationUpdateAck:
        self.calls.append((location, user_id, phone))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        gyms: list[dict[str, Any]] = [{"_id": "g1", "name": "Iron Temple"}]
        return LocationUpdateAck(success=self.success, nearby_gyms=gyms, raw={"success": self.success})


def _north_of(lat: float, meters: float) -> float:
    return lat + math.degrees(meters / 6_371_000.0)


def _at(lat: float, lng: float, city: str = "Montreal") -> dict[str, Any]:
    return {"lat": lat, "lng": lng, "city": city, "source": "gps"}


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def controller(store, backend, clock) -> ProximitySyncController:
    return ProximitySyncController(store, backend, user_id="u1", phone="555", clock=clock)


def test_first_evaluation_pushes(controller, store, backend, clock, montreal) -> None:
    store.store(montreal)
    result = asyncio.run(controller.evaluate())
    assert result.status is SyncStatus.PUSHED
    assert result.distance_m is None
    assert len(backend.calls) == 1
    pushed, user_id, phone = backend.calls[0]
    assert pushed.city == "Montreal" and pushed.country == "CA"
    assert (user_id, phone) == ("u1", "555")
    assert controller.state.last_sync_time == clock.now
    assert controller.state.last_known_location == pushed
    assert controller.state.last_nearby_gyms == [{"_id": "g1", "name": "Iron Temple"}]


def test_no_location(controller, backend) -> None:
    assert asyncio.run(controller.evaluate()).status is SyncStatus.NO_LOCATION
    assert backend.calls == []


def test_incomplete_location_is_never_pushed(controller, store, backend) -> None:
    store.store({"lat": 45.5, "lng": -73.5})
    assert asyncio.run(controller.evaluate()).status is SyncStatus.INCOMPLETE
    store.store({"city": "Montreal"})
    assert asyncio.run(controller.force_sync()).status is SyncStatus.INCOMPLETE
    assert backend.calls == []


def test_cooldown_blocks_until_elapsed(controller, store, backend, clock) -> None:
    store.store(_at(45.5, -73.5))
    asyncio.run(controller.evaluate())

    clock.advance(minutes=29, seconds=59)
    store.store(_at(_north_of(45.5, 5000), -73.5))
    assert asyncio.run(controller.evaluate()).status is SyncStatus.COOLDOWN
    assert controller.in_cooldown()

    clock.advance(seconds=1)
    assert asyncio.run(controller.evaluate()).status is SyncStatus.PUSHED
    assert len(backend.calls) == 2


@pytest.mark.parametrize(("meters", "pushed"), [(499.0, False), (501.0, True)])
def test_movement_threshold(controller, store, backend, clock, meters: float, pushed: bool) -> None:
    store.store(_at(45.5, -73.5))
    asyncio.run(controller.evaluate())
    clock.advance(minutes=31)
    store.store(_at(_north_of(45.5, meters), -73.5))

    result = asyncio.run(controller.evaluate())
    assert result.distance_m == pytest.approx(meters, abs=0.01)
    assert result.pushed is pushed
    assert len(backend.calls) == (2 if pushed else 1)
    if not pushed:
        assert result.status is SyncStatus.INSIGNIFICANT


def test_montreal_walk(controller, store, backend, clock) -> None:
    store.store(_at(45.5017, -73.5673))
    asyncio.run(controller.evaluate())
    clock.advance(minutes=40)

    store.store(_at(45.51, -73.57))
    result = asyncio.run(controller.evaluate())
    assert result.pushed
    assert 500 < result.distance_m < 1500
    assert len(backend.calls) == 2

    clock.advance(minutes=40)
    store.store(_at(45.5102, -73.5701))
    result = asyncio.run(controller.evaluate())
    assert result.status is SyncStatus.INSIGNIFICANT
    assert result.distance_m < 50
    assert len(backend.calls) == 2


def test_small_move_from_downtown_is_not_pushed(controller, store, backend, clock) -> None:
    store.store(_at(45.5017, -73.5673))
    asyncio.run(controller.evaluate())
    clock.advance(minutes=40)

    store.store(_at(45.5019, -73.5674))
    result = asyncio.run(controller.evaluate())
    assert result.status is SyncStatus.INSIGNIFICANT
    assert result.distance_m < 50
    assert len(backend.calls) == 1


def test_custom_threshold_and_cooldown(store, backend, clock) -> None:
    cfg = SyncConfig(cooldown_minutes=1, significant_distance_m=50)
    ctl = ProximitySyncController(store, backend, config=cfg, clock=clock)
    store.store(_at(45.5, -73.5))
    asyncio.run(ctl.evaluate())
    clock.advance(minutes=2)
    store.store(_at(_north_of(45.5, 60), -73.5))
    assert asyncio.run(ctl.evaluate()).pushed


def test_failed_push_leaves_state_untouched(store, clock) -> None:
    backend = FakeBackend(fail=BackendError("POST /gym-bros/update failed: HTTP 503", status=503))
    ctl = ProximitySyncController(store, backend, clock=clock)
    store.store(_at(45.5, -73.5))

    result = asyncio.run(ctl.evaluate())
    assert result.status is SyncStatus.FAILED
    assert "503" in result.error
    assert ctl.state.last_sync_time is None
    assert ctl.state.last_known_location is None

    backend.fail = None
    assert asyncio.run(ctl.evaluate()).pushed
    assert len(backend.calls) == 2


def test_rejected_push_is_a_failure(store, clock) -> None:
    backend = FakeBackend(success=False)
    ctl = ProximitySyncController(store, backend, clock=clock)
    store.store(_at(45.5, -73.5))
    result = asyncio.run(ctl.evaluate())
    assert result.status is SyncStatus.FAILED
    assert result.ack is not None
    assert ctl.state.last_sync_time is None


def test_force_sync_respects_cooldown(controller, store, backend, clock) -> None:
    store.store(_at(45.5, -73.5))
    asyncio.run(controller.evaluate())
    clock.advance(minutes=1)
    store.store(_at(_north_of(45.5, 5000), -73.5))

    result = asyncio.run(controller.force_sync())
    assert result.status is SyncStatus.COOLDOWN
    assert not result.pushed
    assert result.error
    assert len(backend.calls) == 1


def test_force_sync_respects_movement_threshold(controller, store, backend, clock) -> None:
    store.store(_at(45.5, -73.5))
    asyncio.run(controller.evaluate())
    clock.advance(minutes=31)
    store.store(_at(_north_of(45.5, 100), -73.5))

    result = asyncio.run(controller.force_sync())
    assert result.status is SyncStatus.INSIGNIFICANT
    assert result.distance_m == pytest.approx(100.0, abs=0.01)
    assert result.error
    assert len(backend.calls) == 1

    store.store(_at(_north_of(45.5, 800), -73.5))
    assert asyncio.run(controller.force_sync()).pushed
    assert len(backend.calls) == 2


def test_concurrent_force_syncs_share_one_push(controller, store, backend) -> None:
    store.store(_at(45.5, -73.5))

    async def scenario():
        backend.gate = asyncio.Event()
        first = asyncio.create_task(controller.force_sync())
        second = asyncio.create_task(controller.force_sync())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        backend.gate.set()
        return await asyncio.gather(first, second)

    results = asyncio.run(scenario())
    assert len(backend.calls) == 1
    assert [r.status for r in results] == [SyncStatus.PUSHED, SyncStatus.PUSHED]


def test_auto_sync_start_stop_and_reset(controller, store, backend) -> None:
    store.store(_at(45.5, -73.5))

    async def scenario() -> tuple[bool, bool]:
        controller.start_auto_sync()
        assert controller.start_auto_sync() is controller.start_auto_sync()
        for _ in range(50):
            if backend.calls:
                break
            await asyncio.sleep(0)
        active = controller.is_active
        await controller.stop_auto_sync()
        return active, controller.is_active

    active, after = asyncio.run(scenario())
    assert active is True
    assert after is False
    assert len(backend.calls) == 1
    assert controller.state.last_sync_time is not None

    asyncio.run(controller.reset())
    assert controller.state.last_sync_time is None
    assert controller.state.last_known_location is None
    assert not controller.in_cooldown()


def test_reset_during_push_keeps_new_session_clean(controller, store, backend) -> None:
    store.store(_at(45.5, -73.5))

    async def scenario():
        backend.gate = asyncio.Event()
        pushing = asyncio.create_task(controller.evaluate())
        for _ in range(10):
            if backend.calls:
                break
            await asyncio.sleep(0)
        await controller.reset()
        backend.gate.set()
        return await pushing

    result = asyncio.run(scenario())
    assert result.status is SyncStatus.PUSHED
    assert len(backend.calls) == 1
    assert controller.state.last_sync_time is None
    assert controller.state.last_known_location is None
    assert controller.state.last_nearby_gyms == []
    assert not controller.in_cooldown()


def test_auto_sync_keeps_polling_after_unexpected_error(store, clock, caplog) -> None:
    backend = FakeBackend(fail=RuntimeError("boom"))
    ctl = ProximitySyncController(store, backend, config=SyncConfig(poll_interval_minutes=0), clock=clock)
    store.store(_at(45.5, -73.5))

    async def scenario() -> bool:
        ctl.start_auto_sync()
        for _ in range(100):
            if len(backend.calls) >= 2:
                break
            await asyncio.sleep(0)
        active = ctl.is_active
        await ctl.stop_auto_sync()
        return active

    assert asyncio.run(scenario()) is True
    assert len(backend.calls) >= 2
    assert "Auto sync tick failed" in caplog.text
