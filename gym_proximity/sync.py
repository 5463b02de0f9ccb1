"""Proximity sync: decide when the device location is pushed to the backend.

A push happens at most once per cooldown window, and only when the device moved at least
``significant_distance_m`` since the last successful push. A failed push leaves the state
untouched, so the next eligible tick retries.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Protocol

from gym_proximity.backend import BackendError
from gym_proximity.config import SyncConfig
from gym_proximity.geo import haversine_m
from gym_proximity.location_store import LocationStore
from gym_proximity.models import Location, LocationUpdateAck, SyncResult, SyncState, SyncStatus
from gym_proximity.normalize import normalize_location
from gym_proximity.timeutils import Clock, utc_now

logger = logging.getLogger(__name__)


class LocationPusher(Protocol):
    async def update_location(
        self,
        location: Location,
        *,
        user_id: str | None = None,
        phone: str | None = None,
    ) -> LocationUpdateAck: ...


class ProximitySyncController:
    """Per-session location sync (Idle -> Polling -> Checking -> Pushing)."""

    def __init__(
        self,
        store: LocationStore,
        backend: LocationPusher,
        *,
        config: SyncConfig | None = None,
        user_id: str | None = None,
        phone: str | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._backend = backend
        self._config = config or SyncConfig()
        self._user_id = user_id
        self._phone = phone
        self._clock = clock
        self._state = self._new_state()
        self._pending: asyncio.Future[SyncResult] | None = None
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def _new_state(self) -> SyncState:
        return SyncState(
            cooldown=self._config.cooldown,
            significant_distance_m=self._config.significant_distance_m,
        )

    def in_cooldown(self) -> bool:
        last = self._state.last_sync_time
        return last is not None and self._clock() - last < self._state.cooldown

    async def evaluate(self) -> SyncResult:
        """Run one evaluation tick and push if warranted."""

        return await self._evaluate(explain=False)

    async def force_sync(self) -> SyncResult:
        """Evaluate now on user request.

        Same cooldown and movement rules as a tick; skipped outcomes carry an ``error`` message
        for the user.
        """

        return await self._evaluate(explain=True)

    async def _evaluate(self, *, explain: bool) -> SyncResult:
        if self.in_cooldown():
            logger.debug("Sync skipped: cooldown active since %s", self._state.last_sync_time)
            return SyncResult(SyncStatus.COOLDOWN, error="synced recently; try again later" if explain else None)

        current = self._store.get()
        if current is None:
            logger.debug("Sync skipped: no stored location")
            return SyncResult(SyncStatus.NO_LOCATION, error="no stored location" if explain else None)
        if not current.is_complete:
            logger.debug("Sync skipped: stored location is incomplete")
            return SyncResult(SyncStatus.INCOMPLETE, error="stored location is incomplete" if explain else None)

        distance_m: float | None = None
        last = self._state.last_known_location
        if last is not None and last.is_complete:
            # both complete, so coordinates are present
            distance_m = haversine_m(last.lat, last.lng, current.lat, current.lng)  # type: ignore[arg-type]
            if distance_m < self._state.significant_distance_m:
                logger.debug("Sync skipped: moved %.1fm only", distance_m)
                error = "location has not changed significantly" if explain else None
                return SyncResult(SyncStatus.INSIGNIFICANT, distance_m=distance_m, error=error)

        return await self._push_shared(current, distance_m)

    async def _push_shared(self, location: Location, distance_m: float | None) -> SyncResult:
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._push(location, distance_m))
            self._pending.add_done_callback(self._clear_pending)
        else:
            logger.debug("Sync push already in flight; joining it")
        return await asyncio.shield(self._pending)

    def _clear_pending(self, fut: asyncio.Future[SyncResult]) -> None:
        if self._pending is fut:
            self._pending = None

    async def _push(self, location: Location, distance_m: float | None) -> SyncResult:
        payload = normalize_location(location, clock=self._clock)
        state = self._state
        try:
            ack = await self._backend.update_location(payload, user_id=self._user_id, phone=self._phone)
        except (BackendError, OSError) as exc:
            logger.warning("Location push failed: %s", exc)
            return SyncResult(SyncStatus.FAILED, distance_m=distance_m, error=str(exc))

        if not ack.success:
            logger.warning("Backend rejected location push: %s", ack.raw.get("message", ack.raw))
            return SyncResult(SyncStatus.FAILED, distance_m=distance_m, ack=ack, error="rejected by backend")

        if self._state is not state:
            logger.info("Session reset during push; discarding result for %s", payload.city)
            return SyncResult(SyncStatus.PUSHED, distance_m=distance_m, ack=ack)
        state.last_sync_time = self._clock()
        state.last_known_location = payload
        state.last_nearby_gyms = list(ack.nearby_gyms)
        logger.info("Pushed location %s (%s)", payload.city, payload.source.value)
        return SyncResult(SyncStatus.PUSHED, distance_m=distance_m, ack=ack)

    def start_auto_sync(self) -> asyncio.Task[None]:
        """Enter Polling: evaluate immediately, then every poll interval."""

        if self._poll_task is not None and not self._poll_task.done():
            return self._poll_task
        logger.info("Starting auto location sync")
        self._poll_task = asyncio.get_running_loop().create_task(self._poll())
        return self._poll_task

    async def stop_auto_sync(self) -> None:
        """Return to Idle."""

        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Stopped auto location sync")

    async def reset(self) -> None:
        """Logout: stop polling and forget sync history."""

        await self.stop_auto_sync()
        self._pending = None
        self._state = self._new_state()

    async def _poll(self) -> None:
        interval = self._config.poll_interval.total_seconds()
        while True:
            try:
                result = await self.evaluate()
            except Exception:
                logger.exception("Auto sync tick failed; retrying next interval")
            else:
                logger.debug("Auto sync tick: %s", result.status.value)
            await asyncio.sleep(interval)
