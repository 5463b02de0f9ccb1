"""JSON-over-HTTP client for the gym-partner backend.

Blocking requests go through urllib; the ``async`` methods run them in a worker thread so
callers on the event loop stay cooperative.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable

from gym_proximity.geo import Bounds
from gym_proximity.models import Location, LocationUpdateAck

logger = logging.getLogger(__name__)

Opener = Callable[..., Any]


class BackendError(Exception):
    """HTTP or transport failure talking to the backend."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True, slots=True)
class BackendConfig:
    """Backend endpoint configuration."""

    base_url: str = "http://localhost:5000/api"
    auth_token: str = ""
    timeout_seconds: float = 20.0
    user_agent: str = "gym-proximity/0.1.0"


def _unwrap_list(data: Any, *keys: str) -> list[dict[str, Any]]:
    """Responses are either a bare list or an object wrapping it under one of ``keys``."""

    if isinstance(data, Mapping):
        for k in keys:
            if isinstance(data.get(k), list):
                data = data[k]
                break
        else:
            return []
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


class BackendClient:
    """Backend API client."""

    def __init__(self, config: BackendConfig, *, opener: Opener | None = None) -> None:
        self._cfg = config
        self._open = opener or urllib.request.urlopen

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        """Send one request and decode the JSON response.

        Raises:
            BackendError: On HTTP errors, transport failures or undecodable bodies.
        """

        url = self._cfg.base_url.rstrip("/") + "/" + path.lstrip("/")
        if params:
            query = {k: str(v) for k, v in params.items() if v is not None}
            url = f"{url}?{urllib.parse.urlencode(query)}"

        headers = {"Accept": "application/json", "User-Agent": self._cfg.user_agent}
        data: bytes | None = None
        if body is not None:
            data = json.dumps(body, ensure_ascii=False).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self._cfg.auth_token:
            headers["Authorization"] = f"Bearer {self._cfg.auth_token}"

        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with self._open(req, timeout=self._cfg.timeout_seconds) as resp:
                text = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            raise BackendError(f"{method} {path} failed: HTTP {exc.code}", status=exc.code) from exc
        except OSError as exc:
            raise BackendError(f"{method} {path} failed: {exc}") from exc

        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise BackendError(f"{method} {path} returned invalid JSON") from exc

    def update_location_blocking(
        self,
        location: Location,
        *,
        user_id: str | None = None,
        phone: str | None = None,
    ) -> LocationUpdateAck:
        payload: dict[str, Any] = {"locationData": location.to_dict()}
        if user_id is not None:
            payload["user"] = {"_id": user_id}
        if phone is not None:
            payload["phone"] = phone
        data = self.request("POST", "/gym-bros/update", body=payload)
        if not isinstance(data, Mapping):
            raise BackendError("POST /gym-bros/update returned an unexpected body")
        return LocationUpdateAck(
            success=bool(data.get("success", True)),
            nearby_gyms=_unwrap_list(data.get("nearbyGyms") or []),
            raw=dict(data),
        )

    def get_map_users_blocking(self, bounds: Bounds | None = None, max_distance_km: float = 25.0) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"maxDistance": max_distance_km}
        if bounds is not None:
            params.update(bounds.as_params())
        data = self.request("GET", "/gym-bros/map/users", params=params)
        return _unwrap_list(data, "users", "recommendations")

    def get_gyms_blocking(self, bounds: Bounds | None = None, limit: int = 1000) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit, "offset": 0}
        if bounds is not None:
            params["bbox"] = bounds.as_bbox()
        data = self.request("GET", "/gym-bros/gyms", params=params)
        return _unwrap_list(data, "gyms")

    def get_recommended_profiles_blocking(self, filters: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        data = self.request("GET", "/gym-bros/profiles", params=dict(filters or {}))
        return _unwrap_list(data, "recommendations", "profiles")

    async def update_location(
        self,
        location: Location,
        *,
        user_id: str | None = None,
        phone: str | None = None,
    ) -> LocationUpdateAck:
        return await asyncio.to_thread(self.update_location_blocking, location, user_id=user_id, phone=phone)

    async def get_map_users(self, bounds: Bounds | None = None, max_distance_km: float = 25.0) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.get_map_users_blocking, bounds, max_distance_km)

    async def get_gyms(self, bounds: Bounds | None = None, limit: int = 1000) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.get_gyms_blocking, bounds, limit)

    async def get_recommended_profiles(self, filters: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.get_recommended_profiles_blocking, filters)
