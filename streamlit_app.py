from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import replace
from datetime import timedelta
from typing import Any

import streamlit as st

from gym_proximity.backend import BackendClient, BackendConfig
from gym_proximity.config import Settings
from gym_proximity.entity_cache import GYMS, USERS, EntityCache
from gym_proximity.filters import FilterCriteria, apply_filters, with_distance
from gym_proximity.geo import bounds_around
from gym_proximity.location_store import LocationStore
from gym_proximity.storage import JsonFileStorage
from gym_proximity.timeutils import age, format_age, utc_now


def map_rows(items: Iterable[Mapping[str, Any]]) -> list[dict[str, object]]:
    """Rows for ``st.map``/``st.dataframe``; items without coordinates are skipped."""

    rows: list[dict[str, object]] = []
    for item in items:
        lat = item.get("lat")
        lng = item.get("lng")
        if lat is None or lng is None:
            continue
        rows.append(
            {
                "lat": float(lat),
                "lon": float(lng),
                "name": str(item.get("name") or item.get("id") or ""),
                "distance_km": item.get("distanceKm"),
            }
        )
    return rows


def session_entity_cache(
    session: MutableMapping[str, Any], base_url: str, auth_token: str, ttl_seconds: float
) -> EntityCache:
    """Entity cache held in this browser session's state.

    Each rerun drives it from its own ``asyncio.run`` loop, so it must never be shared across
    sessions. A changed backend or TTL replaces it.
    """

    key = (base_url, auth_token, ttl_seconds)
    held = session.get("entity_cache")
    if held is None or held[0] != key:
        backend = BackendClient(BackendConfig(base_url=base_url, auth_token=auth_token))
        held = (key, EntityCache.for_backend(backend, ttl=timedelta(seconds=ttl_seconds)))
        session["entity_cache"] = held
    return held[1]


def main() -> None:
    st.set_page_config(page_title="Gym proximity", layout="wide")
    st.title("Nearby gyms and gym partners")

    settings = Settings.from_env()
    with st.sidebar:
        st.subheader("Data")
        storage_path = st.text_input("Storage path", value=settings.storage_path)
        backend_url = st.text_input("Backend URL", value=settings.backend.base_url)

        st.subheader("Filters")
        kind = st.radio("Entity type", options=[GYMS, USERS], horizontal=True)
        radius_km = st.slider("Radius (km)", min_value=1.0, max_value=100.0, value=25.0, step=1.0)
        query = st.text_input("Search", value="")
        refresh = st.button("Refresh now", use_container_width=True)

    settings = replace(settings, backend=replace(settings.backend, base_url=backend_url))
    store = LocationStore(JsonFileStorage(storage_path))
    loc = store.get(max_age_hours=None)
    if loc is None or not loc.has_coordinates:
        st.error("No stored location with coordinates. Run `python -m gym_proximity locate` first.")
        return

    st.subheader("Current location")
    elapsed = age(loc.timestamp, utc_now())
    c1, c2, c3 = st.columns(3)
    c1.metric("City", loc.city)
    c2.metric("Source", f"{loc.source.value} ({loc.accuracy.value})")
    c3.metric("Age", format_age(elapsed) if elapsed is not None else "?")
    if not store.is_fresh(loc, settings.acquisition.best_max_age_hours):
        st.warning("Stored location is older than 7 days.")

    cache = session_entity_cache(
        st.session_state, settings.backend.base_url, settings.backend.auth_token, settings.cache.ttl_seconds
    )
    bounds = bounds_around(loc.lat, loc.lng, radius_km)  # type: ignore[arg-type]
    params = {"bounds": bounds, "limit": 1000} if kind == GYMS else {"bounds": bounds, "max_distance_km": radius_km}
    with st.spinner(f"Loading {kind} ..."):
        items = asyncio.run(cache.fetch(kind, force=refresh, params=params))

    criteria = FilterCriteria(max_distance_km=radius_km, query=query, search_fields=("name", "city", "address"))
    rows = map_rows(with_distance(apply_filters(items, loc, criteria), loc))

    snap = cache.snapshot(kind)
    st.subheader(f"{len(rows)} {kind} within {radius_km:g} km")
    if snap.last_fetched_at is not None:
        st.caption(f"Fetched {format_age(utc_now() - snap.last_fetched_at)} ago; {len(snap.items)} cached in total.")
    if rows:
        st.map(rows, latitude="lat", longitude="lon")
    st.dataframe(rows, use_container_width=True, height=520)


if __name__ == "__main__":
    main()
