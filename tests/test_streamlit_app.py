from __future__ import annotations

import pytest

pytest.importorskip("streamlit")

from streamlit_app import map_rows, session_entity_cache  # noqa: E402


def test_map_rows() -> None:
    rows = map_rows(
        [
            {"id": "g1", "name": "Iron Temple", "lat": 45.5, "lng": -73.5, "distanceKm": 0.4},
            {"id": "g2", "lat": "45.6", "lng": -73.6},
            {"id": "g3", "name": "Ghost Gym"},
        ]
    )
    assert rows == [
        {"lat": 45.5, "lon": -73.5, "name": "Iron Temple", "distance_km": 0.4},
        {"lat": 45.6, "lon": -73.6, "name": "g2", "distance_km": None},
    ]


def test_entity_cache_is_kept_per_session() -> None:
    first_session: dict[str, object] = {}
    second_session: dict[str, object] = {}

    cache = session_entity_cache(first_session, "http://api.test/api", "", 300.0)
    assert session_entity_cache(first_session, "http://api.test/api", "", 300.0) is cache
    assert session_entity_cache(second_session, "http://api.test/api", "", 300.0) is not cache
    assert session_entity_cache(first_session, "http://other.test/api", "", 300.0) is not cache
