"""Command-line interface for gym_proximity.

Run:
    python -m gym_proximity locate --manual "Montreal, QC"
    python -m gym_proximity nearby --kind gyms --radius-km 10
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace

from gym_proximity.acquire import FixedGpsProvider, GpsFix, LocationAcquirer, LocationUnavailableError
from gym_proximity.backend import BackendClient
from gym_proximity.config import Settings
from gym_proximity.entity_cache import GYMS, USERS, EntityCache
from gym_proximity.filters import FilterCriteria, apply_filters, distance, with_distance
from gym_proximity.geo import bounds_around, is_valid_coordinates, m_to_km
from gym_proximity.geocode import IpGeolocator, NominatimForwardGeocoder, NominatimReverseGeocoder
from gym_proximity.location_store import LocationStore
from gym_proximity.normalize import normalize_location
from gym_proximity.storage import JsonFileStorage
from gym_proximity.sync import ProximitySyncController
from gym_proximity.timeutils import age, format_age, utc_now

logger = logging.getLogger(__name__)


def _settings(args: argparse.Namespace) -> Settings:
    settings: Settings = args.settings
    if args.storage:
        settings = replace(settings, storage_path=args.storage)
    if args.backend_url:
        settings = replace(settings, backend=replace(settings.backend, base_url=args.backend_url))
    return settings


def _print_json(data: object) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def _cmd_normalize(args: argparse.Namespace) -> int:
    text = sys.stdin.read() if args.payload in (None, "-") else args.payload
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        print(f"Invalid JSON: {exc}", file=sys.stderr)
        return 1
    loc = normalize_location(raw)
    _print_json(loc.to_dict() | {"complete": loc.is_complete})
    return 0


def _cmd_locate(args: argparse.Namespace) -> int:
    settings = _settings(args)
    storage = JsonFileStorage(settings.storage_path)
    store = LocationStore(storage)
    gps = None
    if args.gps is not None:
        gps = FixedGpsProvider(GpsFix(args.gps[0], args.gps[1], args.gps_accuracy))
    acquirer = LocationAcquirer(
        store,
        ip_geolocator=IpGeolocator(settings.ip_lookup),
        gps_provider=gps,
        reverse_geocoder=NominatimReverseGeocoder(settings.nominatim, cache=storage),
        forward_geocoder=NominatimForwardGeocoder(settings.nominatim),
        config=settings.acquisition,
    )
    try:
        if args.ip_only:
            loc = asyncio.run(acquirer.locate_by_ip())
            if loc is None:
                print("IP geolocation failed.", file=sys.stderr)
                return 1
            if loc.is_complete:
                store.store(loc)
        else:
            if args.refresh:
                store.clear()
            loc = asyncio.run(acquirer.acquire(manual_text=args.manual))
    except LocationUnavailableError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    finally:
        storage.flush()

    _print_json(loc.to_dict())
    return 0


def _cmd_show(args: argparse.Namespace) -> int:
    settings = _settings(args)
    store = LocationStore(JsonFileStorage(settings.storage_path))
    loc = store.get(max_age_hours=None)
    if loc is None:
        print("No stored location.", file=sys.stderr)
        return 1

    elapsed = age(loc.timestamp, utc_now())
    _print_json(loc.to_dict())
    print(f"age={format_age(elapsed) if elapsed is not None else '?'}, complete={loc.is_complete}")
    print(
        f"fresh(24h)={store.is_fresh(loc, settings.acquisition.smart_max_age_hours)}, "
        f"fresh(168h)={store.is_fresh(loc, settings.acquisition.best_max_age_hours)}"
    )
    return 0


def _cmd_distance(args: argparse.Namespace) -> int:
    if not (is_valid_coordinates(args.lat1, args.lon1) and is_valid_coordinates(args.lat2, args.lon2)):
        print("Coordinates out of range.", file=sys.stderr)
        return 1
    meters = distance(args.lat1, args.lon1, args.lat2, args.lon2)
    print(f"{meters:.1f} m ({m_to_km(meters):.3f} km)")
    return 0


def _cmd_sync(args: argparse.Namespace) -> int:
    settings = _settings(args)
    storage = JsonFileStorage(settings.storage_path)
    controller = ProximitySyncController(
        LocationStore(storage),
        BackendClient(settings.backend),
        config=settings.sync,
        user_id=args.user_id,
        phone=args.phone,
    )

    if args.watch:
        logger.info("Watching location every %.0f min (Ctrl+C to stop)", settings.sync.poll_interval_minutes)

        async def _watch() -> None:
            await controller.start_auto_sync()

        try:
            asyncio.run(_watch())
        except KeyboardInterrupt:
            print("\nStopped.", file=sys.stderr)
        finally:
            storage.flush()
        return 0

    result = asyncio.run(controller.force_sync())
    storage.flush()
    line = f"status={result.status.value}"
    if result.distance_m is not None:
        line += f", moved={result.distance_m:.1f}m"
    if result.error:
        line += f", error={result.error}"
    print(line)
    if result.pushed and result.ack is not None:
        print(f"nearby gyms suggested: {len(result.ack.nearby_gyms)}")
    return 0 if result.pushed else 1


def _cmd_nearby(args: argparse.Namespace) -> int:
    settings = _settings(args)
    loc = LocationStore(JsonFileStorage(settings.storage_path)).get()
    if loc is None or not loc.has_coordinates:
        print("No usable stored location; run `locate` first.", file=sys.stderr)
        return 1

    backend = BackendClient(settings.backend)
    cache = EntityCache.for_backend(backend, ttl=settings.cache.ttl)
    bounds = bounds_around(loc.lat, loc.lng, args.radius_km)  # type: ignore[arg-type]
    if args.kind == GYMS:
        params = {"bounds": bounds, "limit": args.limit}
    else:
        params = {"bounds": bounds, "max_distance_km": args.radius_km}

    items = asyncio.run(cache.fetch(args.kind, params=params))
    criteria = FilterCriteria(
        max_distance_km=args.radius_km,
        query=args.query or "",
        search_fields=tuple(args.search_field or ("name",)),
    )
    rows = with_distance(apply_filters(items, loc, criteria), loc)

    if args.json:
        _print_json(rows)
        return 0

    print(f"{len(rows)} {args.kind} within {args.radius_km:g} km of {loc.city}")
    for row in rows:
        name = row.get("name") or row.get("id") or "?"
        print(f"{row['distanceKm']:>7.1f} km  {name}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""

    p = argparse.ArgumentParser(prog="gym_proximity")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    p.add_argument("--storage", type=str, default=None, help="Storage JSON path (overrides GYM_PROXIMITY_STORAGE_PATH)")
    p.add_argument("--backend-url", type=str, default=None, help="Backend API base URL (overrides GYM_PROXIMITY_BACKEND_URL)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_norm = sub.add_parser("normalize", help="Normalize a raw location JSON payload")
    p_norm.add_argument("payload", nargs="?", default=None, help="JSON text, or '-'/omitted to read stdin")
    p_norm.set_defaults(func=_cmd_normalize)

    p_loc = sub.add_parser("locate", help="Acquire the current location (stored -> IP -> GPS -> manual)")
    p_loc.add_argument("--manual", type=str, default=None, help="Fallback address/city text")
    p_loc.add_argument("--ip-only", action="store_true", help="Only use IP geolocation")
    p_loc.add_argument("--refresh", action="store_true", help="Ignore the stored location")
    p_loc.add_argument("--gps", type=float, nargs=2, metavar=("LAT", "LNG"), default=None, help="Device fix")
    p_loc.add_argument("--gps-accuracy", type=float, default=None, help="Device fix accuracy radius (meters)")
    p_loc.set_defaults(func=_cmd_locate)

    p_show = sub.add_parser("show", help="Show the stored location and its freshness")
    p_show.set_defaults(func=_cmd_show)

    p_dist = sub.add_parser("distance", help="Great-circle distance between two points")
    p_dist.add_argument("lat1", type=float)
    p_dist.add_argument("lon1", type=float)
    p_dist.add_argument("lat2", type=float)
    p_dist.add_argument("lon2", type=float)
    p_dist.set_defaults(func=_cmd_distance)

    p_sync = sub.add_parser("sync", help="Evaluate and push the stored location to the backend")
    p_sync.add_argument("--user-id", type=str, default=None)
    p_sync.add_argument("--phone", type=str, default=None)
    p_sync.add_argument("--watch", action="store_true", help="Keep polling until interrupted")
    p_sync.set_defaults(func=_cmd_sync)

    p_near = sub.add_parser("nearby", help="List gyms or users near the stored location")
    p_near.add_argument("--kind", choices=[GYMS, USERS], default=GYMS)
    p_near.add_argument("--radius-km", type=float, default=25.0)
    p_near.add_argument("--limit", type=int, default=1000, help="Max gyms requested")
    p_near.add_argument("--query", type=str, default=None, help="Text search")
    p_near.add_argument("--search-field", action="append", default=None, help="Field for --query (repeatable)")
    p_near.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    p_near.set_defaults(func=_cmd_nearby)

    return p


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not args.verbose:
        logger.setLevel(logging.INFO)
    try:
        args.settings = Settings.from_env()
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
