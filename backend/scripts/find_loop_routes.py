from __future__ import annotations

# ruff: noqa: E402
import argparse
import asyncio
import json
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from loop_router.errors import NO_ROUTE_FOUND, LoopRouteError
from loop_router.geocoding import IpLocator, PhotonGeocoder
from loop_router.geometry import LonLat, Polygon
from loop_router.loop_engine import LoopRouting, WayGeometrySource, run_loop_search
from loop_router.overpass import OverpassClient
from loop_router.routing_valhalla import ValhallaClient
from loop_router.settings import settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Find closed walking/running loops around a start point.")
    parser.add_argument("--lat", type=float, default=None)
    parser.add_argument("--lon", type=float, default=None)
    parser.add_argument("--address", default=None, help="Free-text start address (geocoded).")
    parser.add_argument("--miles", type=float, default=3.0)
    parser.add_argument("--polygon-json", default=None, help="JSON file with a [[lon, lat], ...] ring.")
    parser.add_argument("--out", default=None, help="Write the full result as JSON here.")
    return parser


def load_polygon(path: str | None) -> Polygon | None:
    if not path:
        return None
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        # GeoJSON Polygon geometry: first ring only.
        raw = (raw.get("coordinates") or [[]])[0]
    if not isinstance(raw, list):
        raise ValueError("polygon JSON must be a list of [lon, lat] pairs")
    return [(float(pt[0]), float(pt[1])) for pt in raw]


async def resolve_start(
    args: argparse.Namespace,
    *,
    geocoder: PhotonGeocoder,
    locator: IpLocator,
) -> tuple[LonLat, str]:
    if args.lat is not None and args.lon is not None:
        return (float(args.lon), float(args.lat)), "coordinates"
    if args.address:
        results = await geocoder.geocode(args.address)
        if results:
            return results[0].coordinates, f"geocode:{results[0].name}"
    return await locator.locate(), "ip_location"


async def run_find_loops(
    args: argparse.Namespace,
    *,
    routing: LoopRouting | None = None,
    overpass: WayGeometrySource | None = None,
    geocoder: PhotonGeocoder | None = None,
    locator: IpLocator | None = None,
) -> dict[str, Any]:
    owned: list[Any] = []
    if routing is None:
        routing = ValhallaClient(
            base_url=settings.valhalla_base_url,
            costing=settings.valhalla_costing,
            costing_profile=settings.valhalla_costing_profile,
            timeout_s=settings.http_timeout_s,
            connect_timeout_s=settings.http_connect_timeout_s,
        )
        owned.append(routing)
    if overpass is None:
        overpass = OverpassClient(
            url=settings.overpass_url,
            query_timeout_s=settings.overpass_query_timeout_s,
            timeout_s=settings.http_timeout_s,
        )
        owned.append(overpass)
    if geocoder is None:
        geocoder = PhotonGeocoder(url=settings.photon_url)
        owned.append(geocoder)
    if locator is None:
        locator = IpLocator(
            url=settings.ip_location_url,
            default=(settings.default_location_lon, settings.default_location_lat),
        )
        owned.append(locator)

    try:
        start, start_source = await resolve_start(args, geocoder=geocoder, locator=locator)
        outcome = await run_loop_search(
            start,
            float(args.miles),
            load_polygon(args.polygon_json),
            routing=routing,
            overpass=overpass,
        )
    finally:
        for client in owned:
            await client.aclose()

    routes = [
        {
            "distance_miles": round(r.distance_miles, 4),
            "duration_minutes": round(r.duration_minutes, 2),
            "source": r.source,
            "point_count": len(r.path),
            "coordinates": [list(pt) for pt in r.path],
        }
        for r in outcome.routes
    ]
    return {
        "timestamp": datetime.now(UTC).isoformat(),
        "start": {"lon": start[0], "lat": start[1], "source": start_source},
        "target_miles": float(args.miles),
        "route_count": len(routes),
        "reason_code": None if routes else NO_ROUTE_FOUND,
        "routes": routes,
        "diagnostics": outcome.diagnostics,
    }


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    if (args.lat is None) != (args.lon is None):
        build_parser().error("--lat and --lon must be given together")

    try:
        result = asyncio.run(run_find_loops(args))
    except LoopRouteError as e:
        print(json.dumps({"reason_code": e.reason_code, "message": e.message}, indent=2))
        return 2

    if args.out:
        out_path = Path(args.out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(result, indent=2), encoding="utf-8")

    summary = {k: v for k, v in result.items() if k != "routes"}
    summary["routes"] = [{k: v for k, v in r.items() if k != "coordinates"} for r in result["routes"]]
    print(json.dumps(summary, indent=2))
    return 0 if result["routes"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
