from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

import scripts.find_loop_routes as script
from loop_router.geocoding import GeocodeResult
from loop_router.routing_valhalla import RoutedTrip, RoutingLocation


class EmptyOverpass:
    async def fetch_walkable_ways(self, **_: Any) -> list:
        return []

    async def fetch_arterial_ways(self, **_: Any) -> list:
        return []


class EchoRouter:
    async def fetch_trip(self, locations: list[RoutingLocation]) -> RoutedTrip:
        return RoutedTrip(path=[(loc.lon, loc.lat) for loc in locations], distance_miles=3.1, duration_minutes=55.0)

    async def fetch_trips(self, locations: list[RoutingLocation], *, alternates: int = 0) -> list[RoutedTrip]:
        return [await self.fetch_trip(locations)]


class FakeGeocoder:
    def __init__(self, results: list[GeocodeResult]) -> None:
        self.results = results

    async def geocode(self, query: str) -> list[GeocodeResult]:
        return self.results


class FakeLocator:
    async def locate(self) -> tuple[float, float]:
        return (-0.12, 51.5)


def _run(argv: list[str], *, geocode: list[GeocodeResult] | None = None) -> dict[str, Any]:
    args = script.build_parser().parse_args(argv)
    return asyncio.run(
        script.run_find_loops(
            args,
            routing=EchoRouter(),
            overpass=EmptyOverpass(),
            geocoder=FakeGeocoder(geocode or []),
            locator=FakeLocator(),
        )
    )


def test_parser_defaults() -> None:
    args = script.build_parser().parse_args([])
    assert args.miles == 3.0
    assert args.lat is None and args.lon is None
    assert args.polygon_json is None


def test_run_with_coordinates() -> None:
    result = _run(["--lat", "37.77", "--lon", "-122.42", "--miles", "3"])

    assert result["start"] == {"lon": -122.42, "lat": 37.77, "source": "coordinates"}
    assert result["route_count"] == len(result["routes"]) >= 1
    assert result["reason_code"] is None
    assert result["diagnostics"]["fallback_used"] is True
    assert all(len(r["coordinates"]) >= 2 for r in result["routes"])


def test_run_with_address_uses_first_geocode_hit() -> None:
    hit = GeocodeResult(id=1, name="Ferry Building, San Francisco", coordinates=(-122.3937, 37.7955))
    result = _run(["--address", "ferry building"], geocode=[hit])
    assert result["start"]["source"] == "geocode:Ferry Building, San Francisco"
    assert (result["start"]["lon"], result["start"]["lat"]) == hit.coordinates


def test_run_without_location_falls_back_to_ip() -> None:
    result = _run(["--address", "nowhere at all"])
    assert result["start"] == {"lon": -0.12, "lat": 51.5, "source": "ip_location"}


def test_load_polygon_accepts_ring_and_geojson(tmp_path: Path) -> None:
    ring = [[-122.43, 37.76], [-122.41, 37.76], [-122.41, 37.78]]
    ring_file = tmp_path / "ring.json"
    ring_file.write_text(json.dumps(ring), encoding="utf-8")
    geo_file = tmp_path / "poly.geojson"
    geo_file.write_text(json.dumps({"type": "Polygon", "coordinates": [ring]}), encoding="utf-8")

    expected = [(-122.43, 37.76), (-122.41, 37.76), (-122.41, 37.78)]
    assert script.load_polygon(str(ring_file)) == expected
    assert script.load_polygon(str(geo_file)) == expected
    assert script.load_polygon(None) is None


def test_main_exit_codes_and_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    found = {"routes": [{"distance_miles": 3.0, "coordinates": [[0.0, 0.0], [0.0, 0.01]]}], "route_count": 1}
    empty = {"routes": [], "route_count": 0, "reason_code": "no_route_found"}

    async def fake_found(args):
        return found

    async def fake_empty(args):
        return empty

    out_file = tmp_path / "routes.json"
    monkeypatch.setattr(script, "run_find_loops", fake_found)
    assert script.main(["--lat", "1", "--lon", "2", "--out", str(out_file)]) == 0
    assert json.loads(out_file.read_text(encoding="utf-8")) == found
    printed = json.loads(capsys.readouterr().out)
    assert "coordinates" not in printed["routes"][0]

    monkeypatch.setattr(script, "run_find_loops", fake_empty)
    assert script.main(["--lat", "1", "--lon", "2"]) == 1


def test_main_requires_lat_and_lon_together() -> None:
    with pytest.raises(SystemExit):
        script.main(["--lat", "1"])
