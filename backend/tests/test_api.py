from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
from fastapi.testclient import TestClient

from loop_router.geocoding import GeocodeResult
from loop_router.geometry import offset_point
from loop_router.main import app, geocoder_client, ip_locator_client, overpass_client, routing_client
from loop_router.routing_valhalla import RoutedTrip, RoutingLocation, RoutingServiceError
from loop_router.settings import settings

START = {"lat": 37.77, "lon": -122.42}


def _grid(center_lat: float, center_lon: float, n: int = 15, spacing_m: float = 150.0) -> list[list[tuple[float, float]]]:
    half = (n - 1) / 2.0
    pts = [
        [offset_point(center_lat, center_lon, east_m=(c - half) * spacing_m, north_m=(r - half) * spacing_m) for c in range(n)]
        for r in range(n)
    ]
    return [list(row) for row in pts] + [[pts[r][c] for r in range(n)] for c in range(n)]


class FakeOverpass:
    def __init__(self, *, empty: bool = False) -> None:
        self.empty = empty

    async def fetch_walkable_ways(self, *, lat: float, lon: float, radius_m: float):
        return [] if self.empty else _grid(lat, lon)

    async def fetch_arterial_ways(self, *, lat: float, lon: float, radius_m: float):
        return []


class FakeRouting:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.count = 0

    async def fetch_trip(self, locations: list[RoutingLocation]) -> RoutedTrip:
        await asyncio.sleep(0)
        if self.fail:
            raise RoutingServiceError("down")
        self.count += 1
        miles = 2.7 + 0.1 * (self.count % 7)
        return RoutedTrip(path=[(loc.lon, loc.lat) for loc in locations], distance_miles=miles, duration_minutes=miles * 18)

    async def fetch_trips(self, locations: list[RoutingLocation], *, alternates: int = 0) -> list[RoutedTrip]:
        if self.fail:
            raise RoutingServiceError("down")
        path = [(loc.lon, loc.lat) for loc in locations]
        return [RoutedTrip(path=path, distance_miles=0.8 + 0.05 * i, duration_minutes=16.0) for i in range(alternates + 1)]


class FakeGeocoder:
    async def geocode(self, query: str) -> list[GeocodeResult]:
        return [GeocodeResult(id=42, name=f"{query}, Somewhere", coordinates=(-122.42, 37.77))]


class FakeLocator:
    async def locate(self) -> tuple[float, float]:
        return (-0.12, 51.5)


@pytest.fixture
def fakes() -> dict[str, Any]:
    return {"routing": FakeRouting(), "overpass": FakeOverpass()}


@pytest.fixture
def client(fakes: dict[str, Any], monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(settings, "loop_search_passes", 3)
    monkeypatch.setattr(settings, "loop_max_explored_nodes", 2000)

    app.dependency_overrides[routing_client] = lambda: fakes["routing"]
    app.dependency_overrides[overpass_client] = lambda: fakes["overpass"]
    app.dependency_overrides[geocoder_client] = lambda: FakeGeocoder()
    app.dependency_overrides[ip_locator_client] = lambda: FakeLocator()
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_loop_routes_returns_ranked_routes(client: TestClient) -> None:
    resp = client.post("/routes/loop", json={"start": START, "target_miles": 3.0})
    assert resp.status_code == 200

    data = resp.json()
    assert data["reason_code"] is None
    assert 1 <= len(data["routes"]) <= settings.loop_max_routes
    assert "request_id" in data["diagnostics"]
    for route in data["routes"]:
        assert route["geometry"]["type"] == "LineString"
        assert len(route["geometry"]["coordinates"]) >= 2
        assert 2.25 <= route["distance_miles"] <= 4.05
    gaps = [abs(r["distance_miles"] - 3.0) for r in data["routes"]]
    assert gaps[0] == min(gaps)


def test_loop_routes_without_result_reports_no_route_found(client: TestClient, fakes: dict[str, Any]) -> None:
    fakes["routing"] = FakeRouting(fail=True)
    fakes["overpass"] = FakeOverpass(empty=True)

    resp = client.post("/routes/loop", json={"start": START, "target_miles": 3.0})

    assert resp.status_code == 200
    assert resp.json()["routes"] == []
    assert resp.json()["reason_code"] == "no_route_found"


@pytest.mark.parametrize(
    "payload",
    [
        {"start": START, "target_miles": 0},
        {"start": START, "target_miles": -2},
        {"start": {"lat": 123.0, "lon": 0.0}, "target_miles": 3},
        {"target_miles": 3},
    ],
)
def test_loop_routes_rejects_invalid_payloads(client: TestClient, payload: dict[str, Any]) -> None:
    assert client.post("/routes/loop", json=payload).status_code == 422


def test_loop_stream_emits_meta_routes_and_done(client: TestClient) -> None:
    resp = client.post("/routes/loop/stream", json={"start": START, "target_miles": 3.0})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/x-ndjson")

    events = [json.loads(line) for line in resp.text.splitlines() if line.strip()]
    assert events[0]["type"] == "meta"
    assert events[-1]["type"] == "done"

    route_events = [e for e in events if e["type"] == "route"]
    done = events[-1]
    assert len(route_events) == done["accepted"] >= 1
    assert [e["done"] for e in route_events] == list(range(1, len(route_events) + 1))
    assert done["total"] == len(done["routes"]) >= 1
    assert done["reason_code"] is None


def test_loop_stream_with_polygon_reports_flag(client: TestClient) -> None:
    lon, lat = START["lon"], START["lat"]
    polygon = [[lon - 0.03, lat - 0.03], [lon + 0.03, lat - 0.03], [lon + 0.03, lat + 0.03], [lon - 0.03, lat + 0.03]]

    resp = client.post("/routes/loop/stream", json={"start": START, "target_miles": 2.0, "polygon": polygon})
    events = [json.loads(line) for line in resp.text.splitlines() if line.strip()]

    assert events[0]["polygon"] is True
    assert events[-1]["type"] == "done"


def test_point_to_point(client: TestClient) -> None:
    resp = client.post(
        "/routes/point-to-point",
        json={"start": START, "end": {"lat": 37.78, "lon": -122.41}},
    )
    data = resp.json()
    assert resp.status_code == 200
    assert [r["source"] for r in data["routes"]] == ["point_to_point"] * 3
    assert data["reason_code"] is None


def test_point_to_point_failure(client: TestClient, fakes: dict[str, Any]) -> None:
    fakes["routing"] = FakeRouting(fail=True)
    resp = client.post("/routes/point-to-point", json={"start": START, "end": {"lat": 37.78, "lon": -122.41}})
    assert resp.json() == {"routes": [], "reason_code": "no_route_found"}


def test_geocode(client: TestClient) -> None:
    resp = client.get("/geocode", params={"q": "Ferry Building"})
    assert resp.status_code == 200
    assert resp.json()["results"] == [
        {"id": 42, "name": "Ferry Building, Somewhere", "coordinates": [-122.42, 37.77]}
    ]
    assert client.get("/geocode").status_code == 422


def test_location(client: TestClient) -> None:
    assert client.get("/location").json() == {"lon": -0.12, "lat": 51.5}
