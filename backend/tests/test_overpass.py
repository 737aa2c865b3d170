from __future__ import annotations

import asyncio
from urllib.parse import parse_qs

import httpx
import pytest

from loop_router.errors import MALFORMED_RESPONSE, NETWORK_FAILURE
from loop_router.overpass import (
    ARTERIAL_HIGHWAYS,
    WALKABLE_HIGHWAYS,
    OverpassClient,
    OverpassError,
    build_query,
    parse_ways,
)


def _client(handler) -> OverpassClient:
    return OverpassClient(
        url="http://overpass.test/api/interpreter",
        query_timeout_s=10,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def test_build_query_filters_highways_around_point() -> None:
    query = build_query(lat=37.77, lon=-122.42, radius_m=1234.4, highways=("footway", "path"), timeout_s=25)
    assert "[out:json][timeout:25];" in query
    assert "way(around:1234,37.770000,-122.420000)" in query
    assert '["highway"~"^(footway|path)$"]' in query
    assert query.rstrip().endswith("out geom;")


def test_arterial_and_walkable_sets_do_not_overlap() -> None:
    assert not set(ARTERIAL_HIGHWAYS) & set(WALKABLE_HIGHWAYS)
    assert "primary" in ARTERIAL_HIGHWAYS
    assert "footway" in WALKABLE_HIGHWAYS


def test_parse_ways_reads_inline_geometry_and_node_refs() -> None:
    data = {
        "elements": [
            {"type": "node", "id": 1, "lat": 1.0, "lon": 2.0},
            {"type": "node", "id": 2, "lat": 1.5, "lon": 2.5},
            {
                "type": "way",
                "id": 10,
                "geometry": [{"lat": 37.0, "lon": -122.0}, {"lat": 37.1, "lon": -122.1}],
            },
            {"type": "way", "id": 11, "nodes": [1, 2, 99]},
            {"type": "way", "id": 12, "geometry": [{"lat": 37.0, "lon": -122.0}]},
        ]
    }
    ways = parse_ways(data)
    assert ways == [
        [(37.0, -122.0), (37.1, -122.1)],
        [(1.0, 2.0), (1.5, 2.5)],
    ]


def test_parse_ways_requires_elements() -> None:
    with pytest.raises(OverpassError) as exc:
        parse_ways({"remark": "runtime error"})
    assert exc.value.reason_code == MALFORMED_RESPONSE


@pytest.mark.parametrize(
    "elements",
    [
        [{"type": "node", "id": 1, "lat": "n/a", "lon": 1.0}],
        [{"type": "node", "lat": 1.0, "lon": 2.0}],
        [{"type": "way", "nodes": 7}],
        [{"type": "way", "geometry": [{"lat": "north", "lon": 2.0}, {"lat": 1.0, "lon": 2.1}]}],
        [{"type": "way", "geometry": 5}],
    ],
)
def test_parse_ways_rejects_malformed_elements(elements: list) -> None:
    with pytest.raises(OverpassError) as exc:
        parse_ways({"elements": elements})
    assert exc.value.reason_code == MALFORMED_RESPONSE


def test_fetch_walkable_ways_posts_query_form() -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode("utf-8"))
        seen["query"] = form["data"][0]
        return httpx.Response(
            200,
            json={"elements": [{"type": "way", "geometry": [{"lat": 1.0, "lon": 2.0}, {"lat": 1.0, "lon": 2.1}]}]},
        )

    async def run():
        client = _client(handler)
        try:
            return await client.fetch_walkable_ways(lat=1.0, lon=2.0, radius_m=800.0)
        finally:
            await client.aclose()

    ways = asyncio.run(run())
    assert ways == [[(1.0, 2.0), (1.0, 2.1)]]
    assert "around:800," in seen["query"]
    assert "footway" in seen["query"]
    assert "[timeout:10]" in seen["query"]


def test_fetch_arterial_ways_uses_major_road_filter() -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["query"] = parse_qs(request.content.decode("utf-8"))["data"][0]
        return httpx.Response(200, json={"elements": []})

    async def run():
        client = _client(handler)
        try:
            return await client.fetch_arterial_ways(lat=1.0, lon=2.0, radius_m=500.0)
        finally:
            await client.aclose()

    assert asyncio.run(run()) == []
    assert "motorway" in seen["query"]
    assert "footway" not in seen["query"]


@pytest.mark.parametrize(
    ("response", "reason"),
    [
        (httpx.Response(429, text="Too Many Requests"), NETWORK_FAILURE),
        (httpx.Response(200, content=b"not json"), MALFORMED_RESPONSE),
    ],
)
def test_fetch_failures_carry_reason_codes(response: httpx.Response, reason: str) -> None:
    async def run():
        client = _client(lambda request: response)
        try:
            await client.fetch_walkable_ways(lat=1.0, lon=2.0, radius_m=500.0)
        finally:
            await client.aclose()

    with pytest.raises(OverpassError) as exc:
        asyncio.run(run())
    assert exc.value.reason_code == reason
