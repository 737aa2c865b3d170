from __future__ import annotations

from typing import Any, Final

import httpx

from .errors import MALFORMED_RESPONSE, NETWORK_FAILURE, CollaboratorError
from .geometry import LatLon

WALKABLE_HIGHWAYS: Final[tuple[str, ...]] = (
    "footway",
    "path",
    "pedestrian",
    "living_street",
    "residential",
    "unclassified",
    "tertiary",
    "secondary",
    "service",
    "track",
    "cycleway",
    "steps",
)

ARTERIAL_HIGHWAYS: Final[tuple[str, ...]] = (
    "motorway",
    "motorway_link",
    "trunk",
    "trunk_link",
    "primary",
    "primary_link",
)


class OverpassError(CollaboratorError):
    pass


def build_query(*, lat: float, lon: float, radius_m: float, highways: tuple[str, ...], timeout_s: int) -> str:
    pattern = "|".join(highways)
    return (
        f"[out:json][timeout:{int(timeout_s)}];\n"
        f'way(around:{int(round(radius_m))},{lat:.6f},{lon:.6f})["highway"~"^({pattern})$"];\n'
        "out geom;"
    )


def parse_ways(data: Any) -> list[list[LatLon]]:
    """Extract (lat, lon) point chains from an Overpass JSON payload.

    Raises OverpassError(malformed_response) when the payload or any element
    in it has the wrong shape.
    """
    if not isinstance(data, dict) or not isinstance(data.get("elements"), list):
        raise OverpassError("Overpass payload missing elements", reason_code=MALFORMED_RESPONSE)

    elements = data["elements"]
    try:
        nodes_by_id: dict[int, LatLon] = {}
        for el in elements:
            if isinstance(el, dict) and el.get("type") == "node" and "lat" in el and "lon" in el:
                nodes_by_id[el["id"]] = (float(el["lat"]), float(el["lon"]))

        ways: list[list[LatLon]] = []
        for el in elements:
            if not isinstance(el, dict) or el.get("type") != "way":
                continue
            # Prefer inline geometry (out geom); fall back to node references.
            geom = el.get("geometry") or []
            coords: list[LatLon] = []
            if geom:
                for g in geom:
                    if isinstance(g, dict) and g.get("lat") is not None and g.get("lon") is not None:
                        coords.append((float(g["lat"]), float(g["lon"])))
            else:
                refs = el.get("nodes") or []
                if not isinstance(refs, list):
                    raise TypeError(f"way nodes must be a list, got {type(refs).__name__}")
                coords = [nodes_by_id[i] for i in refs if i in nodes_by_id]
            if len(coords) >= 2:
                ways.append(coords)
    except (KeyError, TypeError, ValueError) as e:
        raise OverpassError(f"malformed Overpass element: {e}", reason_code=MALFORMED_RESPONSE) from e
    return ways


class OverpassClient:
    def __init__(
        self,
        *,
        url: str,
        query_timeout_s: int = 25,
        timeout_s: float = 30.0,
        connect_timeout_s: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.query_timeout_s = query_timeout_s
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(max(timeout_s, query_timeout_s + 5.0), connect=connect_timeout_s),
            headers={"accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_ways(
        self,
        *,
        lat: float,
        lon: float,
        radius_m: float,
        highways: tuple[str, ...] = WALKABLE_HIGHWAYS,
    ) -> list[list[LatLon]]:
        query = build_query(
            lat=lat,
            lon=lon,
            radius_m=radius_m,
            highways=highways,
            timeout_s=self.query_timeout_s,
        )
        try:
            resp = await self._client.post(self.url, data={"data": query})
        except (httpx.TimeoutException, httpx.NetworkError, httpx.TransportError) as e:
            msg = str(e).strip() or repr(e)
            raise OverpassError(f"{type(e).__name__}: {msg}", reason_code=NETWORK_FAILURE) from e

        if resp.status_code >= 400:
            raise OverpassError(f"Overpass HTTP {resp.status_code}", reason_code=NETWORK_FAILURE)
        try:
            data = resp.json()
        except ValueError as e:
            raise OverpassError("Overpass returned invalid JSON", reason_code=MALFORMED_RESPONSE) from e
        return parse_ways(data)

    async def fetch_walkable_ways(self, *, lat: float, lon: float, radius_m: float) -> list[list[LatLon]]:
        return await self.fetch_ways(lat=lat, lon=lon, radius_m=radius_m, highways=WALKABLE_HIGHWAYS)

    async def fetch_arterial_ways(self, *, lat: float, lon: float, radius_m: float) -> list[list[LatLon]]:
        return await self.fetch_ways(lat=lat, lon=lon, radius_m=radius_m, highways=ARTERIAL_HIGHWAYS)
