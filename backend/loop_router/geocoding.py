from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .geometry import LonLat
from .logging_utils import log_event


@dataclass(frozen=True)
class GeocodeResult:
    id: int | str | None
    name: str
    coordinates: LonLat


def format_photon_name(properties: dict[str, Any]) -> str:
    """Most specific human-readable address that the Photon properties allow."""
    props = properties or {}
    parts: list[str] = []
    if props.get("housenumber"):
        parts.append(str(props["housenumber"]))
    if props.get("street"):
        parts.append(str(props["street"]))
    elif props.get("locality"):
        parts.append(str(props["locality"]))
    elif props.get("district"):
        parts.append(str(props["district"]))

    if props.get("city"):
        parts.append(str(props["city"]))
    elif props.get("county"):
        parts.append(str(props["county"]))
    if props.get("state"):
        parts.append(str(props["state"]))
    if props.get("country"):
        parts.append(str(props["country"]))

    return ", ".join(parts) or str(props.get("name") or "Unknown location")


def parse_photon_features(data: Any) -> list[GeocodeResult]:
    if not isinstance(data, dict) or not isinstance(data.get("features"), list):
        return []
    # Keyed by OSM id: a later duplicate replaces the earlier value but keeps its position.
    by_id: dict[Any, GeocodeResult] = {}
    for feature in data["features"]:
        if not isinstance(feature, dict):
            continue
        props = feature.get("properties") or {}
        geometry = feature.get("geometry") or {}
        if not isinstance(props, dict) or not isinstance(geometry, dict):
            continue
        coords = geometry.get("coordinates")
        if not isinstance(coords, (list, tuple)) or len(coords) < 2:
            continue
        try:
            point = (float(coords[0]), float(coords[1]))
        except (TypeError, ValueError):
            continue
        osm_id = props.get("osm_id")
        if not isinstance(osm_id, (int, str, type(None))):
            continue
        by_id[osm_id] = GeocodeResult(id=osm_id, name=format_photon_name(props), coordinates=point)
    return list(by_id.values())


class PhotonGeocoder:
    def __init__(
        self,
        *,
        url: str,
        limit: int = 3,
        timeout_s: float = 10.0,
        connect_timeout_s: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.limit = limit
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=connect_timeout_s),
            headers={"accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def geocode(self, query: str) -> list[GeocodeResult]:
        text = str(query or "").strip()
        if not text:
            return []
        try:
            resp = await self._client.get(self.url, params={"q": text, "limit": self.limit})
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log_event("geocode_failed", level=logging.WARNING, query=text, error=f"{type(e).__name__}: {e}")
            return []
        return parse_photon_features(data)


class IpLocator:
    """Approximate position of the caller from its public IP."""

    def __init__(
        self,
        *,
        url: str,
        default: LonLat,
        timeout_s: float = 10.0,
        connect_timeout_s: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.default = default
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=connect_timeout_s),
            headers={"accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def locate(self) -> LonLat:
        try:
            resp = await self._client.get(self.url)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log_event("ip_location_failed", level=logging.WARNING, error=f"{type(e).__name__}: {e}")
            return self.default
        if isinstance(data, dict):
            lat = data.get("latitude")
            lon = data.get("longitude")
            if isinstance(lat, (int, float)) and isinstance(lon, (int, float)) and not isinstance(lat, bool):
                return (float(lon), float(lat))
        log_event("ip_location_failed", level=logging.WARNING, error="payload missing coordinates")
        return self.default
