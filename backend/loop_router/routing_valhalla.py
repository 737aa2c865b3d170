from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Final, Literal

import httpx
import polyline

from .errors import MALFORMED_RESPONSE, NETWORK_FAILURE, CollaboratorError
from .geometry import LonLat

LocationKind = Literal["break", "through"]

SHAPE_PRECISION: Final[int] = 6

# Named pedestrian costing bundles. The weights are opaque tuning passed straight
# through to Valhalla's costing_options.
COSTING_PROFILES: Final[dict[str, dict[str, Any]]] = {
    "runner": {
        "walkway_factor": 0.8,
        "sidewalk_factor": 0.9,
        "alley_factor": 2.0,
        "driveway_factor": 5.0,
        "step_penalty": 30,
        "use_ferry": 0.0,
        "use_living_streets": 0.6,
        "use_tracks": 0.5,
        "service_factor": 1.5,
        "max_hiking_difficulty": 2,
    },
    "walker": {
        "walkway_factor": 0.9,
        "sidewalk_factor": 0.95,
        "alley_factor": 1.5,
        "step_penalty": 5,
        "use_ferry": 0.2,
        "use_living_streets": 0.8,
    },
    "default": {},
}


class RoutingServiceError(CollaboratorError):
    pass


@dataclass(frozen=True)
class RoutingLocation:
    lon: float
    lat: float
    kind: LocationKind = "break"

    def as_payload(self) -> dict[str, Any]:
        return {"lat": self.lat, "lon": self.lon, "type": self.kind}


@dataclass(frozen=True)
class RoutedTrip:
    path: list[LonLat]
    distance_miles: float
    duration_minutes: float


def costing_options(profile: str) -> dict[str, Any]:
    return dict(COSTING_PROFILES.get(str(profile or "").strip().lower(), {}))


def decode_shape(shape: str) -> list[LonLat]:
    """Decode a precision-6 encoded polyline into (lon, lat) pairs."""
    return [(lon, lat) for lat, lon in polyline.decode(shape, SHAPE_PRECISION)]


def _format_valhalla_error(resp: httpx.Response) -> str:
    """Best-effort decode of Valhalla JSON error payloads."""
    try:
        data = resp.json()
        if isinstance(data, dict):
            code = data.get("error_code")
            message = data.get("error")
            if code and message:
                return f"Valhalla {resp.status_code} {code}: {message}"
            if message:
                return f"Valhalla {resp.status_code}: {message}"
    except ValueError:
        pass

    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > 240:
        body = body[:240] + "..."
    if body:
        return f"Valhalla {resp.status_code}: {body}"
    return f"Valhalla HTTP {resp.status_code}"


def parse_trip(trip: Any) -> RoutedTrip:
    """Concatenate the decoded leg shapes of one Valhalla trip.

    The joint between two legs appears as both the last point of one leg and the
    first point of the next, so it is kept once.
    """
    if not isinstance(trip, dict):
        raise RoutingServiceError("Valhalla trip missing", reason_code=MALFORMED_RESPONSE)
    legs = trip.get("legs")
    summary = trip.get("summary")
    if not isinstance(legs, list) or not legs or not isinstance(summary, dict):
        raise RoutingServiceError("Valhalla trip missing legs/summary", reason_code=MALFORMED_RESPONSE)

    path: list[LonLat] = []
    for leg in legs:
        shape = (leg or {}).get("shape") if isinstance(leg, dict) else None
        if not isinstance(shape, str) or not shape:
            raise RoutingServiceError("Valhalla leg missing shape", reason_code=MALFORMED_RESPONSE)
        try:
            coords = decode_shape(shape)
        except (IndexError, ValueError, TypeError) as e:
            raise RoutingServiceError(f"undecodable leg shape: {e}", reason_code=MALFORMED_RESPONSE) from e
        if path and coords and path[-1] == coords[0]:
            coords = coords[1:]
        path.extend(coords)

    try:
        length_mi = float(summary.get("length", 0.0))
        time_s = float(summary.get("time", 0.0))
    except (TypeError, ValueError) as e:
        raise RoutingServiceError("Valhalla summary not numeric", reason_code=MALFORMED_RESPONSE) from e

    if len(path) < 2 or length_mi <= 0:
        raise RoutingServiceError("Valhalla returned an empty trip", reason_code=MALFORMED_RESPONSE)
    return RoutedTrip(path=path, distance_miles=length_mi, duration_minutes=time_s / 60.0)


class ValhallaClient:
    def __init__(
        self,
        *,
        base_url: str,
        costing: str = "pedestrian",
        costing_profile: str = "runner",
        timeout_s: float = 30.0,
        connect_timeout_s: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.costing = costing
        self.costing_profile = costing_profile
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=connect_timeout_s),
            headers={"accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_payload(self, locations: list[RoutingLocation], *, alternates: int = 0) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "locations": [loc.as_payload() for loc in locations],
            "costing": self.costing,
            "costing_options": {self.costing: costing_options(self.costing_profile)},
            "directions_options": {"units": "miles"},
        }
        if alternates > 0:
            payload["alternates"] = int(alternates)
        return payload

    async def fetch_trips(
        self,
        locations: list[RoutingLocation],
        *,
        alternates: int = 0,
    ) -> list[RoutedTrip]:
        """Route through `locations`; returns the primary trip followed by any alternates.

        Raises RoutingServiceError on transport failures and unusable payloads.
        A broken alternate is skipped as long as the primary trip parses.
        """
        if len(locations) < 2:
            raise RoutingServiceError("at least two locations are required", reason_code=MALFORMED_RESPONSE)

        url = f"{self.base_url}/route"
        try:
            resp = await self._client.post(url, json=self.build_payload(locations, alternates=alternates))
        except (httpx.TimeoutException, httpx.NetworkError, httpx.TransportError) as e:
            msg = str(e).strip() or repr(e)
            raise RoutingServiceError(f"{type(e).__name__}: {msg}", reason_code=NETWORK_FAILURE) from e

        if resp.status_code >= 400:
            raise RoutingServiceError(_format_valhalla_error(resp), reason_code=NETWORK_FAILURE)

        try:
            data = resp.json()
        except ValueError as e:
            raise RoutingServiceError("Valhalla returned invalid JSON", reason_code=MALFORMED_RESPONSE) from e
        if not isinstance(data, dict):
            raise RoutingServiceError("Valhalla payload is not an object", reason_code=MALFORMED_RESPONSE)

        trips = [parse_trip(data.get("trip"))]
        alternates_raw = data.get("alternates")
        for alt in alternates_raw if isinstance(alternates_raw, list) else []:
            try:
                trips.append(parse_trip((alt or {}).get("trip") if isinstance(alt, dict) else None))
            except RoutingServiceError:
                continue
        return trips

    async def fetch_trip(self, locations: list[RoutingLocation]) -> RoutedTrip:
        return (await self.fetch_trips(locations))[0]
