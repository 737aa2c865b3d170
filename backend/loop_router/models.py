from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from .validator import Route


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class GeoJSONLineString(BaseModel):
    type: Literal["LineString"] = "LineString"
    coordinates: list[tuple[float, float]]  # [lon, lat]


class LoopRouteRequest(BaseModel):
    start: LatLng
    target_miles: float = Field(..., gt=0, le=100)
    # Optional area constraint, [lon, lat] vertices; fewer than 3 means unconstrained.
    polygon: list[tuple[float, float]] | None = Field(default=None, max_length=500)

    @field_validator("target_miles")
    @classmethod
    def finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("target_miles must be finite")
        return v


class PointToPointRequest(BaseModel):
    start: LatLng
    end: LatLng


class RouteOut(BaseModel):
    geometry: GeoJSONLineString
    distance_miles: float
    duration_minutes: float
    source: str = "graph"

    @classmethod
    def from_route(cls, route: Route) -> RouteOut:
        return cls(
            geometry=GeoJSONLineString(coordinates=[(lon, lat) for lon, lat in route.path]),
            distance_miles=round(route.distance_miles, 4),
            duration_minutes=round(route.duration_minutes, 2),
            source=route.source,
        )


class LoopRouteResponse(BaseModel):
    routes: list[RouteOut]
    reason_code: str | None = None
    diagnostics: dict[str, Any] = Field(default_factory=dict)


class PointToPointResponse(BaseModel):
    routes: list[RouteOut]
    reason_code: str | None = None


class GeocodeOut(BaseModel):
    id: int | str | None = None
    name: str
    coordinates: tuple[float, float]  # [lon, lat]


class GeocodeResponse(BaseModel):
    results: list[GeocodeOut]


class LocationResponse(BaseModel):
    lon: float
    lat: float
