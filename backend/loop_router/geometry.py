from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from typing import TypeVar

from shapely.geometry import LineString, MultiLineString
from shapely.prepared import prep

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_MILE = 1609.34
METERS_PER_DEG_LAT = 111_320.0

LonLat = tuple[float, float]
LatLon = tuple[float, float]
Polygon = Sequence[LonLat]

T = TypeVar("T")


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial compass bearing from point 1 to point 2 (0 = north, clockwise)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dlambda = math.radians(lon2 - lon1)
    y = math.sin(dlambda) * math.cos(phi2)
    x = (math.cos(phi1) * math.sin(phi2)) - (math.sin(phi1) * math.cos(phi2) * math.cos(dlambda))
    if abs(x) <= 1e-15 and abs(y) <= 1e-15:
        return 0.0
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def heading_delta_deg(a: float, b: float) -> float:
    diff = abs(a - b) % 360.0
    return min(diff, 360.0 - diff)


def offset_point(lat: float, lon: float, *, east_m: float, north_m: float) -> LatLon:
    """Shift a point by a local metric offset (equirectangular, fine at city scale)."""
    cos_lat = max(1e-6, math.cos(math.radians(lat)))
    return (
        lat + (north_m / METERS_PER_DEG_LAT),
        lon + (east_m / (METERS_PER_DEG_LAT * cos_lat)),
    )


def destination_point(lat: float, lon: float, *, bearing: float, distance_m: float) -> LatLon:
    rad = math.radians(bearing)
    return offset_point(lat, lon, east_m=distance_m * math.sin(rad), north_m=distance_m * math.cos(rad))


def grid_cell(lat: float, lon: float, cell_m: float) -> tuple[int, int]:
    bucket_deg = max(1e-9, float(cell_m) / METERS_PER_DEG_LAT)
    return (int(math.floor(lat / bucket_deg)), int(math.floor(lon / bucket_deg)))


def path_cells(path: Iterable[LonLat], cell_m: float) -> set[tuple[int, int]]:
    return {grid_cell(lat, lon, cell_m) for lon, lat in path}


def sample_evenly(items: Sequence[T], count: int) -> list[T]:
    """Pick up to `count` items at evenly spaced indices, always keeping the ends."""
    n = len(items)
    if count <= 0 or n == 0:
        return []
    if n <= count:
        return list(items)
    if count == 1:
        return [items[0]]
    step = (n - 1) / (count - 1)
    return [items[int(round(i * step))] for i in range(count)]


def usable_polygon(polygon: Polygon | None) -> Polygon | None:
    if polygon is None or len(polygon) < 3:
        return None
    return polygon


def point_in_polygon(point: LonLat, polygon: Polygon) -> bool:
    """Even-odd ray casting; points are (lon, lat)."""
    px, py = point
    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        xi, yi = polygon[i]
        xj, yj = polygon[j]
        if (yi > py) != (yj > py):
            x_cross = ((xj - xi) * (py - yi)) / (yj - yi) + xi
            if px < x_cross:
                inside = not inside
        j = i
    return inside


def inside_fraction(path: Sequence[LonLat], polygon: Polygon, *, max_samples: int) -> float:
    sample = sample_evenly(path, max_samples)
    if not sample:
        return 0.0
    inside = sum(1 for pt in sample if point_in_polygon(pt, polygon))
    return inside / len(sample)


def polygon_centroid(polygon: Polygon) -> LonLat:
    """Area-weighted centroid; vertex mean when the ring is degenerate."""
    area2 = 0.0
    cx = 0.0
    cy = 0.0
    n = len(polygon)
    for i in range(n):
        x0, y0 = polygon[i]
        x1, y1 = polygon[(i + 1) % n]
        cross = (x0 * y1) - (x1 * y0)
        area2 += cross
        cx += (x0 + x1) * cross
        cy += (y0 + y1) * cross
    if abs(area2) <= 1e-18:
        return (
            sum(p[0] for p in polygon) / n,
            sum(p[1] for p in polygon) / n,
        )
    return (cx / (3.0 * area2), cy / (3.0 * area2))


def polygon_extent_m(polygon: Polygon, center: LonLat) -> float:
    clon, clat = center
    return max((haversine_m(clat, clon, lat, lon) for lon, lat in polygon), default=0.0)


class ArterialIndex:
    """Major-road geometry used to reject fallback waypoints that sit across a highway."""

    def __init__(self, ways: Iterable[Sequence[LatLon]]) -> None:
        lines = [
            LineString([(lon, lat) for lat, lon in way])
            for way in ways
            if len(way) >= 2
        ]
        self.line_count = len(lines)
        self._prepared = prep(MultiLineString(lines)) if lines else None

    def crosses(self, a: LonLat, b: LonLat) -> bool:
        if self._prepared is None or a == b:
            return False
        return bool(self._prepared.intersects(LineString([a, b])))
