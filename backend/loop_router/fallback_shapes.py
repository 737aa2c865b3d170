from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Final

from .geometry import (
    METERS_PER_MILE,
    ArterialIndex,
    LonLat,
    Polygon,
    bearing_deg,
    destination_point,
    haversine_m,
    offset_point,
    point_in_polygon,
    usable_polygon,
)
from .validator import ValidationJob

# (forward_m, side_m) offsets from the start in the shape's own frame; side is to
# the right of the forward heading.
FrameOffsets = list[tuple[float, float]]

_LOBE_SIDE = 1.25
_LOBE_FORWARD = 0.8
_LOBE_SHIFT = math.sqrt(0.5)


def _ramanujan_perimeter(a: float, b: float) -> float:
    return math.pi * (3.0 * (a + b) - math.sqrt((3.0 * a + b) * (a + 3.0 * b)))


def _circle(radius: float) -> FrameOffsets:
    # Center sits one radius ahead; phi=0 is the start.
    out: FrameOffsets = []
    for deg in (72.0, 144.0, 216.0, 288.0):
        phi = math.radians(deg)
        out.append((radius - radius * math.cos(phi), radius * math.sin(phi)))
    return out


def _teardrop(radius: float) -> FrameOffsets:
    # Cardioid rho = r(1 + cos phi): cusp at the start, widest point 2r ahead.
    out: FrameOffsets = []
    for deg in (-108.0, -36.0, 36.0, 108.0):
        phi = math.radians(deg)
        rho = radius * (1.0 + math.cos(phi))
        out.append((rho * math.cos(phi), rho * math.sin(phi)))
    return out


def _offset_lobe(radius: float) -> FrameOffsets:
    a = _LOBE_SIDE * radius
    b = _LOBE_FORWARD * radius
    center_fwd = _LOBE_SHIFT * b
    center_side = _LOBE_SHIFT * a
    # The start is the rim point at t=225 degrees.
    out: FrameOffsets = []
    for step in (1, 2, 3, 4):
        t = math.radians(225.0 + 72.0 * step)
        out.append((center_fwd + b * math.sin(t), center_side + a * math.cos(t)))
    return out


def _figure_eight(radius: float) -> FrameOffsets:
    ahead = [
        (radius, radius),
        (2.0 * radius, 0.0),
        (radius, -radius),
    ]
    behind = [
        (-radius, radius),
        (-2.0 * radius, 0.0),
        (-radius, -radius),
    ]
    return ahead + behind


@dataclass(frozen=True)
class ShapeTemplate:
    name: str
    perimeter_factor: float
    offsets: Callable[[float], FrameOffsets]

    def radius_for(self, target_m: float, *, road_factor: float, scale: float) -> float:
        return target_m / (road_factor * self.perimeter_factor) * scale


SHAPE_TEMPLATES: Final[tuple[ShapeTemplate, ...]] = (
    ShapeTemplate("circle", 2.0 * math.pi, _circle),
    ShapeTemplate("teardrop", 8.0, _teardrop),
    ShapeTemplate("offset_lobe", _ramanujan_perimeter(_LOBE_SIDE, _LOBE_FORWARD), _offset_lobe),
    ShapeTemplate("figure_eight", 4.0 * math.pi, _figure_eight),
)


def template_by_name(name: str) -> ShapeTemplate:
    for template in SHAPE_TEMPLATES:
        if template.name == name:
            return template
    raise KeyError(name)


def place_offsets(start: LonLat, offsets: FrameOffsets, *, rotation_deg: float) -> list[LonLat]:
    """Rotate frame offsets to a compass heading and project them around the start."""
    lon, lat = start
    rad = math.radians(rotation_deg)
    sin_r = math.sin(rad)
    cos_r = math.cos(rad)
    out: list[LonLat] = []
    for forward, side in offsets:
        east = forward * sin_r + side * cos_r
        north = forward * cos_r - side * sin_r
        plat, plon = offset_point(lat, lon, east_m=east, north_m=north)
        out.append((plon, plat))
    return out


@dataclass
class NudgeStats:
    waypoints: int = 0
    nudged: int = 0
    unresolved: int = 0


def waypoint_ok(start: LonLat, point: LonLat, *, polygon: Polygon | None, arterials: ArterialIndex | None) -> bool:
    if polygon is not None and not point_in_polygon(point, polygon):
        return False
    if arterials is not None and arterials.crosses(start, point):
        return False
    return True


def nudge_waypoint(
    start: LonLat,
    point: LonLat,
    *,
    polygon: Polygon | None,
    arterials: ArterialIndex | None,
    step_deg: float,
    attempts: int,
    stats: NudgeStats | None = None,
) -> LonLat:
    """Swing a rejected waypoint around the start until it is usable.

    Keeps the distance from the start; returns the raw point when no rotation
    passes.
    """
    if stats is not None:
        stats.waypoints += 1
    if waypoint_ok(start, point, polygon=polygon, arterials=arterials):
        return point

    slon, slat = start
    plon, plat = point
    base_bearing = bearing_deg(slat, slon, plat, plon)
    distance_m = haversine_m(slat, slon, plat, plon)
    for attempt in range(1, attempts + 1):
        qlat, qlon = destination_point(slat, slon, bearing=base_bearing + attempt * step_deg, distance_m=distance_m)
        candidate = (qlon, qlat)
        if waypoint_ok(start, candidate, polygon=polygon, arterials=arterials):
            if stats is not None:
                stats.nudged += 1
            return candidate
    if stats is not None:
        stats.unresolved += 1
    return point


@dataclass
class FallbackPlan:
    jobs: list[ValidationJob] = field(default_factory=list)
    nudge: NudgeStats = field(default_factory=NudgeStats)


def build_fallback_jobs(
    start: LonLat,
    *,
    target_miles: float,
    polygon: Polygon | None = None,
    arterials: ArterialIndex | None = None,
    rotations_deg: Sequence[float] = (0.0, 120.0, 240.0),
    scales: Sequence[float] = (0.9, 1.1),
    road_factor: float = 1.4,
    nudge_deg: float = 15.0,
    nudge_attempts: int = 24,
    templates: Sequence[ShapeTemplate] = SHAPE_TEMPLATES,
) -> FallbackPlan:
    """One routing job per (shape, rotation, scale) combination."""
    plan = FallbackPlan()
    poly = usable_polygon(polygon)
    target_m = max(0.0, target_miles) * METERS_PER_MILE
    if target_m <= 0:
        return plan

    for template in templates:
        for rotation in rotations_deg:
            for scale in scales:
                radius = template.radius_for(target_m, road_factor=road_factor, scale=scale)
                raw = place_offsets(start, template.offsets(radius), rotation_deg=rotation)
                waypoints = tuple(
                    nudge_waypoint(
                        start,
                        point,
                        polygon=poly,
                        arterials=arterials,
                        step_deg=nudge_deg,
                        attempts=nudge_attempts,
                        stats=plan.nudge,
                    )
                    for point in raw
                )
                plan.jobs.append(
                    ValidationJob(start=start, waypoints=waypoints, diversity=0, source=f"fallback:{template.name}")
                )
    return plan
