from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from .dedupe import dedupe_routes
from .errors import INVALID_REQUEST, CollaboratorError, LoopRouteError
from .fallback_shapes import build_fallback_jobs
from .geometry import (
    METERS_PER_MILE,
    ArterialIndex,
    LatLon,
    LonLat,
    Polygon,
    polygon_centroid,
    polygon_extent_m,
    usable_polygon,
)
from .logging_utils import log_event
from .loop_search import LoopSearchConfig, search_loops
from .routing_valhalla import RoutedTrip, RoutingLocation
from .settings import fallback_rotations_deg, fallback_scales, settings
from .validator import Route, RouteCallback, ValidationConfig, ValidationStats, candidate_job, validate_jobs
from .walk_graph import build_walk_graph, nearest_node


class LoopRouting(Protocol):
    async def fetch_trip(self, locations: list[RoutingLocation]) -> RoutedTrip: ...

    async def fetch_trips(self, locations: list[RoutingLocation], *, alternates: int = 0) -> list[RoutedTrip]: ...


class WayGeometrySource(Protocol):
    async def fetch_walkable_ways(self, *, lat: float, lon: float, radius_m: float) -> list[list[LatLon]]: ...

    async def fetch_arterial_ways(self, *, lat: float, lon: float, radius_m: float) -> list[list[LatLon]]: ...


@dataclass
class LoopSearchOutcome:
    routes: list[Route]
    diagnostics: dict[str, Any] = field(default_factory=dict)


def loop_radius_m(target_m: float, *, road_factor: float) -> float:
    return target_m / (2.0 * math.pi * road_factor)


def graph_extent(start: LonLat, target_m: float, polygon: Polygon | None) -> tuple[LonLat, float]:
    """Center and radius of the walkable-way fetch."""
    base = loop_radius_m(target_m, road_factor=settings.road_factor) * settings.graph_radius_factor
    radius = min(settings.graph_max_radius_m, max(settings.graph_min_radius_m, base))
    if polygon is None:
        return start, radius
    center = polygon_centroid(polygon)
    return center, max(radius, polygon_extent_m(polygon, center))


def rank_routes(routes: Sequence[Route], target_miles: float) -> list[Route]:
    return sorted(
        routes,
        key=lambda r: (abs(r.distance_miles - target_miles), -r.diversity_count, r.backtrack_ratio),
    )


async def _fetch_ways(
    fetch: Callable[..., Awaitable[list[list[LatLon]]]],
    *,
    kind: str,
    center: LonLat,
    radius_m: float,
) -> list[list[LatLon]]:
    lon, lat = center
    try:
        return await fetch(lat=lat, lon=lon, radius_m=radius_m)
    except CollaboratorError as e:
        log_event(
            "overpass_fetch_failed",
            level=logging.WARNING,
            kind=kind,
            reason_code=e.reason_code,
            radius_m=round(radius_m, 1),
            error=str(e),
        )
        return []


async def run_loop_search(
    start: LonLat,
    target_miles: float,
    polygon: Polygon | None = None,
    on_candidate: RouteCallback | None = None,
    *,
    routing: LoopRouting,
    overpass: WayGeometrySource,
    search_config: LoopSearchConfig | None = None,
    validation_config: ValidationConfig | None = None,
) -> LoopSearchOutcome:
    """Find closed walking loops of roughly `target_miles` around `start`.

    Collaborator failures degrade to fewer (possibly zero) routes; only a
    malformed request raises.
    """
    if not math.isfinite(target_miles) or target_miles <= 0:
        raise LoopRouteError(
            reason_code=INVALID_REQUEST,
            message="target distance must be a positive number of miles",
            details={"target_miles": target_miles},
        )

    t0 = time.perf_counter()
    search_cfg = search_config or LoopSearchConfig.from_settings()
    validation_cfg = validation_config or ValidationConfig.from_settings()
    poly = usable_polygon(polygon)
    target_m = target_miles * METERS_PER_MILE
    lon, lat = start

    center, graph_radius = graph_extent(start, target_m, poly)
    arterial_radius = loop_radius_m(target_m, road_factor=settings.road_factor) * settings.arterial_radius_factor

    t_fetch = time.perf_counter()
    walk_ways, arterial_ways = await asyncio.gather(
        _fetch_ways(overpass.fetch_walkable_ways, kind="walkable", center=center, radius_m=graph_radius),
        _fetch_ways(overpass.fetch_arterial_ways, kind="arterial", center=start, radius_m=arterial_radius),
    )
    fetch_ms = round((time.perf_counter() - t_fetch) * 1000, 2)

    graph = build_walk_graph(walk_ways, coord_decimals=settings.graph_coord_decimals)
    diagnostics: dict[str, Any] = {
        "target_miles": target_miles,
        "polygon": poly is not None,
        "graph_radius_m": round(graph_radius, 1),
        "walkable_way_count": len(walk_ways),
        "arterial_way_count": len(arterial_ways),
        "graph_node_count": graph.node_count,
        "graph_edge_count": graph.edge_count,
        "fetch_ms": fetch_ms,
    }

    accepted: list[Route] = []
    validation = ValidationStats()
    fallback_reason: str | None = None

    snap = nearest_node(graph, lat=lat, lon=lon) if graph.is_usable(min_nodes=settings.graph_min_nodes) else None
    if snap is None:
        fallback_reason = "graph_unavailable"
        log_event(
            "graph_unavailable",
            level=logging.WARNING,
            node_count=graph.node_count,
            edge_count=graph.edge_count,
            min_nodes=settings.graph_min_nodes,
        )
    elif snap[1] > settings.snap_max_distance_m:
        fallback_reason = "start_not_snapped"
        diagnostics["snap_distance_m"] = round(snap[1], 1)
        log_event(
            "start_not_snapped",
            level=logging.WARNING,
            snap_distance_m=round(snap[1], 1),
            max_distance_m=settings.snap_max_distance_m,
        )
    else:
        start_id, snap_m = snap
        diagnostics["snap_distance_m"] = round(snap_m, 1)
        t_search = time.perf_counter()
        candidates, search_stats = search_loops(
            graph,
            start=start_id,
            target_m=target_m,
            polygon=poly,
            used_edges=set(),
            config=search_cfg,
        )
        diagnostics["search_ms"] = round((time.perf_counter() - t_search) * 1000, 2)
        diagnostics["search_passes"] = search_stats.passes
        diagnostics["search_explored_nodes"] = search_stats.explored_nodes
        diagnostics["search_candidates"] = search_stats.candidates
        diagnostics["search_duplicates"] = search_stats.duplicates

        jobs = [
            candidate_job(graph, cand, start=start, waypoint_count=validation_cfg.waypoint_count)
            for cand in candidates
        ]
        routes, stats = await validate_jobs(
            routing,
            jobs,
            target_miles=target_miles,
            polygon=poly,
            on_candidate=on_candidate,
            config=validation_cfg,
        )
        accepted.extend(routes)
        validation.merge(stats)
        if len(accepted) < settings.loop_min_accepted:
            fallback_reason = "too_few_graph_routes"

    diagnostics["graph_routes"] = len(accepted)
    diagnostics["fallback_used"] = False
    diagnostics["polygon_retry"] = False

    if fallback_reason is not None:
        log_event("fallback_triggered", reason=fallback_reason, graph_routes=len(accepted))
        diagnostics["fallback_used"] = True
        diagnostics["fallback_reason"] = fallback_reason
        arterials = ArterialIndex(arterial_ways)
        routes, stats = await _run_fallback(
            routing,
            start=start,
            target_miles=target_miles,
            polygon=poly,
            arterials=arterials,
            on_candidate=on_candidate,
            config=validation_cfg,
        )
        accepted.extend(routes)
        validation.merge(stats)

        if poly is not None and not accepted:
            log_event("polygon_retry", level=logging.WARNING, target_miles=target_miles)
            diagnostics["polygon_retry"] = True
            routes, stats = await _run_fallback(
                routing,
                start=start,
                target_miles=target_miles,
                polygon=None,
                arterials=arterials,
                on_candidate=on_candidate,
                config=validation_cfg,
            )
            accepted.extend(routes)
            validation.merge(stats)

    ranked = rank_routes(accepted, target_miles)
    final = dedupe_routes(ranked, cell_m=settings.dedupe_cell_m, max_similarity=settings.dedupe_jaccard_max)
    final = final[: settings.loop_max_routes]

    diagnostics["validation"] = validation.as_dict()
    diagnostics["accepted_count"] = len(accepted)
    diagnostics["route_count"] = len(final)
    diagnostics["duration_ms"] = round((time.perf_counter() - t0) * 1000, 2)
    log_event("loop_search", start={"lon": lon, "lat": lat}, **diagnostics)
    return LoopSearchOutcome(routes=final, diagnostics=diagnostics)


async def _run_fallback(
    routing: LoopRouting,
    *,
    start: LonLat,
    target_miles: float,
    polygon: Polygon | None,
    arterials: ArterialIndex,
    on_candidate: RouteCallback | None,
    config: ValidationConfig,
) -> tuple[list[Route], ValidationStats]:
    plan = build_fallback_jobs(
        start,
        target_miles=target_miles,
        polygon=polygon,
        arterials=arterials,
        rotations_deg=fallback_rotations_deg(),
        scales=fallback_scales(),
        road_factor=settings.road_factor,
        nudge_deg=settings.fallback_nudge_deg,
        nudge_attempts=settings.fallback_nudge_attempts,
    )
    log_event(
        "fallback_plan",
        level=logging.DEBUG,
        jobs=len(plan.jobs),
        polygon=polygon is not None,
        waypoints=plan.nudge.waypoints,
        nudged=plan.nudge.nudged,
        unresolved=plan.nudge.unresolved,
    )
    return await validate_jobs(
        routing,
        plan.jobs,
        target_miles=target_miles,
        polygon=polygon,
        on_candidate=on_candidate,
        config=config,
    )


async def find_loop_routes(
    start: LonLat,
    target_miles: float,
    polygon: Polygon | None = None,
    on_candidate: RouteCallback | None = None,
    *,
    routing: LoopRouting,
    overpass: WayGeometrySource,
) -> list[Route]:
    outcome = await run_loop_search(
        start,
        target_miles,
        polygon,
        on_candidate,
        routing=routing,
        overpass=overpass,
    )
    return outcome.routes


async def find_point_to_point_routes(
    start: LonLat,
    end: LonLat,
    *,
    routing: LoopRouting,
    alternates: int = 2,
) -> list[Route]:
    """Primary pedestrian route followed by up to `alternates` alternatives."""
    locations = [
        RoutingLocation(lon=start[0], lat=start[1], kind="break"),
        RoutingLocation(lon=end[0], lat=end[1], kind="break"),
    ]
    try:
        trips = await routing.fetch_trips(locations, alternates=alternates)
    except CollaboratorError as e:
        log_event("routing_request_failed", level=logging.WARNING, kind="point_to_point", reason_code=e.reason_code, error=str(e))
        return []
    return [
        Route(
            path=list(trip.path),
            distance_miles=trip.distance_miles,
            duration_minutes=trip.duration_minutes,
            source="point_to_point",
        )
        for trip in trips
    ]
