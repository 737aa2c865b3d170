from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, fields, replace
from typing import Any, Protocol

from .errors import CollaboratorError
from .geometry import LonLat, Polygon, grid_cell, inside_fraction, sample_evenly, usable_polygon
from .logging_utils import log_event
from .loop_search import DfsCandidate
from .routing_valhalla import RoutedTrip, RoutingLocation
from .settings import settings
from .walk_graph import WalkGraph


@dataclass
class Route:
    path: list[LonLat]
    distance_miles: float
    duration_minutes: float
    # Ranking-only fields; not part of the public route payload.
    backtrack_ratio: float = 0.0
    diversity_count: int = 0
    source: str = "graph"


RouteCallback = Callable[[Route], Awaitable[Any] | Any]


class TripRouter(Protocol):
    async def fetch_trip(self, locations: list[RoutingLocation]) -> RoutedTrip: ...


@dataclass(frozen=True)
class ValidationConfig:
    waypoint_count: int = 10
    polygon_inside_min: float = 0.8
    backtrack_cell_m: float = 80.0
    sample_points: int = 200
    enforce_distance_window: bool = True
    min_distance_ratio: float = 0.75
    max_distance_ratio: float = 1.35
    concurrency: int = 16

    @classmethod
    def from_settings(cls, **overrides: Any) -> ValidationConfig:
        base = cls(
            waypoint_count=settings.validator_waypoint_count,
            polygon_inside_min=settings.validator_polygon_inside_min,
            backtrack_cell_m=settings.validator_backtrack_cell_m,
            sample_points=settings.validator_sample_points,
            enforce_distance_window=settings.validator_enforce_distance_window,
            min_distance_ratio=settings.loop_min_distance_ratio,
            max_distance_ratio=settings.loop_max_distance_ratio,
            concurrency=settings.routing_max_concurrency,
        )
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"unknown validation options: {sorted(unknown)}")
        return replace(base, **overrides)


@dataclass(frozen=True)
class ValidationJob:
    start: LonLat
    waypoints: tuple[LonLat, ...]
    diversity: int = 0
    source: str = "graph"

    def locations(self) -> list[RoutingLocation]:
        lon, lat = self.start
        return [
            RoutingLocation(lon=lon, lat=lat, kind="break"),
            *(RoutingLocation(lon=wlon, lat=wlat, kind="through") for wlon, wlat in self.waypoints),
            RoutingLocation(lon=lon, lat=lat, kind="break"),
        ]


@dataclass
class ValidationStats:
    submitted: int = 0
    accepted: int = 0
    routing_failed: int = 0
    outside_polygon: int = 0
    distance_window: int = 0
    callback_errors: int = 0
    reasons: dict[str, int] = field(default_factory=dict)

    def merge(self, other: ValidationStats) -> None:
        self.submitted += other.submitted
        self.accepted += other.accepted
        self.routing_failed += other.routing_failed
        self.outside_polygon += other.outside_polygon
        self.distance_window += other.distance_window
        self.callback_errors += other.callback_errors
        for key, count in other.reasons.items():
            self.reasons[key] = self.reasons.get(key, 0) + count

    def as_dict(self) -> dict[str, Any]:
        return {
            "submitted": self.submitted,
            "accepted": self.accepted,
            "routing_failed": self.routing_failed,
            "outside_polygon": self.outside_polygon,
            "distance_window": self.distance_window,
            "callback_errors": self.callback_errors,
        }


def downsample_waypoints(nodes: Sequence[int], count: int) -> list[int]:
    """Evenly indexed interior nodes of a closed walk, without repeats of the start."""
    if len(nodes) < 3:
        return []
    start = nodes[0]
    interior = [n for n in nodes[1:-1] if n != start]
    picked: list[int] = []
    for node_id in sample_evenly(interior, count):
        if picked and picked[-1] == node_id:
            continue
        picked.append(node_id)
    return picked


def candidate_job(graph: WalkGraph, candidate: DfsCandidate, *, start: LonLat, waypoint_count: int) -> ValidationJob:
    waypoints = tuple(
        (graph.node(nid).lon, graph.node(nid).lat)
        for nid in downsample_waypoints(candidate.nodes, waypoint_count)
    )
    return ValidationJob(start=start, waypoints=waypoints, diversity=candidate.diversity, source="graph")


def backtrack_ratio(path: Sequence[LonLat], *, cell_m: float, max_samples: int) -> float:
    """Share of samples that re-enter a cell the route had already left.

    Consecutive samples inside the same cell are not repeats; only a return to
    a cell after leaving it counts.
    """
    sample = sample_evenly(path, max_samples)
    if not sample:
        return 0.0
    seen: set[tuple[int, int]] = set()
    prev: tuple[int, int] | None = None
    repeats = 0
    for lon, lat in sample:
        cell = grid_cell(lat, lon, cell_m)
        if cell != prev and cell in seen:
            repeats += 1
        seen.add(cell)
        prev = cell
    return repeats / len(sample)


def accept_trip(
    trip: RoutedTrip,
    *,
    target_miles: float,
    polygon: Polygon | None,
    config: ValidationConfig,
) -> tuple[Route | None, str]:
    if len(trip.path) < 2 or trip.distance_miles <= 0:
        return None, "routing_failed"
    poly = usable_polygon(polygon)
    if poly is not None:
        if inside_fraction(trip.path, poly, max_samples=config.sample_points) < config.polygon_inside_min:
            return None, "outside_polygon"
    if config.enforce_distance_window and target_miles > 0:
        lo = target_miles * config.min_distance_ratio
        hi = target_miles * config.max_distance_ratio
        if not (lo <= trip.distance_miles <= hi):
            return None, "distance_window"
    route = Route(
        path=list(trip.path),
        distance_miles=trip.distance_miles,
        duration_minutes=trip.duration_minutes,
        backtrack_ratio=backtrack_ratio(
            trip.path,
            cell_m=config.backtrack_cell_m,
            max_samples=config.sample_points,
        ),
    )
    return route, "accepted"


async def validate_jobs(
    router: TripRouter,
    jobs: Sequence[ValidationJob],
    *,
    target_miles: float,
    polygon: Polygon | None = None,
    on_candidate: RouteCallback | None = None,
    config: ValidationConfig | None = None,
) -> tuple[list[Route], ValidationStats]:
    """Route every job concurrently and stream accepted routes as they arrive.

    Workers hand accepted routes to a single consumer through a per-call queue;
    the consumer is the only writer of the result list and the only caller of
    `on_candidate`, so each route is appended and reported exactly once.
    """
    cfg = config or ValidationConfig.from_settings()
    stats = ValidationStats(submitted=len(jobs))
    accepted: list[Route] = []
    if not jobs:
        return accepted, stats

    queue: asyncio.Queue[Route | None] = asyncio.Queue()
    sem = asyncio.Semaphore(max(1, cfg.concurrency))

    def _reject(reason: str) -> None:
        stats.reasons[reason] = stats.reasons.get(reason, 0) + 1
        if reason == "routing_failed":
            stats.routing_failed += 1
        elif reason == "outside_polygon":
            stats.outside_polygon += 1
        elif reason == "distance_window":
            stats.distance_window += 1

    async def one(job: ValidationJob) -> None:
        async with sem:
            try:
                trip = await router.fetch_trip(job.locations())
            except CollaboratorError as e:
                log_event(
                    "routing_request_failed",
                    level=logging.DEBUG,
                    source=job.source,
                    reason_code=e.reason_code,
                    error=str(e),
                )
                _reject("routing_failed")
                return
        route, reason = accept_trip(trip, target_miles=target_miles, polygon=polygon, config=cfg)
        if route is None:
            _reject(reason)
            return
        route.diversity_count = job.diversity
        route.source = job.source
        await queue.put(route)

    async def produce() -> None:
        try:
            await asyncio.gather(*(one(job) for job in jobs))
        finally:
            await queue.put(None)

    async def consume() -> None:
        while True:
            route = await queue.get()
            if route is None:
                return
            accepted.append(route)
            stats.accepted += 1
            if on_candidate is None:
                continue
            try:
                result = on_candidate(route)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:  # counted and logged, never raised
                stats.callback_errors += 1
                log_event("candidate_callback_failed", level=logging.WARNING, error=f"{type(e).__name__}: {e}")

    await asyncio.gather(produce(), consume())
    return accepted, stats
