from __future__ import annotations

import math
from dataclasses import dataclass, field, fields, replace
from typing import Any

from .geometry import Polygon, bearing_deg, grid_cell, haversine_m, heading_delta_deg, point_in_polygon, usable_polygon
from .settings import settings
from .walk_graph import GraphNode, WalkGraph, edge_key

UsedEdgeSet = set[tuple[int, int]]


@dataclass(frozen=True)
class LoopSearchConfig:
    passes: int = 12
    min_distance_ratio: float = 0.75
    max_distance_ratio: float = 1.35
    admissibility_slack: float = 1.15
    closing_tolerance_m: float = 200.0
    closing_tolerance_ratio: float = 0.05
    cell_size_m: float = 150.0
    cell_revisit_cap: int = 2
    typical_edge_m: float = 100.0
    depth_headroom: float = 2.0
    max_depth_cap: int = 400
    min_depth: int = 3
    max_results_per_pass: int = 4
    max_explored_nodes: int = 20_000
    used_edge_penalty_deg: float = 45.0

    @classmethod
    def from_settings(cls, **overrides: Any) -> LoopSearchConfig:
        base = cls(
            passes=settings.loop_search_passes,
            min_distance_ratio=settings.loop_min_distance_ratio,
            max_distance_ratio=settings.loop_max_distance_ratio,
            admissibility_slack=settings.loop_admissibility_slack,
            closing_tolerance_m=settings.loop_closing_tolerance_m,
            closing_tolerance_ratio=settings.loop_closing_tolerance_ratio,
            cell_size_m=settings.loop_cell_size_m,
            cell_revisit_cap=settings.loop_cell_revisit_cap,
            typical_edge_m=settings.loop_typical_edge_m,
            depth_headroom=settings.loop_depth_headroom,
            max_depth_cap=settings.loop_max_depth_cap,
            min_depth=settings.loop_min_depth,
            max_results_per_pass=settings.loop_max_results_per_pass,
            max_explored_nodes=settings.loop_max_explored_nodes,
            used_edge_penalty_deg=settings.loop_used_edge_penalty_deg,
        )
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"unknown loop search options: {sorted(unknown)}")
        return replace(base, **overrides)

    def closing_tolerance(self, target_m: float) -> float:
        return min(self.closing_tolerance_m, self.closing_tolerance_ratio * target_m)

    def max_depth(self, target_m: float) -> int:
        raw = math.ceil((target_m / max(1.0, self.typical_edge_m)) * self.depth_headroom)
        return max(self.min_depth, min(self.max_depth_cap, raw))

    def distance_window(self, target_m: float) -> tuple[float, float]:
        return (target_m * self.min_distance_ratio, target_m * self.max_distance_ratio)


@dataclass(frozen=True)
class DfsCandidate:
    nodes: tuple[int, ...]
    distance_m: float
    diversity: int
    pass_index: int = 0

    def edge_keys(self) -> set[tuple[int, int]]:
        return {edge_key(a, b) for a, b in zip(self.nodes, self.nodes[1:]) if a != b}


@dataclass
class LoopSearchStats:
    passes: int = 0
    explored_nodes: int = 0
    candidates: int = 0
    duplicates: int = 0
    per_pass: list[dict[str, int | float]] = field(default_factory=list)


class _LoopPass:
    """One directional DFS pass. Path/edge/cell state is shared and restored on backtrack."""

    def __init__(
        self,
        graph: WalkGraph,
        *,
        start: int,
        target_m: float,
        target_angle: float,
        polygon: Polygon | None,
        used_edges: UsedEdgeSet,
        config: LoopSearchConfig,
        pass_index: int,
    ) -> None:
        self.graph = graph
        self.start = start
        self.start_node = graph.node(start)
        self.target_angle = target_angle
        self.polygon = polygon
        self.used_edges = used_edges
        self.config = config
        self.pass_index = pass_index

        self.half_m = target_m / 2.0
        self.min_m, self.max_m = config.distance_window(target_m)
        self.limit_m = self.max_m * config.admissibility_slack
        self.tolerance_m = config.closing_tolerance(target_m)
        self.max_depth = config.max_depth(target_m)

        self._to_start_cache: dict[int, float] = {}
        self._cell_cache: dict[int, tuple[int, int]] = {}

        self.path: list[int] = [start]
        self.path_edges: set[tuple[int, int]] = set()
        self.cell_counts: dict[tuple[int, int], int] = {self._cell(start): 1}
        self.results: list[DfsCandidate] = []
        self.explored = 0

    def run(self) -> list[DfsCandidate]:
        self._visit(self.start, prev=None, distance=0.0)
        return self.results

    def _cell(self, node_id: int) -> tuple[int, int]:
        cell = self._cell_cache.get(node_id)
        if cell is None:
            node = self.graph.node(node_id)
            cell = grid_cell(node.lat, node.lon, self.config.cell_size_m)
            self._cell_cache[node_id] = cell
        return cell

    def _to_start(self, node_id: int) -> float:
        d = self._to_start_cache.get(node_id)
        if d is None:
            node = self.graph.node(node_id)
            d = haversine_m(node.lat, node.lon, self.start_node.lat, self.start_node.lon)
            self._to_start_cache[node_id] = d
        return d

    def _exhausted(self) -> bool:
        return (
            len(self.results) >= self.config.max_results_per_pass
            or self.explored >= self.config.max_explored_nodes
        )

    def _ordered_neighbors(self, node: GraphNode, distance: float) -> list[tuple[int, float]]:
        if distance < self.half_m:
            desired = self.target_angle
        else:
            desired = bearing_deg(node.lat, node.lon, self.start_node.lat, self.start_node.lon)
        scored: list[tuple[float, int, int, float]] = []
        for idx, (nbr, length_m) in enumerate(node.neighbors):
            other = self.graph.node(nbr)
            delta = heading_delta_deg(bearing_deg(node.lat, node.lon, other.lat, other.lon), desired)
            if edge_key(node.id, nbr) in self.used_edges:
                delta += self.config.used_edge_penalty_deg
            scored.append((delta, idx, nbr, length_m))
        scored.sort()
        return [(nbr, length_m) for _, _, nbr, length_m in scored]

    def _record(self, nodes: list[int], distance: float) -> None:
        diversity = len({self._cell(n) for n in nodes})
        self.results.append(
            DfsCandidate(
                nodes=tuple(nodes),
                distance_m=distance,
                diversity=diversity,
                pass_index=self.pass_index,
            )
        )

    def _visit(self, node_id: int, *, prev: int | None, distance: float) -> None:
        self.explored += 1
        depth = len(self.path) - 1
        if depth >= self.max_depth:
            return
        node = self.graph.node(node_id)
        here_cell = self._cell(node_id)
        deep_enough = depth + 1 >= self.config.min_depth

        for nbr, length_m in self._ordered_neighbors(node, distance):
            if self._exhausted():
                return
            if nbr == prev:
                continue
            ek = edge_key(node_id, nbr)
            if ek in self.path_edges:
                continue
            new_distance = distance + length_m
            if new_distance + self._to_start(nbr) > self.limit_m:
                continue

            if nbr == self.start:
                if deep_enough and self.min_m <= new_distance <= self.max_m:
                    self._record([*self.path, nbr], new_distance)
                continue

            if self.polygon is not None:
                other = self.graph.node(nbr)
                if not point_in_polygon((other.lon, other.lat), self.polygon):
                    continue

            nbr_cell = self._cell(nbr)
            entering = nbr_cell != here_cell
            if entering and self.cell_counts.get(nbr_cell, 0) >= self.config.cell_revisit_cap:
                continue

            gap_m = self._to_start(nbr)
            if deep_enough and gap_m <= self.tolerance_m:
                closed = new_distance + gap_m
                closing_key = edge_key(nbr, self.start)
                if (
                    self.min_m <= closed <= self.max_m
                    and closing_key != ek
                    and closing_key not in self.path_edges
                ):
                    self._record([*self.path, nbr, self.start], closed)
                    continue

            self.path.append(nbr)
            self.path_edges.add(ek)
            if entering:
                self.cell_counts[nbr_cell] = self.cell_counts.get(nbr_cell, 0) + 1
            self._visit(nbr, prev=node_id, distance=new_distance)
            if entering:
                remaining = self.cell_counts[nbr_cell] - 1
                if remaining:
                    self.cell_counts[nbr_cell] = remaining
                else:
                    del self.cell_counts[nbr_cell]
            self.path_edges.discard(ek)
            self.path.pop()


def pass_target_angles(passes: int) -> list[float]:
    n = max(1, int(passes))
    return [(i * 360.0) / n for i in range(n)]


def search_loops(
    graph: WalkGraph,
    *,
    start: int,
    target_m: float,
    polygon: Polygon | None = None,
    used_edges: UsedEdgeSet | None = None,
    config: LoopSearchConfig | None = None,
) -> tuple[list[DfsCandidate], LoopSearchStats]:
    """Run the directional passes in sequence and return the union of their loops.

    Edges of loops found by a pass are added to `used_edges` before the next pass
    starts, so later passes are pushed toward roads not yet covered.
    """
    cfg = config or LoopSearchConfig.from_settings()
    used = used_edges if used_edges is not None else set()
    poly = usable_polygon(polygon)
    stats = LoopSearchStats()
    out: list[DfsCandidate] = []
    if start not in graph.nodes or target_m <= 0:
        return out, stats

    seen: set[tuple[int, ...]] = set()
    for pass_index, angle in enumerate(pass_target_angles(cfg.passes)):
        loop_pass = _LoopPass(
            graph,
            start=start,
            target_m=target_m,
            target_angle=angle,
            polygon=poly,
            used_edges=used,
            config=cfg,
            pass_index=pass_index,
        )
        found = loop_pass.run()
        kept = 0
        for cand in found:
            used.update(cand.edge_keys())
            reverse = tuple(reversed(cand.nodes))
            if cand.nodes in seen or reverse in seen:
                stats.duplicates += 1
                continue
            seen.add(cand.nodes)
            out.append(cand)
            kept += 1
        stats.passes += 1
        stats.explored_nodes += loop_pass.explored
        stats.per_pass.append(
            {
                "pass_index": pass_index,
                "target_angle_deg": angle,
                "explored_nodes": loop_pass.explored,
                "found": len(found),
                "kept": kept,
            }
        )
    stats.candidates = len(out)
    return out, stats
