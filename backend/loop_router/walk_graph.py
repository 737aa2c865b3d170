from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from .geometry import LatLon, haversine_m
from .settings import settings


@dataclass(frozen=True)
class GraphNode:
    id: int
    lat: float
    lon: float
    neighbors: tuple[tuple[int, float], ...]


@dataclass(frozen=True)
class WalkGraph:
    nodes: dict[int, GraphNode]
    edge_count: int

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    def node(self, node_id: int) -> GraphNode:
        return self.nodes[node_id]

    def is_usable(self, *, min_nodes: int | None = None) -> bool:
        floor = settings.graph_min_nodes if min_nodes is None else int(min_nodes)
        return self.node_count >= max(2, floor) and self.edge_count > 0


def edge_key(a: int, b: int) -> tuple[int, int]:
    return (a, b) if a <= b else (b, a)


def _coord_key(lat: float, lon: float, decimals: int) -> tuple[float, float]:
    return (round(lat, decimals), round(lon, decimals))


def build_walk_graph(
    ways: Iterable[Sequence[LatLon]],
    *,
    coord_decimals: int | None = None,
) -> WalkGraph:
    """Contract raw way geometry into a junction graph.

    Pass 1 counts how many ways touch each rounded coordinate. A coordinate is a
    junction when two or more ways share it or when it ends a way. Pass 2 walks
    every way and emits one edge per junction-to-junction span, summing the
    haversine length of the shape points in between.

    A span that would start and end on the same node, or duplicate a junction
    pair already emitted, is split at its middle shape point. Closed ways (park
    perimeters, block paths) therefore keep their loop as two or more edges.
    Parallel spans without shape points to split on keep only the shortest.
    """
    decimals = settings.graph_coord_decimals if coord_decimals is None else int(coord_decimals)

    ref_count: dict[tuple[float, float], int] = {}
    endpoints: set[tuple[float, float]] = set()
    keyed_ways: list[list[tuple[tuple[float, float], LatLon]]] = []
    for way in ways:
        keyed: list[tuple[tuple[float, float], LatLon]] = []
        for lat, lon in way:
            key = _coord_key(lat, lon, decimals)
            if keyed and keyed[-1][0] == key:
                continue
            keyed.append((key, (lat, lon)))
        if len(keyed) < 2:
            continue
        keyed_ways.append(keyed)
        # Occurrences, not distinct keys: a way that crosses itself has a junction there.
        for key, _ in keyed:
            ref_count[key] = ref_count.get(key, 0) + 1
        endpoints.add(keyed[0][0])
        endpoints.add(keyed[-1][0])

    def is_junction(key: tuple[float, float]) -> bool:
        return key in endpoints or ref_count.get(key, 0) >= 2

    ids: dict[tuple[float, float], int] = {}
    best: dict[tuple[int, int], float] = {}

    def node_id(key: tuple[float, float]) -> int:
        nid = ids.get(key)
        if nid is None:
            nid = len(ids)
            ids[key] = nid
        return nid

    for keyed in keyed_ways:
        last = len(keyed) - 1
        cuts = [i for i, (key, _) in enumerate(keyed) if i in (0, last) or is_junction(key)]
        pending = list(zip(cuts, cuts[1:]))
        pending.reverse()
        while pending:
            i, j = pending.pop()
            a = node_id(keyed[i][0])
            b = node_id(keyed[j][0])
            ek = edge_key(a, b)
            if (a == b or ek in best) and j - i >= 2:
                # Closed or parallel span: promote the middle shape point so the
                # loop survives as distinct edges instead of collapsing.
                mid = (i + j) // 2
                pending.append((mid, j))
                pending.append((i, mid))
                continue
            if a == b:
                continue
            span_m = sum(
                haversine_m(keyed[k][1][0], keyed[k][1][1], keyed[k + 1][1][0], keyed[k + 1][1][1])
                for k in range(i, j)
            )
            if span_m > 0 and span_m < best.get(ek, float("inf")):
                best[ek] = span_m

    adjacency: dict[int, list[tuple[int, float]]] = {nid: [] for nid in ids.values()}
    for (a, b), dist in best.items():
        adjacency[a].append((b, dist))
        adjacency[b].append((a, dist))

    nodes: dict[int, GraphNode] = {}
    for (lat, lon), nid in ids.items():
        if not adjacency[nid]:
            continue
        nodes[nid] = GraphNode(id=nid, lat=lat, lon=lon, neighbors=tuple(adjacency[nid]))
    return WalkGraph(nodes=nodes, edge_count=len(best))


def nearest_node(graph: WalkGraph, *, lat: float, lon: float) -> tuple[int, float] | None:
    """Exhaustive nearest-node scan; ties resolve to the lowest node id.

    Linear in graph size, which is fine for a few-kilometre walking graph.
    """
    best_id: int | None = None
    best_d = float("inf")
    for nid in sorted(graph.nodes):
        node = graph.nodes[nid]
        d = haversine_m(lat, lon, node.lat, node.lon)
        if d < best_d:
            best_d = d
            best_id = nid
    if best_id is None:
        return None
    return best_id, best_d
