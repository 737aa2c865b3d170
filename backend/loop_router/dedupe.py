from __future__ import annotations

from collections.abc import Sequence

from .geometry import LonLat, path_cells
from .validator import Route

Cell = tuple[int, int]


def route_cells(path: Sequence[LonLat], cell_m: float) -> set[Cell]:
    return path_cells(path, cell_m)


def jaccard(a: set[Cell], b: set[Cell]) -> float:
    union = len(a | b)
    if union == 0:
        return 0.0
    return len(a & b) / union


def dedupe_routes(routes: Sequence[Route], *, cell_m: float, max_similarity: float) -> list[Route]:
    """Greedy near-duplicate removal in input order.

    A route is kept only when its cell-set similarity to every route kept so far
    is strictly below `max_similarity`.
    """
    kept: list[Route] = []
    kept_cells: list[set[Cell]] = []
    for route in routes:
        cells = route_cells(route.path, cell_m)
        if any(jaccard(cells, other) >= max_similarity for other in kept_cells):
            continue
        kept.append(route)
        kept_cells.append(cells)
    return kept
