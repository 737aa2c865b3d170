from __future__ import annotations

from itertools import combinations

import pytest

from loop_router.dedupe import dedupe_routes, jaccard, route_cells
from loop_router.geometry import METERS_PER_DEG_LAT
from loop_router.validator import Route

CELL_M = 150.0
BUCKET = CELL_M / METERS_PER_DEG_LAT


def _route(first: int, last: int, *, row: int = 0, miles: float = 3.0) -> Route:
    path = [((k + 0.5) * BUCKET, (row + 0.5) * BUCKET) for k in range(first, last + 1)]
    return Route(path=path, distance_miles=miles, duration_minutes=miles * 20.0)


def test_jaccard_edges() -> None:
    assert jaccard(set(), set()) == 0.0
    assert jaccard({(0, 0)}, {(0, 0)}) == 1.0
    assert jaccard({(0, 0)}, {(0, 1)}) == 0.0
    assert jaccard({(0, 0), (0, 1)}, {(0, 1), (0, 2)}) == pytest.approx(1.0 / 3.0)


def test_route_cells_counts_distinct_cells() -> None:
    assert len(route_cells(_route(0, 9).path, CELL_M)) == 10


def test_identical_routes_collapse_to_first() -> None:
    a = _route(0, 9, miles=3.0)
    b = _route(0, 9, miles=3.1)
    kept = dedupe_routes([a, b], cell_m=CELL_M, max_similarity=0.45)
    assert kept == [a]


@pytest.mark.parametrize(("threshold", "expected"), [(0.45, 2), (0.3, 1)])
def test_similarity_threshold_is_strict(threshold: float, expected: int) -> None:
    a = _route(0, 9)
    b = _route(5, 14)  # 5 shared cells out of 15
    assert len(dedupe_routes([a, b], cell_m=CELL_M, max_similarity=threshold)) == expected


def test_dedupe_is_idempotent_and_pairwise_bounded() -> None:
    routes = [
        _route(0, 9),
        _route(2, 11),
        _route(5, 14),
        _route(0, 9, row=1),
        _route(20, 29),
        _route(21, 30),
    ]
    once = dedupe_routes(routes, cell_m=CELL_M, max_similarity=0.45)
    twice = dedupe_routes(once, cell_m=CELL_M, max_similarity=0.45)

    assert twice == once
    assert len(once) == 4
    for a, b in combinations(once, 2):
        assert jaccard(route_cells(a.path, CELL_M), route_cells(b.path, CELL_M)) <= 0.45
