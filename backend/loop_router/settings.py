from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_FALLBACK_ROTATIONS_DEG: tuple[float, ...] = (0.0, 120.0, 240.0)
_DEFAULT_FALLBACK_SCALES: tuple[float, ...] = (0.9, 1.1)


class Settings(BaseSettings):
    """Validated settings (env-driven). Every tuned constant of the loop engine lives here."""

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Collaborators
    valhalla_base_url: str = Field(default="https://valhalla1.openstreetmap.de", alias="VALHALLA_BASE_URL")
    valhalla_costing: str = Field(default="pedestrian", alias="VALHALLA_COSTING")
    valhalla_costing_profile: str = Field(default="runner", alias="VALHALLA_COSTING_PROFILE")
    overpass_url: str = Field(default="https://overpass-api.de/api/interpreter", alias="OVERPASS_URL")
    overpass_query_timeout_s: int = Field(default=25, ge=1, le=180, alias="OVERPASS_QUERY_TIMEOUT_S")
    photon_url: str = Field(default="https://photon.komoot.io/api/", alias="PHOTON_URL")
    ip_location_url: str = Field(default="https://ipwho.is/", alias="IP_LOCATION_URL")
    default_location_lon: float = Field(default=-98.5795, ge=-180, le=180, alias="DEFAULT_LOCATION_LON")
    default_location_lat: float = Field(default=39.8283, ge=-90, le=90, alias="DEFAULT_LOCATION_LAT")
    http_timeout_s: float = Field(default=30.0, ge=1.0, le=300.0, alias="HTTP_TIMEOUT_S")
    http_connect_timeout_s: float = Field(default=5.0, ge=0.5, le=60.0, alias="HTTP_CONNECT_TIMEOUT_S")
    routing_max_concurrency: int = Field(default=16, ge=1, le=256, alias="ROUTING_MAX_CONCURRENCY")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="", alias="LOG_DIR")

    # Graph construction and snapping
    graph_coord_decimals: int = Field(default=6, ge=3, le=9, alias="GRAPH_COORD_DECIMALS")
    graph_min_nodes: int = Field(default=10, ge=2, alias="GRAPH_MIN_NODES")
    graph_radius_factor: float = Field(default=3.0, ge=1.0, le=10.0, alias="GRAPH_RADIUS_FACTOR")
    graph_min_radius_m: float = Field(default=400.0, ge=50.0, alias="GRAPH_MIN_RADIUS_M")
    graph_max_radius_m: float = Field(default=8000.0, ge=100.0, alias="GRAPH_MAX_RADIUS_M")
    snap_max_distance_m: float = Field(default=500.0, ge=1.0, alias="SNAP_MAX_DISTANCE_M")
    arterial_radius_factor: float = Field(default=2.5, ge=0.5, le=10.0, alias="ARTERIAL_RADIUS_FACTOR")
    road_factor: float = Field(default=1.4, ge=1.0, le=3.0, alias="ROAD_FACTOR")

    # Loop search (DFS)
    loop_search_passes: int = Field(default=12, ge=1, le=72, alias="LOOP_SEARCH_PASSES")
    loop_min_distance_ratio: float = Field(default=0.75, gt=0.0, le=1.0, alias="LOOP_MIN_DISTANCE_RATIO")
    loop_max_distance_ratio: float = Field(default=1.35, ge=1.0, le=3.0, alias="LOOP_MAX_DISTANCE_RATIO")
    loop_admissibility_slack: float = Field(default=1.15, ge=1.0, le=3.0, alias="LOOP_ADMISSIBILITY_SLACK")
    loop_closing_tolerance_m: float = Field(default=200.0, ge=0.0, alias="LOOP_CLOSING_TOLERANCE_M")
    loop_closing_tolerance_ratio: float = Field(default=0.05, ge=0.0, le=0.5, alias="LOOP_CLOSING_TOLERANCE_RATIO")
    loop_cell_size_m: float = Field(default=150.0, ge=10.0, alias="LOOP_CELL_SIZE_M")
    loop_cell_revisit_cap: int = Field(default=2, ge=1, le=20, alias="LOOP_CELL_REVISIT_CAP")
    loop_typical_edge_m: float = Field(default=100.0, ge=5.0, alias="LOOP_TYPICAL_EDGE_M")
    loop_depth_headroom: float = Field(default=2.0, ge=1.0, le=10.0, alias="LOOP_DEPTH_HEADROOM")
    loop_max_depth_cap: int = Field(default=400, ge=4, le=800, alias="LOOP_MAX_DEPTH_CAP")
    loop_min_depth: int = Field(default=3, ge=2, alias="LOOP_MIN_DEPTH")
    loop_max_results_per_pass: int = Field(default=4, ge=1, le=100, alias="LOOP_MAX_RESULTS_PER_PASS")
    loop_max_explored_nodes: int = Field(default=20_000, ge=100, alias="LOOP_MAX_EXPLORED_NODES")
    loop_used_edge_penalty_deg: float = Field(default=45.0, ge=0.0, le=360.0, alias="LOOP_USED_EDGE_PENALTY_DEG")

    # Validation, ranking, dedupe
    validator_waypoint_count: int = Field(default=10, ge=1, le=20, alias="VALIDATOR_WAYPOINT_COUNT")
    validator_polygon_inside_min: float = Field(default=0.8, ge=0.0, le=1.0, alias="VALIDATOR_POLYGON_INSIDE_MIN")
    validator_backtrack_cell_m: float = Field(default=80.0, ge=5.0, alias="VALIDATOR_BACKTRACK_CELL_M")
    validator_sample_points: int = Field(default=200, ge=10, le=5000, alias="VALIDATOR_SAMPLE_POINTS")
    validator_enforce_distance_window: bool = Field(default=True, alias="VALIDATOR_ENFORCE_DISTANCE_WINDOW")
    dedupe_cell_m: float = Field(default=150.0, ge=10.0, alias="DEDUPE_CELL_M")
    dedupe_jaccard_max: float = Field(default=0.45, ge=0.0, le=1.0, alias="DEDUPE_JACCARD_MAX")
    loop_min_accepted: int = Field(default=4, ge=0, alias="LOOP_MIN_ACCEPTED")
    loop_max_routes: int = Field(default=8, ge=1, le=50, alias="LOOP_MAX_ROUTES")

    # Fallback shapes
    fallback_rotations_deg: str = Field(default="0,120,240", alias="FALLBACK_ROTATIONS_DEG")
    fallback_scales: str = Field(default="0.9,1.1", alias="FALLBACK_SCALES")
    fallback_nudge_deg: float = Field(default=15.0, gt=0.0, le=180.0, alias="FALLBACK_NUDGE_DEG")
    fallback_nudge_attempts: int = Field(default=24, ge=0, le=360, alias="FALLBACK_NUDGE_ATTEMPTS")

    @model_validator(mode="after")
    def _normalise(self) -> "Settings":
        if self.graph_max_radius_m < self.graph_min_radius_m:
            self.graph_max_radius_m = self.graph_min_radius_m
        self.valhalla_costing = str(self.valhalla_costing or "pedestrian").strip().lower()
        return self


def _parse_float_list(raw: str, *, default: tuple[float, ...]) -> tuple[float, ...]:
    text = str(raw or "").strip()
    if not text:
        return default
    parsed: list[float] = []
    for token in text.split(","):
        part = token.strip()
        if not part:
            continue
        try:
            parsed.append(float(part))
        except ValueError:
            continue
    return tuple(parsed) or default


def fallback_rotations_deg() -> tuple[float, ...]:
    return _parse_float_list(settings.fallback_rotations_deg, default=_DEFAULT_FALLBACK_ROTATIONS_DEG)


def fallback_scales() -> tuple[float, ...]:
    scales = _parse_float_list(settings.fallback_scales, default=_DEFAULT_FALLBACK_SCALES)
    return tuple(s for s in scales if s > 0) or _DEFAULT_FALLBACK_SCALES


settings = Settings()
