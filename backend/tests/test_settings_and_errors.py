from __future__ import annotations

import logging

import pytest

from loop_router import logging_utils
from loop_router.errors import (
    FROZEN_REASON_CODES,
    CollaboratorError,
    LoopRouteError,
    normalize_reason_code,
)
from loop_router.routing_valhalla import RoutingServiceError
from loop_router.settings import Settings, fallback_rotations_deg, fallback_scales, settings


def test_loop_route_error_string_and_details() -> None:
    err = LoopRouteError(
        reason_code="invalid_request",
        message="target distance must be a positive number of miles",
        details={"target_miles": -1.0},
    )
    assert str(err) == "target distance must be a positive number of miles"
    assert isinstance(err, ValueError)
    assert err.details == {"target_miles": -1.0}


def test_reason_code_normalization() -> None:
    assert {"network_failure", "malformed_response", "no_route_found"} <= FROZEN_REASON_CODES
    assert normalize_reason_code("malformed_response") == "malformed_response"
    assert normalize_reason_code("unknown_reason") == "network_failure"
    assert normalize_reason_code("", default="no_route_found") == "no_route_found"


def test_collaborator_errors_carry_normalized_reason() -> None:
    err = RoutingServiceError("boom", reason_code="bogus")
    assert isinstance(err, CollaboratorError)
    assert err.reason_code == "network_failure"
    assert str(err) == "boom"


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VALHALLA_COSTING", "  Pedestrian ")
    monkeypatch.setenv("LOOP_SEARCH_PASSES", "6")
    monkeypatch.setenv("GRAPH_MIN_RADIUS_M", "900")
    monkeypatch.setenv("GRAPH_MAX_RADIUS_M", "500")

    loaded = Settings()

    assert loaded.valhalla_costing == "pedestrian"
    assert loaded.loop_search_passes == 6
    assert loaded.graph_max_radius_m == loaded.graph_min_radius_m == 900


@pytest.mark.parametrize(
    ("rotations", "scales", "expected_rotations", "expected_scales"),
    [
        ("0,90", "1.0", (0.0, 90.0), (1.0,)),
        ("", "", (0.0, 120.0, 240.0), (0.9, 1.1)),
        ("x, 45 ,", "-1,0", (45.0,), (0.9, 1.1)),
    ],
)
def test_fallback_lists_parse_with_defaults(
    monkeypatch: pytest.MonkeyPatch,
    rotations: str,
    scales: str,
    expected_rotations: tuple[float, ...],
    expected_scales: tuple[float, ...],
) -> None:
    monkeypatch.setattr(settings, "fallback_rotations_deg", rotations)
    monkeypatch.setattr(settings, "fallback_scales", scales)
    assert fallback_rotations_deg() == expected_rotations
    assert fallback_scales() == expected_scales


def test_log_event_emits_structured_record(monkeypatch: pytest.MonkeyPatch) -> None:
    records: list[logging.LogRecord] = []

    class Capture(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    logger = logging.getLogger("loop_router.test_capture")
    logger.setLevel(logging.DEBUG)
    logger.addHandler(Capture())
    monkeypatch.setattr(logging_utils, "LOGGER", logger)

    logging_utils.log_event("loop_search", route_count=3)

    assert records[-1].getMessage() == "loop_search"
    assert records[-1].event == "loop_search"  # type: ignore[attr-defined]
    assert records[-1].route_count == 3  # type: ignore[attr-defined]


def test_get_logger_is_idempotent() -> None:
    first = logging_utils.get_logger()
    handlers = list(first.handlers)
    assert logging_utils.get_logger() is first
    assert first.handlers == handlers


def test_file_handler_only_when_log_dir_is_set(tmp_path) -> None:
    assert logging_utils._file_handler("") is None

    handler = logging_utils._file_handler(str(tmp_path / "logs"))
    try:
        assert isinstance(handler, logging.FileHandler)
        assert (tmp_path / "logs" / logging_utils.LOG_FILE_NAME).exists()
    finally:
        if handler is not None:
            handler.close()
