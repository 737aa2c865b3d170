from __future__ import annotations

from dataclasses import dataclass
from typing import Any

NETWORK_FAILURE = "network_failure"
MALFORMED_RESPONSE = "malformed_response"
GRAPH_UNAVAILABLE = "graph_unavailable"
NO_ROUTE_FOUND = "no_route_found"
INVALID_REQUEST = "invalid_request"

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        NETWORK_FAILURE,
        MALFORMED_RESPONSE,
        GRAPH_UNAVAILABLE,
        NO_ROUTE_FOUND,
        INVALID_REQUEST,
    }
)


@dataclass
class LoopRouteError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class CollaboratorError(RuntimeError):
    """Failure talking to an external service; always absorbed by the caller."""

    def __init__(self, message: str, *, reason_code: str = NETWORK_FAILURE) -> None:
        super().__init__(message)
        self.reason_code = normalize_reason_code(reason_code, default=NETWORK_FAILURE)


def normalize_reason_code(reason_code: str, *, default: str = NETWORK_FAILURE) -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
