from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .errors import NO_ROUTE_FOUND, LoopRouteError
from .geocoding import IpLocator, PhotonGeocoder
from .logging_utils import log_event
from .loop_engine import find_point_to_point_routes, run_loop_search
from .models import (
    GeocodeOut,
    GeocodeResponse,
    LocationResponse,
    LoopRouteRequest,
    LoopRouteResponse,
    PointToPointRequest,
    PointToPointResponse,
    RouteOut,
)
from .overpass import OverpassClient
from .routing_valhalla import ValhallaClient
from .settings import settings
from .validator import Route


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.valhalla = ValhallaClient(
        base_url=settings.valhalla_base_url,
        costing=settings.valhalla_costing,
        costing_profile=settings.valhalla_costing_profile,
        timeout_s=settings.http_timeout_s,
        connect_timeout_s=settings.http_connect_timeout_s,
    )
    app.state.overpass = OverpassClient(
        url=settings.overpass_url,
        query_timeout_s=settings.overpass_query_timeout_s,
        timeout_s=settings.http_timeout_s,
        connect_timeout_s=settings.http_connect_timeout_s,
    )
    app.state.geocoder = PhotonGeocoder(
        url=settings.photon_url,
        connect_timeout_s=settings.http_connect_timeout_s,
    )
    app.state.ip_locator = IpLocator(
        url=settings.ip_location_url,
        default=(settings.default_location_lon, settings.default_location_lat),
        connect_timeout_s=settings.http_connect_timeout_s,
    )
    yield
    await app.state.valhalla.aclose()
    await app.state.overpass.aclose()
    await app.state.geocoder.aclose()
    await app.state.ip_locator.aclose()


app = FastAPI(title="Loop Router", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    t0 = time.perf_counter()
    response = await call_next(request)
    log_event(
        "http_request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return response


def _state_client(request: Request, name: str) -> Any:
    client = getattr(request.app.state, name, None)  # type: ignore[attr-defined]
    if client is None:
        raise HTTPException(status_code=503, detail=f"{name} client not initialised")
    return client


def routing_client(request: Request) -> ValhallaClient:
    return _state_client(request, "valhalla")


def overpass_client(request: Request) -> OverpassClient:
    return _state_client(request, "overpass")


def geocoder_client(request: Request) -> PhotonGeocoder:
    return _state_client(request, "geocoder")


def ip_locator_client(request: Request) -> IpLocator:
    return _state_client(request, "ip_locator")


RoutingDep = Annotated[ValhallaClient, Depends(routing_client)]
OverpassDep = Annotated[OverpassClient, Depends(overpass_client)]
GeocoderDep = Annotated[PhotonGeocoder, Depends(geocoder_client)]
IpLocatorDep = Annotated[IpLocator, Depends(ip_locator_client)]


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


def _polygon(req: LoopRouteRequest) -> list[tuple[float, float]] | None:
    return [(float(lon), float(lat)) for lon, lat in req.polygon] if req.polygon else None


def _invalid(e: LoopRouteError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"reason_code": e.reason_code, "message": e.message, "details": e.details or {}},
    )


@app.post("/routes/loop", response_model=LoopRouteResponse)
async def loop_routes(req: LoopRouteRequest, routing: RoutingDep, overpass: OverpassDep) -> LoopRouteResponse:
    request_id = str(uuid.uuid4())
    try:
        outcome = await run_loop_search(
            (req.start.lon, req.start.lat),
            req.target_miles,
            _polygon(req),
            routing=routing,
            overpass=overpass,
        )
    except LoopRouteError as e:
        raise _invalid(e) from e

    diagnostics = {"request_id": request_id, **outcome.diagnostics}
    return LoopRouteResponse(
        routes=[RouteOut.from_route(r) for r in outcome.routes],
        reason_code=None if outcome.routes else NO_ROUTE_FOUND,
        diagnostics=diagnostics,
    )


def _ndjson(event: dict[str, Any]) -> str:
    return json.dumps(event, separators=(",", ":")) + "\n"


@app.post("/routes/loop/stream")
async def stream_loop_routes(req: LoopRouteRequest, routing: RoutingDep, overpass: OverpassDep) -> StreamingResponse:
    """NDJSON progress: a `meta` line, one `route` line per accepted candidate, then `done`."""
    request_id = str(uuid.uuid4())
    queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
    accepted = 0

    async def on_candidate(route: Route) -> None:
        nonlocal accepted
        accepted += 1
        await queue.put(
            {
                "type": "route",
                "done": accepted,
                "route": RouteOut.from_route(route).model_dump(mode="json"),
            }
        )

    async def run() -> None:
        try:
            outcome = await run_loop_search(
                (req.start.lon, req.start.lat),
                req.target_miles,
                _polygon(req),
                on_candidate,
                routing=routing,
                overpass=overpass,
            )
            routes = [RouteOut.from_route(r).model_dump(mode="json") for r in outcome.routes]
            await queue.put(
                {
                    "type": "done",
                    "request_id": request_id,
                    "accepted": accepted,
                    "total": len(routes),
                    "routes": routes,
                    "reason_code": None if routes else NO_ROUTE_FOUND,
                    "diagnostics": outcome.diagnostics,
                }
            )
        except LoopRouteError as e:
            await queue.put({"type": "error", "reason_code": e.reason_code, "message": e.message})
        finally:
            await queue.put(None)

    async def events() -> AsyncIterator[str]:
        yield _ndjson(
            {
                "type": "meta",
                "request_id": request_id,
                "target_miles": req.target_miles,
                "polygon": bool(req.polygon),
            }
        )
        task = asyncio.create_task(run())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield _ndjson(item)
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(events(), media_type="application/x-ndjson")


@app.post("/routes/point-to-point", response_model=PointToPointResponse)
async def point_to_point_routes(req: PointToPointRequest, routing: RoutingDep) -> PointToPointResponse:
    routes = await find_point_to_point_routes(
        (req.start.lon, req.start.lat),
        (req.end.lon, req.end.lat),
        routing=routing,
    )
    return PointToPointResponse(
        routes=[RouteOut.from_route(r) for r in routes],
        reason_code=None if routes else NO_ROUTE_FOUND,
    )


@app.get("/geocode", response_model=GeocodeResponse)
async def geocode(geocoder: GeocoderDep, q: str = Query(..., min_length=1, max_length=200)) -> GeocodeResponse:
    results = await geocoder.geocode(q)
    return GeocodeResponse(
        results=[GeocodeOut(id=r.id, name=r.name, coordinates=r.coordinates) for r in results]
    )


@app.get("/location", response_model=LocationResponse)
async def location(locator: IpLocatorDep) -> LocationResponse:
    lon, lat = await locator.locate()
    return LocationResponse(lon=lon, lat=lat)
