"""
population.py — Live population routes.

Routes:
  GET  /api/v1/population                     — records + stats + hotspots
  GET  /api/v1/population/heatmap             — GeoJSON for the heatmap layer
  POST /api/v1/population/refresh             — force a refetch (rate-limited)
  GET  /api/v1/population/regions/{region_id} — on-demand region details
  WS   /api/v1/population/stream              — one frame per live snapshot

HOW THE DATA FLOWS
──────────────────
1. The app lifespan builds a PopulationService and starts its default
   observer: one fetch, then a MongoDB change stream plus a refetch every
   REFRESH_INTERVAL_MS.
2. Unfiltered GETs read the observer's cached state — no DB round-trip.
   Filtered GETs go through the query cache keyed by the filter set, so
   repeated requests inside the refresh window are served from memory.
3. When the feed errors, responses keep the last good data and carry the
   message in `error` (the dashboard shows stale data + a warning badge).

Filters (all optional, combined with AND):
  ?region_ids=gangnam&region_ids=jongno   allow-list
  ?min_population=1000                    floor on current count
  ?status=critical                        exact status match

TESTING YOUR CHANGES
─────────────────────
  pytest tests/test_population_routes.py -v
  curl "http://localhost:8000/api/v1/population?status=critical"
  wscat -c ws://localhost:8000/api/v1/population/stream
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from crowdpulse.core.config import settings
from crowdpulse.core.errors import TransportError
from crowdpulse.core.rate_limit import limiter
from crowdpulse.models.population import (
    PopulationFilters,
    PopulationResponse,
    PopulationStatus,
    RegionDetailsResponse,
    Snapshot,
    StreamFrame,
)
from crowdpulse.services.population import (
    PopulationService,
    build_region_views,
    get_population_service,
    to_response,
)
from crowdpulse.services.population_stats import (
    calculate_statistics,
    get_change_description,
    get_change_summary,
    get_hotspots,
    get_region_color,
    normalize_hourly,
    rank_hotspots,
    to_feature_collection,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/population", tags=["population"])


def population_filters(
    region_ids: Optional[list[str]] = Query(default=None, description="Allow-list of region ids"),
    min_population: Optional[int] = Query(default=None, ge=0, description="Minimum current population"),
    status: Optional[PopulationStatus] = Query(default=None, description="Exact status match"),
) -> PopulationFilters:
    return PopulationFilters(region_ids=region_ids, min_population=min_population, status=status)


# ── Routes ────────────────────────────────────────────────────────────────────

@router.get("", response_model=PopulationResponse)
async def get_population(
    filters: PopulationFilters = Depends(population_filters),
    service: PopulationService = Depends(get_population_service),
):
    """
    Return the current regions with display tokens, aggregate statistics
    and hotspot ids (ranked by change rate).

    Never fails on a feed error: `error` is set and the last good data (if
    any) is returned alongside it.
    """
    state = await service.query(filters)
    return to_response(state)


@router.get("/heatmap")
async def get_heatmap(
    filters: PopulationFilters = Depends(population_filters),
    service: PopulationService = Depends(get_population_service),
):
    """GeoJSON FeatureCollection with a 0–1 `intensity` weight per region."""
    state = await service.query(filters)
    return to_feature_collection(state.data)


@router.post("/refresh", response_model=PopulationResponse)
@limiter.limit(settings.refresh_rate_limit)
async def refresh_population(
    request: Request,
    filters: PopulationFilters = Depends(population_filters),
    service: PopulationService = Depends(get_population_service),
):
    """Refetch immediately, bypassing the staleness window."""
    state = await service.refresh(filters)
    return to_response(state)


@router.get("/regions/{region_id}", response_model=RegionDetailsResponse)
async def get_region_details(
    region_id: str,
    include_historical: bool = Query(default=False, description="Attach recent daily history"),
    service: PopulationService = Depends(get_population_service),
):
    """
    Extended details for one region (baseline stats, nearby places, hourly
    and weekly series), merged with its record from the live snapshot.

    404 when the region does not exist; 503 when the backend is unreachable.
    """
    try:
        lookup = await service.details.get(region_id, include_historical=include_historical)
    except TransportError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    if lookup is None or not lookup.found:
        raise HTTPException(status_code=404, detail=f"Region with ID {region_id} not found")

    region = lookup.region
    live = service.store.find(region_id)
    population = live.population if live is not None else region.population

    return RegionDetailsResponse(
        region=region,
        live=build_region_views([live])[0] if live is not None else None,
        hourly=normalize_hourly(region.population.hourly_data),
        change=get_change_summary(population.current, population.baseline, population.change_rate),
        color=get_region_color(population),
        description=get_change_description(population.change_rate),
    )


# ── WebSocket live feed ────────────────────────────────────────────────────────

def _snapshot_frame(snapshot: Snapshot) -> StreamFrame:
    return StreamFrame(
        type="snapshot",
        timestamp=datetime.now(tz=timezone.utc).isoformat(),
        statistics=calculate_statistics(snapshot.records),
        hotspots=[r.id for r in rank_hotspots(get_hotspots(snapshot.records))],
        total_regions=len(snapshot.records),
    )


@router.websocket("/stream")
async def population_stream(
    websocket: WebSocket,
    filters: PopulationFilters = Depends(population_filters),
):
    """
    Push a frame for every snapshot the live feed delivers.

    Frame format (JSON string):
      {"type": "snapshot", "timestamp": "...", "statistics": {...},
       "hotspots": ["gangnam", ...], "total_regions": 25}

    On a feed error a single {"type": "error", "message": ...} frame is sent
    and the socket is closed; the client reconnects to resubscribe.
    """
    service: PopulationService = websocket.app.state.population
    await websocket.accept()

    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = service.feed.subscribe(filters, queue.put_nowait, queue.put_nowait)

    async def pump() -> None:
        while True:
            item = await queue.get()
            if isinstance(item, TransportError):
                frame = StreamFrame(
                    type="error",
                    timestamp=datetime.now(tz=timezone.utc).isoformat(),
                    message=str(item),
                )
                await websocket.send_text(frame.model_dump_json())
                await websocket.close(code=1011)
                return
            await websocket.send_text(_snapshot_frame(item).model_dump_json())

    async def watch_disconnect() -> None:
        # Client frames are ignored; receiving is how a disconnect surfaces.
        while True:
            await websocket.receive_text()

    tasks = [asyncio.create_task(pump()), asyncio.create_task(watch_disconnect())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            task.result()
    except WebSocketDisconnect:
        logger.info("Population WebSocket client disconnected")
    except Exception as exc:
        logger.warning("Population WebSocket error: %s", exc)
    finally:
        unsubscribe()
        for task in tasks:
            task.cancel()
