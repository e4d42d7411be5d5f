"""
population.py — The population service object for one app instance.

Bundles the snapshot store, live feed, query client and region detail
fetcher, and runs the default (unfiltered) observer for the lifetime of the
app. Built in the FastAPI lifespan and injected into routes through
get_population_service(); there is no module-level instance, so tests
build their own with fake sources.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request

from crowdpulse.core.errors import TransportError
from crowdpulse.core.store import SnapshotStore
from crowdpulse.models.population import (
    AggregateStatistics,
    PopulationFilters,
    PopulationRecord,
    PopulationResponse,
    RegionView,
)
from crowdpulse.services.live_feed import LiveFeed
from crowdpulse.services.population_stats import (
    compute_intensities,
    get_change_description,
    get_flame_level,
    get_region_color,
    is_hotspot,
    rank_hotspots,
)
from crowdpulse.services.query_cache import PopulationObserver, QueryClient, QueryState
from crowdpulse.services.region_details import RegionDetailsFetcher
from crowdpulse.services.sources import (
    MongoRegionStore,
    MongoSnapshotSource,
    RegionStore,
    SnapshotSource,
)

logger = logging.getLogger(__name__)


class PopulationService:
    def __init__(
        self,
        source: Optional[SnapshotSource] = None,
        region_store: Optional[RegionStore] = None,
        *,
        store: Optional[SnapshotStore] = None,
        client: Optional[QueryClient] = None,
        details: Optional[RegionDetailsFetcher] = None,
    ):
        self.store = store or SnapshotStore()
        self.feed = client.feed if client is not None else LiveFeed(source or MongoSnapshotSource())
        self.client = client or QueryClient(self.feed)
        self.details = details or RegionDetailsFetcher(region_store or MongoRegionStore())
        self._default: PopulationObserver = self.client.observe(PopulationFilters(), store=self.store)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        state = await self._default.start()
        if state.is_error:
            logger.warning("Initial population load failed: %s", state.error)
        else:
            logger.info("Population feed started (%d regions)", len(state.data))

    async def stop(self) -> None:
        await self._default.close()
        await self.feed.aclose()
        self.client.clear()
        logger.info("Population feed stopped")

    # ── Queries ──────────────────────────────────────────────────────────────

    def _is_default(self, filters: PopulationFilters) -> bool:
        return self._default.is_active and filters.cache_key() == self._default.filters.cache_key()

    async def query(self, filters: Optional[PopulationFilters] = None) -> QueryState:
        """Current view for `filters`, fetching only when the cache is stale."""
        filters = filters or PopulationFilters()
        if self._is_default(filters):
            return self._default.state()
        try:
            await self.client.fetch(filters)
        except TransportError:
            pass  # recorded on the entry; surfaced through state().error
        return self.client.state(filters)

    async def refresh(self, filters: Optional[PopulationFilters] = None) -> QueryState:
        """Force a refetch, bypassing the staleness window."""
        filters = filters or PopulationFilters()
        if self._is_default(filters):
            return await self._default.refresh()
        try:
            await self.client.fetch(filters, force=True)
        except TransportError:
            pass
        return self.client.state(filters)


def build_region_views(records: list[PopulationRecord]) -> list[RegionView]:
    """Decorate records with colour, description, heat weight and hotspot flag."""
    intensities = compute_intensities(records)
    views = []
    for record in records:
        hot = is_hotspot(record)
        views.append(RegionView(
            record=record,
            color=get_region_color(record.population),
            description=get_change_description(record.population.change_rate),
            intensity=intensities.get(record.id, 0.0),
            is_hotspot=hot,
            flame_level=get_flame_level(record.population.change_rate) if hot else 0,
        ))
    return views


def to_response(state: QueryState) -> PopulationResponse:
    return PopulationResponse(
        regions=build_region_views(state.data),
        statistics=state.statistics or AggregateStatistics(),
        hotspots=[r.id for r in rank_hotspots(state.hotspots)],
        last_updated=state.last_updated,
        is_loading=state.is_loading,
        error=state.error,
    )


def get_population_service(request: Request) -> PopulationService:
    """FastAPI dependency — the service built in the app lifespan."""
    return request.app.state.population
