"""
region_details.py — On-demand region detail lookups.

Independent of the live feed: a region's extended document (baseline
stats, nearby places, hourly and weekly series) is fetched only when the
region is selected, then cached.

Policy
──────
  stale after      30 min   (settings.region_stale_ms)
  evicted after    60 min   (settings.region_cache_ms)
  retries          2, fixed 1 s delay — no backoff, unlike the live feed
  disabled         when region_id is None/empty: returns None, no fetch

A missing region resolves to RegionLookup(status="not_found"); only
backend failures raise (TransportError, after retries).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from crowdpulse.core.config import settings
from crowdpulse.core.errors import TransportError
from crowdpulse.models.population import HistoricalDay, RegionDetails, RegionLookup
from crowdpulse.services.sources import RegionStore

logger = logging.getLogger(__name__)

REGION_RETRIES = 2
REGION_RETRY_DELAY_MS = 1000

_CacheKey = tuple[str, bool]


class _CachedLookup:
    __slots__ = ("value", "fetched_at")

    def __init__(self, value: RegionLookup, fetched_at: float):
        self.value = value
        self.fetched_at = fetched_at


class RegionDetailsFetcher:
    def __init__(
        self,
        store: RegionStore,
        stale_ms: int = settings.region_stale_ms,
        cache_ms: int = settings.region_cache_ms,
        history_days: int = settings.history_days,
        retries: int = REGION_RETRIES,
        retry_delay_ms: int = REGION_RETRY_DELAY_MS,
        retry_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._stale_ms = stale_ms
        self._cache_ms = cache_ms
        self._history_days = history_days
        self._retries = retries
        self._retry_delay_ms = retry_delay_ms
        self._retry_sleep = retry_sleep
        self._clock = clock
        self._cache: dict[_CacheKey, _CachedLookup] = {}
        self._inflight: dict[_CacheKey, asyncio.Task] = {}

    def _age_ms(self, cached: _CachedLookup) -> float:
        return (self._clock() - cached.fetched_at) * 1000

    def _evict_expired(self) -> None:
        expired = [k for k, v in self._cache.items() if self._age_ms(v) >= self._cache_ms]
        for key in expired:
            del self._cache[key]

    def cached(self, region_id: str, include_historical: bool = False) -> Optional[RegionLookup]:
        """Cached lookup if still retained (fresh or stale), without fetching."""
        self._evict_expired()
        cached = self._cache.get((region_id, include_historical))
        return cached.value if cached is not None else None

    async def get(
        self,
        region_id: Optional[str],
        *,
        include_historical: bool = False,
        force: bool = False,
    ) -> Optional[RegionLookup]:
        if not region_id:
            return None

        key = (region_id, include_historical)
        self._evict_expired()
        cached = self._cache.get(key)
        if cached is not None and not force and self._age_ms(cached) < self._stale_ms:
            return cached.value

        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._fetch_with_retry(key))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._drop_inflight(k, t))
        return await asyncio.shield(task)

    def _drop_inflight(self, key: _CacheKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _fetch_with_retry(self, key: _CacheKey) -> RegionLookup:
        region_id, include_historical = key
        attempt = 0
        while True:
            try:
                lookup = await self._fetch_once(region_id, include_historical)
            except TransportError as exc:
                if attempt >= self._retries:
                    logger.error("Region details fetch failed for %s: %s", region_id, exc)
                    raise
                attempt += 1
                logger.info("Region details fetch failed for %s (attempt %d), retrying", region_id, attempt)
                await self._retry_sleep(self._retry_delay_ms / 1000)
                continue

            self._cache[key] = _CachedLookup(lookup, self._clock())
            return lookup

    async def _fetch_once(self, region_id: str, include_historical: bool) -> RegionLookup:
        try:
            doc = await self._store.get_region(region_id)
            history_docs = []
            if doc is not None and include_historical:
                history_docs = await self._store.get_history(region_id, self._history_days)
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError("Failed to fetch region details", cause=exc) from exc

        if doc is None:
            logger.info("Region %s not found", region_id)
            return RegionLookup(status="not_found", region_id=region_id)

        history = []
        for raw in history_docs:
            try:
                history.append(HistoricalDay.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping malformed history day for %s: %s", region_id, exc.error_count())

        try:
            region = RegionDetails.model_validate({**doc, "history": history})
        except ValidationError as exc:
            raise TransportError(f"Malformed region document for {region_id}", cause=exc) from exc

        return RegionLookup(status="found", region_id=region_id, region=region)
