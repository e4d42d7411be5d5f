"""
query_cache.py — Cached, pull-based view over the live population feed.

QueryClient owns one cache entry per filter signature
(PopulationFilters.cache_key()) and gives consumers:

  • de-duplication    — concurrent fetches for one key share a single task
  • staleness window  — data younger than refresh_interval is served as-is
  • retry             — 3 retries, delay = min(1000 * 2**attempt, 30000) ms
  • stale-while-error — a failed fetch records the error, keeps the data
  • retention         — entries nobody observes are dropped after cache_time
                        (2 × refresh_interval)

PopulationObserver is the "mounted consumer": it loads once, refetches every
refresh_interval, keeps a live subscription open once data exists, and
exposes state() / refresh(). It is also the only writer of the
SnapshotStore.

    client   = QueryClient(feed)
    observer = client.observe(PopulationFilters(status="critical"))
    await observer.start()
    state = observer.state()        # data, is_loading, is_error, error, ...
    state = await observer.refresh()
    await observer.close()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from crowdpulse.core.config import settings
from crowdpulse.core.errors import TransportError
from crowdpulse.core.store import SnapshotStore
from crowdpulse.models.population import (
    AggregateStatistics,
    PopulationFilters,
    PopulationRecord,
    Snapshot,
)
from crowdpulse.services.live_feed import LiveFeed, Unsubscribe
from crowdpulse.services.population_stats import calculate_statistics, get_hotspots

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
_RETRY_BASE_MS = 1000
_RETRY_CAP_MS = 30_000

Sleep = Callable[[float], Awaitable[None]]


def retry_delay_ms(attempt: int) -> int:
    """Backoff before retry number `attempt` (0-based): 1000, 2000, 4000, ... capped at 30 s."""
    return min(_RETRY_BASE_MS * 2 ** attempt, _RETRY_CAP_MS)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class QueryState:
    """What presentation code sees for one observed filter set."""

    data: list[PopulationRecord] = field(default_factory=list)
    is_loading: bool = False
    is_error: bool = False
    error: Optional[str] = None
    is_refetching: bool = False
    last_updated: Optional[datetime] = None
    statistics: Optional[AggregateStatistics] = None
    hotspots: list[PopulationRecord] = field(default_factory=list)


class _Entry:
    def __init__(self, filters: PopulationFilters):
        self.key = filters.cache_key()
        self.filters = filters
        self.snapshot: Optional[Snapshot] = None
        self.error: Optional[str] = None
        self.updated_at: Optional[float] = None       # clock() at last success
        self.received_at: Optional[datetime] = None   # wall time at last success
        self.inflight: Optional[asyncio.Task] = None
        self.failure_count = 0
        self.observers = 0
        self.gc_handle: Optional[asyncio.TimerHandle] = None


class QueryClient:
    def __init__(
        self,
        feed: LiveFeed,
        refresh_interval_ms: int = settings.refresh_interval_ms,
        retries: int = MAX_RETRIES,
        retry_sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.feed = feed
        self.refresh_interval_ms = refresh_interval_ms
        self.cache_time_ms = refresh_interval_ms * 2
        self._retries = retries
        self._retry_sleep = retry_sleep
        self._clock = clock
        self._now = now
        self._entries: dict[str, _Entry] = {}

    # ── Cache entries ────────────────────────────────────────────────────────

    def _entry(self, filters: PopulationFilters) -> _Entry:
        key = filters.cache_key()
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(filters)
            self._entries[key] = entry
            self._schedule_gc(entry)
        return entry

    def peek(self, filters: Optional[PopulationFilters] = None) -> Optional[_Entry]:
        return self._entries.get((filters or PopulationFilters()).cache_key())

    def has_entry(self, filters: Optional[PopulationFilters] = None) -> bool:
        return self.peek(filters) is not None

    def remove(self, filters: Optional[PopulationFilters] = None) -> None:
        """Drop an entry. An in-flight fetch for it will not write it back."""
        entry = self._entries.pop((filters or PopulationFilters()).cache_key(), None)
        if entry is not None and entry.gc_handle is not None:
            entry.gc_handle.cancel()

    def _is_current(self, entry: _Entry) -> bool:
        return self._entries.get(entry.key) is entry

    def is_stale(self, entry: _Entry) -> bool:
        if entry.snapshot is None or entry.updated_at is None:
            return True
        age_ms = (self._clock() - entry.updated_at) * 1000
        return age_ms >= self.refresh_interval_ms

    # ── Fetching ─────────────────────────────────────────────────────────────

    async def fetch(
        self,
        filters: Optional[PopulationFilters] = None,
        *,
        force: bool = False,
    ) -> Snapshot:
        """
        Return the snapshot for `filters`, fetching only when the cached
        value is stale (or `force` is set). Raises TransportError once all
        retries have failed; the entry keeps its previous data.
        """
        entry = self._entry(filters or PopulationFilters())
        if not force and not self.is_stale(entry):
            return entry.snapshot

        if entry.inflight is None or entry.inflight.done():
            entry.inflight = asyncio.get_running_loop().create_task(self._fetch_with_retry(entry))
        else:
            logger.debug("Joining in-flight population fetch (filters=%s)", entry.key)
        return await asyncio.shield(entry.inflight)

    async def _fetch_with_retry(self, entry: _Entry) -> Snapshot:
        attempt = 0
        while True:
            try:
                snapshot = await self.feed.fetch_latest(entry.filters)
            except TransportError as exc:
                entry.failure_count += 1
                if attempt >= self._retries:
                    self._record_failure(entry, exc)
                    raise
                delay = retry_delay_ms(attempt)
                logger.info(
                    "Population fetch failed (attempt %d, filters=%s); retrying in %d ms: %s",
                    attempt + 1, entry.key, delay, exc,
                )
                await self._retry_sleep(delay / 1000)
                attempt += 1
                continue

            self.record_success(entry, snapshot)
            return snapshot

    def record_success(self, entry: _Entry, snapshot: Snapshot) -> bool:
        """Store a snapshot in its entry. Returns False if the entry is gone."""
        if not self._is_current(entry):
            logger.debug("Discarding population result for removed entry %s", entry.key)
            return False
        entry.snapshot = snapshot
        entry.error = None
        entry.failure_count = 0
        entry.updated_at = self._clock()
        entry.received_at = self._now()
        self._schedule_gc(entry)
        return True

    def _record_failure(self, entry: _Entry, error: TransportError) -> None:
        if not self._is_current(entry):
            return
        entry.error = str(error)
        logger.error("Population data fetch error (filters=%s): %s", entry.key, error)

    # ── Observers ────────────────────────────────────────────────────────────

    def observe(
        self,
        filters: Optional[PopulationFilters] = None,
        *,
        enabled: bool = True,
        store: Optional[SnapshotStore] = None,
    ) -> "PopulationObserver":
        return PopulationObserver(self, filters or PopulationFilters(), enabled=enabled, store=store)

    def _attach(self, filters: PopulationFilters) -> _Entry:
        entry = self._entry(filters)
        entry.observers += 1
        if entry.gc_handle is not None:
            entry.gc_handle.cancel()
            entry.gc_handle = None
        return entry

    def _detach(self, entry: _Entry) -> None:
        entry.observers = max(0, entry.observers - 1)
        self._schedule_gc(entry)

    def _schedule_gc(self, entry: _Entry) -> None:
        """(Re)start the retention timer of an entry nobody observes."""
        if entry.observers or not self._is_current(entry):
            return
        if entry.gc_handle is not None:
            entry.gc_handle.cancel()
        loop = asyncio.get_running_loop()
        entry.gc_handle = loop.call_later(self.cache_time_ms / 1000, self._collect, entry)

    def _collect(self, entry: _Entry) -> None:
        entry.gc_handle = None
        if entry.observers == 0 and self._is_current(entry):
            logger.debug("Evicting unobserved population entry %s", entry.key)
            del self._entries[entry.key]

    def clear(self) -> None:
        """Drop every entry and cancel fetches still retrying."""
        for entry in self._entries.values():
            if entry.gc_handle is not None:
                entry.gc_handle.cancel()
            if entry.inflight is not None and not entry.inflight.done():
                entry.inflight.cancel()
        self._entries.clear()

    # ── Read side ────────────────────────────────────────────────────────────

    def state(
        self,
        filters: Optional[PopulationFilters] = None,
        *,
        enabled: bool = True,
        is_refetching: bool = False,
    ) -> QueryState:
        """Consumer view of one entry; derived values are recomputed per call."""
        entry = self.peek(filters)
        snapshot = entry.snapshot if entry is not None else None
        error = entry.error if entry is not None else None
        records = list(snapshot.records) if snapshot is not None else []

        return QueryState(
            data=records,
            is_loading=enabled and snapshot is None and error is None,
            is_error=error is not None,
            error=error,
            is_refetching=is_refetching,
            last_updated=entry.received_at if entry is not None else None,
            statistics=calculate_statistics(records) if snapshot is not None else None,
            hotspots=get_hotspots(records) if snapshot is not None else [],
        )


class PopulationObserver:
    """A mounted consumer of one filter set."""

    def __init__(
        self,
        client: QueryClient,
        filters: PopulationFilters,
        *,
        enabled: bool = True,
        store: Optional[SnapshotStore] = None,
    ):
        self._client = client
        self.filters = filters
        self.enabled = enabled
        self._store = store
        self._entry: Optional[_Entry] = None
        self._active = False
        self._refetches = 0          # forced loads currently running
        self._poll_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        # Bumped on every (re)subscribe so callbacks from a replaced
        # subscription can tell they are no longer the active one.
        self._generation = 0

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> QueryState:
        """Mount: load (cache first), then keep the view live."""
        if not self.enabled or self._active:
            return self.state()

        self._active = True
        self._entry = self._client._attach(self.filters)
        if self._store is not None:
            self._store.set_loading(True)

        await self._load(force=False)
        if self._store is not None:
            self._store.set_loading(False)

        if self._active:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll())
        return self.state()

    async def close(self) -> None:
        """Unmount: stop polling and the live subscription. Idempotent."""
        if not self._active:
            return
        self._active = False
        self._generation += 1
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._entry is not None:
            self._client._detach(self._entry)

    async def refresh(self) -> QueryState:
        """Refetch now, ignoring the staleness window."""
        await self._load(force=True)
        return self.state()

    # ── Internals ────────────────────────────────────────────────────────────

    async def _load(self, *, force: bool) -> None:
        if force:
            self._refetches += 1
        try:
            snapshot = await self._client.fetch(self.filters, force=force)
        except TransportError as exc:
            if self._active and self._store is not None:
                self._store.set_error(str(exc))
            return
        finally:
            if force:
                self._refetches -= 1

        if not self._active:
            return
        self._publish(snapshot)
        self._ensure_live()

    async def _poll(self) -> None:
        interval = self._client.refresh_interval_ms / 1000
        while self._active:
            await asyncio.sleep(interval)
            logger.debug("Interval refetch (filters=%s)", self.filters.cache_key())
            await self._load(force=True)

    def _ensure_live(self) -> None:
        if self._unsubscribe is not None or not self._active:
            return
        self._generation += 1
        generation = self._generation

        def on_data(snapshot: Snapshot) -> None:
            if not self._active or generation != self._generation:
                return
            if self._entry is not None and self._client.record_success(self._entry, snapshot):
                self._publish(snapshot)

        def on_error(error: TransportError) -> None:
            if not self._active or generation != self._generation:
                return
            logger.warning("Real-time population subscription error: %s", error)
            # The channel is closed; the next successful poll re-subscribes.
            self._unsubscribe = None
            if self._entry is not None and self._client._is_current(self._entry):
                self._entry.error = str(error)
            if self._store is not None:
                self._store.set_error(str(error))

        self._unsubscribe = self._client.feed.subscribe(self.filters, on_data, on_error)

    def _publish(self, snapshot: Snapshot) -> None:
        if self._store is not None:
            self._store.set(snapshot)

    # ── Read side ────────────────────────────────────────────────────────────

    @property
    def is_active(self) -> bool:
        return self._active

    def state(self) -> QueryState:
        return self._client.state(
            self.filters, enabled=self.enabled, is_refetching=self._refetches > 0
        )
