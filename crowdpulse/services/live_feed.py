"""
live_feed.py — Live population feed adapter.

Turns the snapshot push source (MongoDB change stream) into filtered
Snapshot callbacks:

    feed = LiveFeed(MongoSnapshotSource())
    unsubscribe = feed.subscribe(filters, on_data, on_error)
    ...
    unsubscribe()        # idempotent; no callback fires after this returns

    snapshot = await feed.fetch_latest(filters)   # one-shot read, same filters

HOW THE DATA FLOWS
──────────────────
1. One background task ("channel") per distinct filter signature reads the
   source. A second subscriber with the same filters joins the existing
   channel and immediately receives the channel's last snapshot.
2. Each pushed document is normalised: the `regions` mapping becomes a list
   of PopulationRecord, timestamps become UTC datetimes, malformed entries
   are skipped with a warning.
3. Filters run in order allow-list → min_population → status. They are
   conjunctive and every missing filter is a no-op.
4. An empty collection is delivered as an empty snapshot, not an error.
5. A transport failure is reported once to every listener as a
   TransportError and closes the channel. The feed never retries; retry
   belongs to the query layer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from crowdpulse.core.errors import TransportError
from crowdpulse.models.population import PopulationFilters, PopulationRecord, Snapshot
from crowdpulse.services.sources import SnapshotSource

logger = logging.getLogger(__name__)

DataCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[TransportError], None]
Unsubscribe = Callable[[], None]


# ── Normalisation + filtering (pure) ──────────────────────────────────────────

def _iter_region_entries(regions: Any) -> Iterable[tuple[Optional[str], Any]]:
    if isinstance(regions, dict):
        return regions.items()
    if isinstance(regions, list):
        return ((None, entry) for entry in regions)
    return ()


def normalize_document(document: Optional[dict[str, Any]]) -> Snapshot:
    """
    Convert one population_data document into a Snapshot.

    Records are keyed by id; if an id appears twice the later entry wins.
    """
    if not document:
        return Snapshot()

    by_id: dict[str, PopulationRecord] = {}
    for key, raw in _iter_region_entries(document.get("regions")):
        if not isinstance(raw, dict):
            logger.warning("Skipping region %s: not a mapping", key)
            continue
        if key is not None and "id" not in raw:
            raw = {**raw, "id": key}
        try:
            record = PopulationRecord.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Skipping malformed region %s: %s", key or raw.get("id"), exc.error_count())
            continue
        by_id[record.id] = record

    return Snapshot(records=list(by_id.values()), captured_at=document.get("timestamp"))


def apply_filters(
    records: Iterable[PopulationRecord],
    filters: Optional[PopulationFilters],
) -> list[PopulationRecord]:
    """Apply allow-list, then population floor, then status match."""
    result = list(records)
    if filters is None:
        return result

    if filters.region_ids:
        allowed = set(filters.region_ids)
        result = [r for r in result if r.id in allowed]

    if filters.min_population is not None:
        result = [r for r in result if r.population.current >= filters.min_population]

    if filters.status:
        result = [r for r in result if r.population.status == filters.status]

    return result


# ── Subscription plumbing ─────────────────────────────────────────────────────

class _Listener:
    __slots__ = ("on_data", "on_error", "active")

    def __init__(self, on_data: DataCallback, on_error: ErrorCallback):
        self.on_data = on_data
        self.on_error = on_error
        self.active = True


class _Channel:
    """One source task shared by every listener with the same filters."""

    def __init__(self, key: str, filters: PopulationFilters):
        self.key = key
        self.filters = filters
        self.listeners: list[_Listener] = []
        self.task: Optional[asyncio.Task] = None
        self.last: Optional[Snapshot] = None


class LiveFeed:
    def __init__(self, source: SnapshotSource):
        self._source = source
        self._channels: dict[str, _Channel] = {}

    @property
    def active_channels(self) -> int:
        return len(self._channels)

    async def fetch_latest(self, filters: Optional[PopulationFilters] = None) -> Snapshot:
        """
        One-shot read of the newest snapshot through the same normalise +
        filter path as pushed documents. Raises TransportError on failure.
        """
        try:
            document = await self._source.latest()
        except TransportError:
            raise
        except Exception as exc:
            logger.warning("Population snapshot fetch failed: %s", exc)
            raise TransportError("Failed to fetch population data", cause=exc) from exc

        raw = normalize_document(document)
        return Snapshot(records=apply_filters(raw.records, filters), captured_at=raw.captured_at)

    def subscribe(
        self,
        filters: Optional[PopulationFilters],
        on_data: DataCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        """
        Start receiving filtered snapshots. Returns an idempotent
        unsubscribe function.
        """
        filters = filters or PopulationFilters()
        listener = _Listener(on_data, on_error)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("Population feed subscribe() called outside an event loop")
            on_error(TransportError("Failed to initialize population data subscription"))
            return lambda: None

        key = filters.cache_key()
        channel = self._channels.get(key)
        if channel is None:
            channel = _Channel(key, filters)
            self._channels[key] = channel
            channel.listeners.append(listener)
            channel.task = loop.create_task(self._run(channel))
        else:
            channel.listeners.append(listener)
            if channel.last is not None:
                loop.call_soon(self._deliver, listener, channel.last)

        def unsubscribe() -> None:
            if not listener.active:
                return
            listener.active = False
            if listener in channel.listeners:
                channel.listeners.remove(listener)
            if not channel.listeners:
                self._close(channel)

        return unsubscribe

    async def _run(self, channel: _Channel) -> None:
        try:
            async for document in self._source.stream():
                raw = normalize_document(document)
                snapshot = Snapshot(
                    records=apply_filters(raw.records, channel.filters),
                    captured_at=raw.captured_at,
                )
                channel.last = snapshot
                for listener in list(channel.listeners):
                    self._deliver(listener, snapshot)
            raise TransportError("Population feed closed unexpectedly")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc if isinstance(exc, TransportError) else TransportError(
                "Failed to fetch population data", cause=exc
            )
            logger.warning("Population feed error (filters=%s): %s", channel.key, exc)
            self._fail(channel, error)

    @staticmethod
    def _deliver(listener: _Listener, snapshot: Snapshot) -> None:
        if not listener.active:
            return
        try:
            listener.on_data(snapshot)
        except Exception:
            logger.exception("Population feed listener raised")

    def _fail(self, channel: _Channel, error: TransportError) -> None:
        if self._channels.get(channel.key) is channel:
            del self._channels[channel.key]
        listeners, channel.listeners = channel.listeners, []
        for listener in listeners:
            if not listener.active:
                continue
            listener.active = False
            try:
                listener.on_error(error)
            except Exception:
                logger.exception("Population feed error listener raised")

    def _close(self, channel: _Channel) -> None:
        if self._channels.get(channel.key) is channel:
            del self._channels[channel.key]
        if channel.task is not None and not channel.task.done():
            channel.task.cancel()

    async def aclose(self) -> None:
        """Cancel every channel (app shutdown)."""
        channels = list(self._channels.values())
        for channel in channels:
            for listener in channel.listeners:
                listener.active = False
            channel.listeners = []
            self._close(channel)
        tasks = [c.task for c in channels if c.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
