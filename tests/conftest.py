"""
pytest configuration and shared fixtures for the CrowdPulse tests.

Key concern: tests must not require a live MongoDB or a change stream.
We achieve this by:
  1. Patching connect_to_mongo / close_mongo_connection to no-ops so
     FastAPI's lifespan doesn't try to reach a real database.
  2. Setting db_client.client = None (disconnected) so the health check
     reports "disconnected", a valid test-mode state.
  3. Building PopulationService from in-memory fakes (FakeSnapshotSource,
     FakeRegionStore) and attaching it to app.state.population.

FakeSnapshotSource mimics the Mongo snapshot source: latest() returns the
newest document pushed so far, stream() yields it immediately and then
every document passed to push().
"""

import asyncio
import os
from datetime import datetime, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")

_END = object()


# ── Fakes ─────────────────────────────────────────────────────────────────────

class FakeSnapshotSource:
    """In-memory snapshot source with scripted failures."""

    def __init__(self, documents: Optional[list[dict[str, Any]]] = None):
        self.documents = list(documents or [])
        self.latest_calls = 0
        self.stream_calls = 0
        self.fail_next = 0          # number of upcoming latest() calls that raise
        self.gate: Optional[asyncio.Event] = None   # when set, latest() waits on it
        self._queues: list[asyncio.Queue] = []

    def _current(self) -> Optional[dict[str, Any]]:
        return self.documents[-1] if self.documents else None

    async def latest(self) -> Optional[dict[str, Any]]:
        self.latest_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("connection reset by peer")
        return self._current()

    async def stream(self):
        self.stream_calls += 1
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            yield self._current()
            while True:
                item = await queue.get()
                if item is _END:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self._queues.remove(queue)

    # ── test controls ────────────────────────────────────────────────────────

    @property
    def open_streams(self) -> int:
        return len(self._queues)

    def push(self, document: dict[str, Any]) -> None:
        self.documents.append(document)
        for queue in list(self._queues):
            queue.put_nowait(document)

    def break_streams(self, exc: Exception) -> None:
        for queue in list(self._queues):
            queue.put_nowait(exc)

    def end_streams(self) -> None:
        for queue in list(self._queues):
            queue.put_nowait(_END)


class FakeRegionStore:
    """In-memory regions + historical_data collections."""

    def __init__(self, regions: Optional[dict[str, dict]] = None, history: Optional[dict[str, list]] = None):
        self.regions = dict(regions or {})
        self.history = dict(history or {})
        self.region_calls = 0
        self.history_calls = 0
        self.fail_next = 0

    async def get_region(self, region_id: str) -> Optional[dict[str, Any]]:
        self.region_calls += 1
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("server selection timeout")
        doc = self.regions.get(region_id)
        return dict(doc) if doc is not None else None

    async def get_history(self, region_id: str, days: int) -> list[dict[str, Any]]:
        self.history_calls += 1
        return list(self.history.get(region_id, []))[:days]


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


async def settle(rounds: int = 5) -> None:
    """Let background tasks (feed channels, call_soon deliveries) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ── Document factories ────────────────────────────────────────────────────────

def region_doc(
    region_id: str,
    current: int = 1000,
    *,
    baseline: int = 1000,
    change_rate: float = 0.0,
    status: str = "normal",
    name: Optional[str] = None,
    lat: float = 37.5,
    lng: float = 127.0,
    category: str = "commercial",
) -> dict[str, Any]:
    """One region entry as the collector writes it (camelCase)."""
    return {
        "id": region_id,
        "name": name or region_id.title(),
        "coordinates": {"lat": lat, "lng": lng},
        "population": {
            "current": current,
            "baseline": baseline,
            "changeRate": change_rate,
            "status": status,
            "confidence": 0.9,
        },
        "metadata": {
            "category": category,
            "lastUpdated": datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc),
            "dataQuality": "good",
        },
    }


def snapshot_doc(*regions: dict[str, Any], timestamp: Optional[datetime] = None) -> dict[str, Any]:
    """A population_data document keyed by region id."""
    return {
        "timestamp": timestamp or datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc),
        "dataSource": "test",
        "totalRegions": len(regions),
        "regions": {r["id"]: r for r in regions},
    }


def detail_doc(region_id: str, **overrides) -> dict[str, Any]:
    """An extended regions-collection document."""
    doc = {
        "_id": region_id,
        "id": region_id,
        "name": region_id.title(),
        "nameEng": region_id.title(),
        "description": "Test district",
        "coordinates": {"lat": 37.5, "lng": 127.0},
        "category": "commercial",
        "baselineStats": {
            "averagePopulation": 1000,
            "peakHours": [18, 19],
            "quietHours": [4],
            "weekdayMultiplier": 1.1,
            "weekendMultiplier": 0.8,
        },
        "nearbyPlaces": [
            {"name": "Station", "type": "subway", "distance": 120,
             "coordinates": {"lat": 37.501, "lng": 127.001}},
        ],
        "metadata": {"createdAt": "2026-01-01T00:00:00Z", "version": "1", "priority": 3},
        "population": {
            "current": 1200,
            "baseline": 1000,
            "changeRate": 0.2,
            "status": "normal",
            "confidence": 0.8,
            "hourlyData": [
                {"hour": 9, "population": 800},
                {"hour": 18, "population": 2400},
            ],
            "weeklyTrend": [{"day": "Mon", "avgPopulation": 1100, "peakHour": 18, "quietHour": 4}],
        },
    }
    doc.update(overrides)
    return doc


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
async def mock_db():
    """
    Patch the MongoDB lifecycle for every test.

    - connect_to_mongo → no-op AsyncMock
    - close_mongo_connection → no-op AsyncMock
    - db_client.client / db_client.db → None
    """
    with (
        patch("crowdpulse.core.database.connect_to_mongo", new_callable=AsyncMock),
        patch("crowdpulse.core.database.close_mongo_connection", new_callable=AsyncMock),
    ):
        import crowdpulse.core.database as db_module

        original_client = db_module.db_client.client
        original_db = db_module.db_client.db

        db_module.db_client.client = None
        db_module.db_client.db = None

        yield

        db_module.db_client.client = original_client
        db_module.db_client.db = original_db


@pytest.fixture()
def source():
    return FakeSnapshotSource([
        snapshot_doc(
            region_doc("a", 100, baseline=100, status="low"),
            region_doc("b", 500, baseline=310, change_rate=0.6, status="critical"),
        )
    ])


@pytest.fixture()
def region_store():
    return FakeRegionStore(
        regions={"gangnam": detail_doc("gangnam")},
        history={"gangnam": [
            {"regionId": "gangnam", "date": "2026-10-16",
             "hourlyData": [{"hour": 18, "population": 2300}],
             "dailySummary": {"minPopulation": 200, "maxPopulation": 2300, "peakHour": 18}},
            {"regionId": "gangnam"},   # malformed: no date
        ]},
    )


@pytest.fixture()
async def service(source, region_store):
    """A started PopulationService over the fakes, stopped after the test."""
    from crowdpulse.services.population import PopulationService

    svc = PopulationService(source, region_store)
    await svc.start()
    await settle()
    yield svc
    await svc.stop()


@pytest.fixture()
async def client(mock_db, service):  # noqa: ARG001 (mock_db must run first)
    """
    HTTPX async test client wired to the FastAPI app, with the fake-backed
    service attached where the lifespan would put it.
    """
    from crowdpulse.core.rate_limit import limiter
    from crowdpulse.main import app

    limiter._limiter.storage.reset()
    app.state.population = service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    del app.state.population
