"""
sources.py — MongoDB-backed data sources for the population core.

Two collaborators live here, both thin wrappers over Motor:

  MongoSnapshotSource — the snapshot push source. stream() yields the latest
                        population_data document immediately, then again
                        every time the collection changes (Motor change
                        stream). Yields None while the collection is empty.
  MongoRegionStore    — point lookups in the regions / historical_data
                        collections for the region detail panel.

Neither class retries or swallows errors: transport failures propagate to
the live feed / region fetcher, which own the error and retry policy.

The database handle is resolved on every call through `db_provider`
(get_db by default) because the connection is only opened in the app
lifespan, after these objects are built.

MONGO CHEAT SHEET
──────────────────
  # Latest snapshot (uses the timestamp index created by the seeder):
  db.population_data.find().sort({timestamp: -1}).limit(1)

  # Change streams need a replica set (Atlas, or local mongod --replSet rs0).
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable, Optional, Protocol

from motor.motor_asyncio import AsyncIOMotorDatabase

from crowdpulse.core.config import settings
from crowdpulse.core.database import get_db
from crowdpulse.core.errors import SourceUnavailableError

logger = logging.getLogger(__name__)

DbProvider = Callable[[], Optional[AsyncIOMotorDatabase]]

# Only operations that can change which document is "latest".
_WATCH_PIPELINE = [
    {"$match": {"operationType": {"$in": ["insert", "replace", "update", "delete"]}}},
]


class SnapshotSource(Protocol):
    """Anything that can push population_data documents."""

    async def latest(self) -> Optional[dict[str, Any]]:
        ...

    def stream(self) -> AsyncIterator[Optional[dict[str, Any]]]:
        ...


class RegionStore(Protocol):
    """Point lookups for region detail documents."""

    async def get_region(self, region_id: str) -> Optional[dict[str, Any]]:
        ...

    async def get_history(self, region_id: str, days: int) -> list[dict[str, Any]]:
        ...


def _require_db(db_provider: DbProvider) -> AsyncIOMotorDatabase:
    db = db_provider()
    if db is None:
        raise SourceUnavailableError("Database unavailable")
    return db


class MongoSnapshotSource:
    def __init__(
        self,
        db_provider: DbProvider = get_db,
        collection: str = settings.population_collection,
    ):
        self._db_provider = db_provider
        self._collection = collection

    async def latest(self) -> Optional[dict[str, Any]]:
        """The newest snapshot document by timestamp, or None."""
        db = _require_db(self._db_provider)
        cursor = db[self._collection].find({}).sort("timestamp", -1).limit(1)
        docs = await cursor.to_list(length=1)
        return docs[0] if docs else None

    async def stream(self) -> AsyncIterator[Optional[dict[str, Any]]]:
        yield await self.latest()

        db = _require_db(self._db_provider)
        async with db[self._collection].watch(pipeline=_WATCH_PIPELINE) as changes:
            async for change in changes:
                logger.debug("population_data change: %s", change.get("operationType"))
                # An insert is not necessarily the newest by timestamp
                # (late writers), so always re-read the latest document.
                yield await self.latest()


class MongoRegionStore:
    def __init__(
        self,
        db_provider: DbProvider = get_db,
        regions: str = settings.regions_collection,
        history: str = settings.history_collection,
    ):
        self._db_provider = db_provider
        self._regions = regions
        self._history = history

    async def get_region(self, region_id: str) -> Optional[dict[str, Any]]:
        db = _require_db(self._db_provider)
        doc = await db[self._regions].find_one({"_id": region_id})
        if doc is not None:
            doc.setdefault("id", doc["_id"])
        return doc

    async def get_history(self, region_id: str, days: int) -> list[dict[str, Any]]:
        db = _require_db(self._db_provider)
        cursor = (
            db[self._history]
            .find({"regionId": region_id})
            .sort("date", -1)
            .limit(days)
        )
        return await cursor.to_list(length=days)
