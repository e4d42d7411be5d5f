"""
database.py — Motor client for the population collections.

One DatabaseClient per process, opened in the app lifespan and closed on
shutdown. The snapshot source and region store resolve the database
through get_db() on every call, so a Mongo that was down at startup
simply surfaces as SourceUnavailableError in the feed instead of an
import-time failure.

The live feed relies on change streams, which MongoDB only offers on a
replica set (Atlas, or a local mongod started with --replSet rs0).
connect_to_mongo() logs a warning when the server is standalone; the
feed then still works through the interval refetch.
"""

import logging
import re
from typing import Optional

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from crowdpulse.core.config import settings

logger = logging.getLogger(__name__)


class DatabaseClient:
    """Motor client + selected database; both None while disconnected."""

    client: Optional[AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None


db_client = DatabaseClient()


async def connect_to_mongo() -> None:
    """
    Open the client, ping it, and check change-stream support.

    Never raises: on failure the API starts anyway with db_client unset,
    /health reports "disconnected" and the feed reports a transport error.
    """
    logger.info("Connecting to MongoDB at %s", _redact_uri(settings.mongo_uri))
    try:
        db_client.client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            tlsCAFile=certifi.where(),
            tz_aware=True,      # snapshot timestamps come back as UTC datetimes
        )
        db_client.db = db_client.client[settings.mongo_db_name]
        hello = await db_client.client.admin.command("hello")
    except Exception as exc:
        logger.warning("MongoDB unavailable at startup: %s. Population feed will report errors.", exc)
        db_client.client = None
        db_client.db = None
        return

    logger.info("MongoDB connection established (db: %s)", settings.mongo_db_name)
    if not hello.get("setName") and hello.get("msg") != "isdbgrid":
        logger.warning(
            "MongoDB is a standalone server: change streams are unavailable, "
            "population updates will arrive every %d ms via refetch only",
            settings.refresh_interval_ms,
        )


async def close_mongo_connection() -> None:
    if db_client.client is not None:
        db_client.client.close()
        logger.info("MongoDB connection closed")


async def ping_database() -> bool:
    """True when the client exists and answers a ping; used by /health."""
    if db_client.client is None:
        return False
    try:
        await db_client.client.admin.command("ping")
    except Exception as exc:
        logger.warning("DB ping failed: %s", exc)
        return False
    return True


def get_db() -> Optional[AsyncIOMotorDatabase]:
    """The population database, or None when Mongo is unavailable."""
    return db_client.db


def _redact_uri(uri: str) -> str:
    return re.sub(r"://[^:]+:[^@]+@", "://<redacted>@", uri)
