"""
Health check endpoint.

Used by:
  - Docker HEALTHCHECK instruction
  - Load balancers / orchestrators
  - The dashboard, to tell "API down" from "feed down"

Returns DB connectivity plus the state of the live population feed, so
callers can distinguish between "API down", "API up but DB unreachable"
and "DB up but the feed is erroring".
"""

from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from crowdpulse.core import database as db_module
from crowdpulse.core.config import settings

router = APIRouter()


class HealthResponse(BaseModel):
    status: str  # Always "ok" if the API process is alive
    version: str
    database: str  # "connected" | "disconnected"
    feed: str  # "live" | "loading" | "error" | "stopped"
    last_updated: Optional[str] = None
    environment: str


def _feed_status(request: Request) -> tuple[str, Optional[str]]:
    service = getattr(request.app.state, "population", None)
    if service is None:
        return "stopped", None
    store = service.store
    last = store.updated_at.isoformat() if store.updated_at is not None else None
    if store.error:
        return "error", last
    if store.is_loading or store.updated_at is None:
        return "loading", last
    return "live", last


@router.get("", response_model=HealthResponse, summary="API health check")
async def health_check(request: Request) -> HealthResponse:
    """
    Returns the liveness status of the API, its database connection and
    the live feed.

    The API is considered healthy (HTTP 200) even when the database is
    disconnected or the feed is erroring.
    """
    db_status = "connected" if await db_module.ping_database() else "disconnected"

    feed, last_updated = _feed_status(request)

    return HealthResponse(
        status="ok",
        version="0.1.0",
        database=db_status,
        feed=feed,
        last_updated=last_updated,
        environment=settings.environment,
    )
