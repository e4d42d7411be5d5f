"""
CrowdPulse API — Application entry point.

Bootstraps FastAPI, wires up middleware, registers route groups,
and manages the MongoDB connection and live population feed lifecycle.

Extension points:
  - Add new route groups with app.include_router() below
  - Add new middleware in the middleware block
  - Change startup behaviour in the lifespan context manager
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from crowdpulse.core.config import settings
from crowdpulse.core.database import close_mongo_connection, connect_to_mongo
from crowdpulse.core.rate_limit import limiter
from crowdpulse.routes.health import router as health_router
from crowdpulse.routes.population import router as population_router
from crowdpulse.services.population import PopulationService

# ─── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ─── Lifespan ──────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage startup and shutdown lifecycle.

    Startup connects to MongoDB, then starts the default population
    observer (initial fetch + change stream + periodic refetch). A failed
    initial load does not stop the app: the error is served to clients and
    the next refetch retries.
    """
    logger.info("Starting CrowdPulse API (env: %s)", settings.environment)
    await connect_to_mongo()
    service = PopulationService()
    app.state.population = service
    await service.start()
    yield
    logger.info("Shutting down CrowdPulse API")
    await service.stop()
    await close_mongo_connection()


# ─── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="CrowdPulse API",
    description=(
        "Live foot-traffic statistics, hotspots and region details for the "
        "population dashboard."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)


# ─── Rate limiting ─────────────────────────────────────────────────────────────
# Routes opt-in with @limiter.limit("N/minute") + request: Request parameter.
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ─── Middleware ─────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Routes ────────────────────────────────────────────────────────────────────
app.include_router(health_router, prefix="/health", tags=["health"])
app.include_router(population_router)


@app.get("/", tags=["root"])
async def root():
    """API root — basic metadata."""
    return {
        "name": "CrowdPulse API",
        "version": "0.1.0",
        "status": "running",
        "environment": settings.environment,
        "docs": "/docs",
    }
