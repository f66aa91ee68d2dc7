"""
FastAPI application entry point for the market dashboard data service.

Wires together the FMP client, the market data service (three independent
quote caches with their background sweepers) and the route modules.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from market_cache.config import get_settings
from market_cache.fmp_client import FMPClient
from market_cache.market_data import MarketDataService
from market_cache.routes.cache_admin import router as cache_admin_router
from market_cache.routes.quotes import router as quotes_router

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging: configured at module level before anything else runs
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan: manages startup and shutdown of long-lived resources
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup sequence:
      1. Create the FMPClient.
      2. Build the MarketDataService (general, stock and market caches) and
         store it on ``app.state``.
      3. Start the cache sweepers (and the pre-warm, when enabled).

    Shutdown sequence:
      1. Stop the sweepers and cancel in-flight fetches.
      2. Close the FMPClient (drains the underlying httpx connection pool).
    """
    logger.info("Starting market data service...")

    fmp_client = FMPClient(settings)
    market_data = MarketDataService(fmp_client, settings)
    app.state.market_data = market_data

    await market_data.start()

    logger.info("Market data service startup complete, serving requests")

    yield  # application runs here

    logger.info("Shutting down market data service...")

    await market_data.stop()
    await fmp_client.close()

    logger.info("Market data service shutdown complete")


# ---------------------------------------------------------------------------
# Application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Market Dashboard Data Service",
    description="Cached, deduplicated market data for dashboard widgets",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(quotes_router, prefix="/api/quotes", tags=["quotes"])
app.include_router(cache_admin_router, prefix="/api/cache", tags=["cache"])


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Return service liveness status."""
    return {"status": "ok", "service": "market-cache"}
