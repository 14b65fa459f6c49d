"""
Shopify Margin Sync - Main Application
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .config import settings
from .dependencies import init_dependencies, close_dependencies, get_db, get_scheduler
from .routes import margins_router, sync_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info("Starting Shopify Margin Sync...")
    await init_dependencies()
    logger.info("Application ready")
    yield
    logger.info("Shutting down...")
    await close_dependencies()


# Create app
app = FastAPI(
    title="Shopify Margin Sync",
    description="Sync Shopify catalogs and orders and compute point-in-time order margins",
    version="1.0.0",
    lifespan=lifespan
)

# Include routers
app.include_router(sync_router)
app.include_router(margins_router)


@app.get("/health")
async def health():
    """Liveness of the scheduler and the store."""
    scheduler_ok = get_scheduler().running
    store_ok = await get_db().ping()

    body = {
        "status": "ok" if scheduler_ok and store_ok else "degraded",
        "scheduler": "running" if scheduler_ok else "stopped",
        "store": "ok" if store_ok else "unavailable",
    }
    return JSONResponse(body, status_code=200 if scheduler_ok and store_ok else 503)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "margin_sync.main:app",
        host=settings.host,
        port=settings.port,
        reload=True
    )
