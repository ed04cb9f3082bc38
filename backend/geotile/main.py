"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from geotile import __version__
from geotile.config import settings
from geotile.routes import (
    documents_router,
    georeference_router,
    tiles_router,
)
from geotile.services.scheduler import TileWorkerPool, tile_scheduler

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info(f"Starting GeoTile georeferencing service v{__version__}")
    logger.info(f"Data directory: {settings.data_dir.absolute()}")
    logger.info(f"Storage root: {settings.storage_root.absolute()}")
    settings.documents_dir.mkdir(parents=True, exist_ok=True)
    settings.jobs_dir.mkdir(parents=True, exist_ok=True)
    settings.tiles_dir.mkdir(parents=True, exist_ok=True)

    # Pick up jobs interrupted by the last shutdown
    tile_scheduler.recover()
    workers = TileWorkerPool(tile_scheduler, settings.tile_worker_count)
    workers.start()

    yield

    # Shutdown
    logger.info("Shutting down...")
    workers.stop()


# Create FastAPI app
app = FastAPI(
    title="GeoTile",
    description="API for georeferencing scanned maps and generating web map tiles",
    version=__version__,
    lifespan=lifespan,
    docs_url=f"{settings.api_v1_prefix}/docs",
    redoc_url=f"{settings.api_v1_prefix}/redoc",
    openapi_url=f"{settings.api_v1_prefix}/openapi.json",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler for consistent error responses
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
            }
        },
    )


# Include routers
app.include_router(documents_router, prefix=settings.api_v1_prefix)
app.include_router(georeference_router, prefix=settings.api_v1_prefix)
app.include_router(tiles_router, prefix=settings.api_v1_prefix)


# Health check endpoint
@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint."""
    return {
        "ok": True,
        "status": "healthy",
        "version": __version__,
    }


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect to API documentation."""
    return {
        "message": "GeoTile API",
        "version": __version__,
        "docs": f"{settings.api_v1_prefix}/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "geotile.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
