"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, sync, catalog
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.exceptions import SyncException
from core.logging import setup_logging
from ingestion.scheduler import SyncScheduler
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Initialize Scheduler
scheduler = SyncScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup / shutdown"""
    logger.info("Starting Exchange Sync API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SYNC_SCHEDULER_ENABLED:
        scheduler.start()

    yield

    logger.info("Shutting down Exchange Sync API")
    if settings.SYNC_SCHEDULER_ENABLED:
        scheduler.stop()


# Create FastAPI app
app = FastAPI(
    title="Exchange Sync API",
    description="Synchronizes practice-management records and their custom fields into the local store",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(sync.router)
app.include_router(catalog.router)


@app.exception_handler(SyncException)
async def sync_exception_handler(request: Request, exc: SyncException):
    """Unexpected sync failures; the run itself is already recorded as failed"""
    logger.error(f"Unhandled sync error: {exc}", extra={"error_context": exc.to_dict()})
    return JSONResponse(
        status_code=500,
        content={"error": exc.message, "detail": exc.__class__.__name__},
    )


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Exchange Sync API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "sync": "/sync",
            "sync_runs": "/sync/runs",
            "catalog": "/catalog"
        }
    }
