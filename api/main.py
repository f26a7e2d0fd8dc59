"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, sync
from core.config import settings
from core.database import async_session_maker
from core.logging import mask_secret, setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.loaders.search_loader import ElasticsearchIndexer
from ingestion.registry import RunRegistry
from ingestion.repository import SyncRepository
from ingestion.resilience.memory import MemoryWatchdog
from ingestion.scheduler import build_worker

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Parts Sync API",
    description="Status and trigger endpoints for the bulk parts ingestion pipeline",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(sync.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Parts Sync API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")
    logger.info(f"Trigger API key: {mask_secret(settings.API_KEY)}")

    app.state.repository = SyncRepository(async_session_maker)
    app.state.watchdog = MemoryWatchdog()
    app.state.worker = None

    if settings.RUN_WORKER_IN_API:
        worker = build_worker()
        app.state.worker = worker
        app.state.registry = worker.runner.registry
        app.state.indexer = worker.runner.indexer
        await worker.start()
    else:
        app.state.registry = RunRegistry()
        app.state.indexer = ElasticsearchIndexer()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Parts Sync API")
    if app.state.worker is not None:
        await app.state.worker.stop()
    else:
        await app.state.indexer.close()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Parts Sync API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "trigger": "POST /integrations/{id}/sync",
            "status": "GET /integrations/{id}/sync",
            "history": "GET /integrations/{id}/history"
        }
    }
