"""
Health check endpoint with database, search index and worker status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from api.dependencies import get_db, get_indexer, get_registry, get_watchdog, get_worker
from schemas.api import BreakerInfo, HealthCheckResponse
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    indexer=Depends(get_indexer),
    registry=Depends(get_registry),
    watchdog=Depends(get_watchdog),
    worker=Depends(get_worker),
):
    """
    Health check endpoint.

    Returns:
    - Database and search index connectivity
    - Circuit breaker states and memory usage of this process
    - Integrations currently syncing in this process
    """
    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    index_connected = await indexer.ping()

    breakers = []
    if worker is not None:
        breakers = [BreakerInfo(**breaker.status()) for breaker in worker.breakers]

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        search_index_connected=index_connected,
        breakers=breakers,
        memory=watchdog.status(),
        worker_running=worker is not None,
        active_syncs=registry.active_integrations(),
    )
