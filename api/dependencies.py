"""
FastAPI dependencies shared by the routes
"""

from typing import AsyncGenerator, Optional

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import async_session_maker
from ingestion.loaders.search_loader import ElasticsearchIndexer
from ingestion.registry import RunRegistry
from ingestion.repository import SyncRepository
from ingestion.resilience.memory import MemoryWatchdog


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped database session"""
    async with async_session_maker() as session:
        yield session


def get_repository(request: Request) -> SyncRepository:
    return request.app.state.repository


def get_registry(request: Request) -> RunRegistry:
    return request.app.state.registry


def get_indexer(request: Request) -> ElasticsearchIndexer:
    return request.app.state.indexer


def get_watchdog(request: Request) -> MemoryWatchdog:
    return request.app.state.watchdog


def get_worker(request: Request) -> Optional[object]:
    return getattr(request.app.state, "worker", None)


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(api_key: Optional[str] = Security(api_key_header)):
    """Guard mutating endpoints when API_KEY is configured"""
    if settings.API_KEY and api_key != settings.API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
