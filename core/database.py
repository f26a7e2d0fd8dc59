"""
Document store connection handling (PostgreSQL via SQLAlchemy async).

The worker, the status API and the maintenance scripts all share one engine
per process. Sessions are short-lived: every bulk statement chunk and every
bookkeeping write opens its own session so that concurrently processed files
never share a transaction.
"""

from typing import AsyncGenerator
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(database_url: str = None) -> AsyncEngine:
    """Create an async engine for the given URL (defaults to settings)."""
    return create_async_engine(
        database_url or settings.DATABASE_URL,
        echo=False,
        poolclass=NullPool,
        future=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()
async_session_maker = build_session_factory(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session for request-scoped use (FastAPI dependency)."""
    async with async_session_maker() as session:
        yield session


async def ping(session_factory: async_sessionmaker = None) -> bool:
    """Return True when the document store answers a trivial query."""
    factory = session_factory or async_session_maker
    try:
        async with factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
