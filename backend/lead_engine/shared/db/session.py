"""
Async database engine and session factory.

The engine is built on first use so the app (and its unit tests) can be
imported without a reachable database.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from lead_engine.shared.core.config import settings
from lead_engine.shared.core.constants import DB_POOL_SIZE, DB_MAX_OVERFLOW, DB_POOL_RECYCLE

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        if not settings.DATABASE_URL:
            raise ValueError("DATABASE_URL is required")

        # statement_cache_size=0 keeps asyncpg compatible with PgBouncer transaction pooling
        _engine = create_async_engine(
            settings.DATABASE_URL,
            echo=False,
            pool_pre_ping=True,
            pool_size=DB_POOL_SIZE,
            max_overflow=DB_MAX_OVERFLOW,
            pool_recycle=DB_POOL_RECYCLE,
            connect_args={
                "statement_cache_size": 0,
                "prepared_statement_cache_size": 0
            }
        )
        logger.info("Database engine initialized")
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Session factory used by background workers (scheduler, dispatcher)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False
        )
    return _session_factory


async def get_db():
    """Dependency for FastAPI routes to get a DB session"""
    async with get_session_factory()() as session:
        yield session


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _session_factory = None
