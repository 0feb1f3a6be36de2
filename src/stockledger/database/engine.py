"""Database engine and session management."""

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import Settings, settings
from .models import Base

logger = logging.getLogger(__name__)


def build_engine(config: Settings, **overrides) -> AsyncEngine:
    """Create an async engine for the configured PostgreSQL database.

    Connections are pinged before use and recycled hourly, since managed
    Postgres hosts drop idle connections.
    """
    options = {
        "echo": config.debug,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "pool_size": 5,
        "max_overflow": 10,
    }
    options.update(overrides)
    return create_async_engine(config.database_url, **options)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Ledger records outlive the commit that wrote them
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


engine: AsyncEngine = build_engine(settings)
AsyncSessionLocal = build_session_factory(engine)


async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create any missing ledger tables.

    Alembic owns schema changes; this only fills in a fresh database so
    the API and MCP server can start without a migration step.
    """
    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Ledger tables ready: {', '.join(sorted(Base.metadata.tables))}")


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session, rolling back if the caller fails."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:  # Intentionally broad: must rollback on any error during session use
            await session.rollback()
            raise


async def close_db() -> None:
    """Dispose the engine's connection pool on shutdown."""
    await engine.dispose()
    logger.info("Database connections closed")
