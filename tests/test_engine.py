"""Tests for database engine and session management."""

from typing import Any

import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from stockledger.config import Settings
from stockledger.database.engine import (
    AsyncSessionLocal,
    build_engine,
    close_db,
    engine,
    get_session,
)
from stockledger.database.models import Base

LEDGER_TABLES = {
    "users",
    "units",
    "raw_materials",
    "recurring_products",
    "production_batches",
    "batch_usage",
    "waste_tracking",
    "transfer_tracking",
    "transaction_log",
}


class TestDatabaseEngine:
    """Tests for the module-level engine."""

    def test_engine_is_async(self) -> None:
        assert isinstance(engine, AsyncEngine)

    def test_engine_uses_asyncpg(self) -> None:
        assert engine.url.drivername == "postgresql+asyncpg"

    def test_pool_settings(self) -> None:
        """Stale connections are pinged and recycled hourly."""
        assert engine.pool._pre_ping is True
        assert engine.pool._recycle == 3600

    @pytest.mark.asyncio
    async def test_build_engine_overrides(self, test_settings: Settings) -> None:
        custom = build_engine(test_settings, pool_recycle=60)
        try:
            assert custom.pool._recycle == 60
            assert custom.url.database == "stockledger_test"
        finally:
            await custom.dispose()


class TestSessionFactory:
    """Tests for the session factory."""

    def test_sessions_keep_objects_after_commit(self) -> None:
        assert AsyncSessionLocal.kw["expire_on_commit"] is False

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self) -> None:
        async with AsyncSessionLocal() as first:
            async with AsyncSessionLocal() as second:
                assert isinstance(first, AsyncSession)
                assert first is not second


class TestMetadata:
    """Tests for the table set created on startup."""

    def test_metadata_declares_ledger_tables(self) -> None:
        assert set(Base.metadata.tables) == LEDGER_TABLES

    @pytest.mark.asyncio
    async def test_tables_created(self, test_engine: Any) -> None:
        async with test_engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        assert LEDGER_TABLES <= set(names)


class TestGetSession:
    """Tests for the get_session dependency."""

    @pytest.mark.asyncio
    async def test_yields_session(self) -> None:
        async for session in get_session():
            assert isinstance(session, AsyncSession)
            break

    @pytest.mark.asyncio
    async def test_error_propagates(self) -> None:
        gen = get_session()
        await gen.__anext__()
        with pytest.raises(ValueError):
            await gen.athrow(ValueError("boom"))


class TestCloseDb:
    """Tests for database cleanup."""

    @pytest.mark.asyncio
    async def test_close_db(self) -> None:
        await close_db()
