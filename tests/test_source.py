"""Integration tests for the database-backed ledger source."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from stockledger.database.crud import create_unit, create_user, get_transaction_logs
from stockledger.database.models import RawMaterial
from stockledger.database.source import DatabaseLedgerSource
from stockledger.exceptions import ConflictError, DataAccessError, InsufficientStockError, NotFoundError
from stockledger.ledger import LotType, MovementType, compute_balance, reconcile_lot, stock_history
from stockledger.operations import (
    create_production_batch,
    list_lot_snapshots,
    list_transfer_records,
    list_usage_records,
    receive_lot,
    record_batch_usage,
    record_waste,
    transfer_between_lots,
)

D0 = date(2025, 1, 15)
D1 = date(2025, 2, 1)
D2 = date(2025, 2, 10)


@pytest.fixture
def source(db_session: AsyncSession) -> DatabaseLedgerSource:
    return DatabaseLedgerSource(db_session)


class TestReads:
    """Tests for reading lots and units."""

    @pytest.mark.asyncio
    async def test_missing_lot(self, source: DatabaseLedgerSource) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await source.get_lot(LotType.RAW_MATERIAL, 12345)

        assert exc_info.value.lot_id == 12345

    @pytest.mark.asyncio
    async def test_unit_table_decides_decimal(self, source: DatabaseLedgerSource, db_session: AsyncSession) -> None:
        await create_unit(db_session, "rm_pieces", "Pieces", "raw_material", allows_decimal=True)

        assert await source.allows_decimal(LotType.RAW_MATERIAL, "Pieces") is True
        # No row for recurring products: falls back to the whole-number list
        assert await source.allows_decimal(LotType.RECURRING_PRODUCT, "Pieces") is False
        assert await source.allows_decimal(LotType.RECURRING_PRODUCT, "kg") is True

    @pytest.mark.asyncio
    async def test_driver_errors_become_data_access_errors(
        self, source: DatabaseLedgerSource, mocker
    ) -> None:
        mocker.patch.object(
            source.session, "execute", side_effect=OperationalError("SELECT", {}, ConnectionError("down"))
        )

        with pytest.raises(DataAccessError):
            await source.list_waste(LotType.RAW_MATERIAL, 1)


class TestLedgerRoundTrip:
    """Full write and read cycle against PostgreSQL."""

    @pytest.mark.asyncio
    async def test_pieces_lot_history(self, source: DatabaseLedgerSource, db_session: AsyncSession) -> None:
        user = await create_user(db_session, "clerk@example.com", "Store Clerk")
        lot = await receive_lot(source, LotType.RAW_MATERIAL, "RM-100", "Eggs", "Pieces", 100, received_date=D0)
        other = await receive_lot(source, LotType.RAW_MATERIAL, "RM-101", "Eggs", "Pieces", 1, received_date=D0)
        batch = await create_production_batch(source, "B-1", D1)

        await record_batch_usage(source, batch.id, LotType.RAW_MATERIAL, lot.lot_id, 30)
        await record_waste(source, LotType.RAW_MATERIAL, lot.lot_id, 10, "cracked", waste_date=D1, created_by=user.id)
        await transfer_between_lots(source, LotType.RAW_MATERIAL, lot.lot_id, other.lot_id, 15, "merge", transfer_date=D2)

        assert await compute_balance(source, LotType.RAW_MATERIAL, lot.lot_id) == Decimal("45")
        assert await compute_balance(source, LotType.RAW_MATERIAL, lot.lot_id, as_of=D1) == Decimal("60")
        assert await compute_balance(source, LotType.RAW_MATERIAL, other.lot_id) == Decimal("16")

        movements = await stock_history(source, LotType.RAW_MATERIAL, lot.lot_id)
        assert [m.movement_type for m in movements] == [
            MovementType.RECEIVED,
            MovementType.CONSUMPTION,
            MovementType.WASTE,
            MovementType.TRANSFER_OUT,
        ]
        assert [m.balance_after for m in movements] == [Decimal("100"), Decimal("70"), Decimal("60"), Decimal("45")]
        assert movements[2].recorded_by == "Store Clerk"

        result = await reconcile_lot(source, LotType.RAW_MATERIAL, lot.lot_id)
        assert result.in_sync is True

        logs = await get_transaction_logs(db_session, lot_type="raw_material", lot_id=lot.lot_id)
        assert {log.operation for log in logs} >= {"RECEIVE", "CONSUME", "WASTE", "TRANSFER"}

    @pytest.mark.asyncio
    async def test_transfer_seen_from_target(self, source: DatabaseLedgerSource) -> None:
        first = await receive_lot(source, LotType.RECURRING_PRODUCT, "RP-1", "Lids", "kg", "5.5", received_date=D0)
        second = await receive_lot(source, LotType.RECURRING_PRODUCT, "RP-2", "Lids", "kg", "1", received_date=D0)

        await transfer_between_lots(
            source, LotType.RECURRING_PRODUCT, first.lot_id, second.lot_id, "2.25", "merge", transfer_date=D1
        )

        records = await list_transfer_records(source, LotType.RECURRING_PRODUCT, second.lot_id)
        assert records[0].direction is MovementType.TRANSFER_IN
        assert records[0].counterpart_lot_id == first.lot_id
        assert (await source.get_lot(LotType.RECURRING_PRODUCT, second.lot_id)).quantity_available == Decimal("3.25")

    @pytest.mark.asyncio
    async def test_rejected_waste_leaves_no_rows(self, source: DatabaseLedgerSource) -> None:
        lot = await receive_lot(source, LotType.RAW_MATERIAL, "RM-200", "Salt", "kg", 3, received_date=D0)

        with pytest.raises(InsufficientStockError):
            await record_waste(source, LotType.RAW_MATERIAL, lot.lot_id, 4, "spilled", waste_date=D1)

        assert await source.list_waste(LotType.RAW_MATERIAL, lot.lot_id) == []
        assert (await source.get_lot(LotType.RAW_MATERIAL, lot.lot_id)).quantity_available == Decimal("3.00")


class TestConflicts:
    """Constraint violations are reported as conflicts, not outages."""

    @pytest.mark.asyncio
    async def test_duplicate_lot_code(self, source: DatabaseLedgerSource) -> None:
        await receive_lot(source, LotType.RAW_MATERIAL, "RM-300", "Sugar", "kg", 10, received_date=D0)

        with pytest.raises(ConflictError):
            await receive_lot(source, LotType.RAW_MATERIAL, "RM-300", "Sugar", "kg", 5, received_date=D1)

        lots = await list_lot_snapshots(source, LotType.RAW_MATERIAL)
        assert [lot.quantity_received for lot in lots] == [Decimal("10.00")]

    @pytest.mark.asyncio
    async def test_duplicate_batch_code(self, source: DatabaseLedgerSource) -> None:
        await create_production_batch(source, "B-300", D1)

        with pytest.raises(ConflictError):
            await create_production_batch(source, "B-300", D2)

    @pytest.mark.asyncio
    async def test_unknown_recorder(self, source: DatabaseLedgerSource) -> None:
        with pytest.raises(ConflictError):
            await receive_lot(
                source, LotType.RAW_MATERIAL, "RM-301", "Sugar", "kg", 10, received_date=D0, created_by=98765
            )

        assert await list_lot_snapshots(source, LotType.RAW_MATERIAL) == []


class TestListings:
    """Tests for lot and usage listings."""

    @pytest.mark.asyncio
    async def test_archived_lots_hidden_by_default(
        self, source: DatabaseLedgerSource, db_session: AsyncSession
    ) -> None:
        old = await receive_lot(source, LotType.RAW_MATERIAL, "RM-400", "Rye", "kg", 4, received_date=D0)
        new = await receive_lot(source, LotType.RAW_MATERIAL, "RM-401", "Rye", "kg", 6, received_date=D1)
        await db_session.execute(update(RawMaterial).where(RawMaterial.id == old.lot_id).values(is_archived=True))
        await db_session.commit()

        active = await list_lot_snapshots(source, LotType.RAW_MATERIAL)
        everything = await list_lot_snapshots(source, LotType.RAW_MATERIAL, include_archived=True)

        assert [lot.lot_id for lot in active] == [new.lot_id]
        assert [(lot.lot_id, lot.is_archived) for lot in everything] == [(new.lot_id, False), (old.lot_id, True)]

    @pytest.mark.asyncio
    async def test_usage_newest_first(self, source: DatabaseLedgerSource) -> None:
        lot = await receive_lot(source, LotType.RAW_MATERIAL, "RM-402", "Rye", "kg", 20, received_date=D0)
        first = await create_production_batch(source, "B-400", D1)
        second = await create_production_batch(source, "B-401", D2)
        await record_batch_usage(source, first.id, LotType.RAW_MATERIAL, lot.lot_id, 3)
        await record_batch_usage(source, second.id, LotType.RAW_MATERIAL, lot.lot_id, "1.5")

        records = await list_usage_records(source, LotType.RAW_MATERIAL, lot.lot_id)

        assert [r.batch_code for r in records] == ["B-401", "B-400"]
        assert records[0].quantity == Decimal("1.50")
        assert records[0].is_locked is False
        assert records[0].qa_status == "pending"
