"""Pytest configuration and shared fixtures."""

import copy
import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

# Set test environment variables before the application modules are imported
os.environ["POSTGRES_DB"] = "stockledger_test"
os.environ["POSTGRES_PORT"] = os.environ.get("POSTGRES_PORT", "5433")  # Use 5433 for local testing
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-the-suite")

from stockledger.config import Settings  # noqa: E402
from stockledger.database.engine import build_engine, build_session_factory, init_db  # noqa: E402
from stockledger.database.models import Base  # noqa: E402
from stockledger.exceptions import ConflictError, DataAccessError, NotFoundError  # noqa: E402
from stockledger.ledger import (  # noqa: E402
    ConsumptionEvent,
    LotSnapshot,
    LotType,
    MovementType,
    TransferEvent,
    WasteEvent,
)
from stockledger.operations import BatchInfo  # noqa: E402

T0 = datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc)


class InMemoryLedger:
    """Ledger store kept in dictionaries.

    Writes made after the last commit are undone by ``rollback``.
    Set ``fail_on`` to a method name to make that call raise
    ``DataAccessError``.
    """

    def __init__(self, whole_number_units: tuple[str, ...] = ("Pieces",)) -> None:
        self.whole_number_units = {u.lower() for u in whole_number_units}
        self.units: dict[tuple[LotType, str], bool] = {}
        self.lots: dict[tuple[LotType, int], dict[str, Any]] = {}
        self.batches: dict[int, BatchInfo] = {}
        self.consumption: list[ConsumptionEvent] = []
        self.waste: list[WasteEvent] = []
        self.transfers: list[dict[str, Any]] = []
        self.audit: list[dict[str, Any]] = []
        self.locked: list[tuple[LotType, int]] = []
        self.commits = 0
        self.rollbacks = 0
        self.fail_on: Optional[str] = None
        self._next_id = 1
        self._clock = T0
        self._saved: Optional[dict[str, Any]] = None

    # ----- helpers -----

    def _state(self) -> dict[str, Any]:
        return {
            "lots": self.lots,
            "batches": self.batches,
            "consumption": self.consumption,
            "waste": self.waste,
            "transfers": self.transfers,
            "audit": self.audit,
        }

    def _begin(self) -> None:
        if self._saved is None:
            self._saved = copy.deepcopy(self._state())

    def _check(self, name: str) -> None:
        if self.fail_on == name:
            raise DataAccessError(f"Data access failed while calling {name}")

    def _new_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def set_unit(self, lot_type: LotType, name: str, allows_decimal: bool) -> None:
        self.units[(lot_type, name.lower())] = allows_decimal

    def add_lot(
        self,
        lot_type: LotType = LotType.RAW_MATERIAL,
        quantity_received: Any = "100",
        unit: str = "kg",
        lot_code: Optional[str] = None,
        received_date: date = date(2025, 1, 1),
        name: str = "Flour",
        is_archived: bool = False,
    ) -> int:
        """Seed a lot directly, bypassing the write paths."""
        lot_id = self._new_id()
        quantity = Decimal(str(quantity_received))
        self.lots[(lot_type, lot_id)] = {
            "lot_code": lot_code or f"LOT-{lot_id}",
            "name": name,
            "unit": unit,
            "quantity_received": quantity,
            "quantity_available": quantity,
            "received_date": received_date,
            "is_archived": is_archived,
        }
        return lot_id

    def add_batch(self, batch_date: date, batch_code: Optional[str] = None) -> int:
        batch_id = self._new_id()
        self.batches[batch_id] = BatchInfo(
            id=batch_id, batch_code=batch_code or f"B-{batch_id}", batch_date=batch_date
        )
        return batch_id

    def seed_consumption(self, lot_id: int, quantity: Any, on: date) -> ConsumptionEvent:
        batch_id = self.add_batch(on)
        event = ConsumptionEvent(
            id=self._new_id(),
            lot_id=lot_id,
            batch_id=batch_id,
            batch_code=self.batches[batch_id].batch_code,
            event_date=on,
            quantity=Decimal(str(quantity)),
            created_at=self._tick(),
        )
        self.consumption.append(event)
        return event

    def seed_waste(
        self, lot_id: int, quantity: Any, on: date, lot_type: LotType = LotType.RAW_MATERIAL, reason: str = "spoiled"
    ) -> WasteEvent:
        event = WasteEvent(
            id=self._new_id(),
            lot_type=lot_type,
            lot_id=lot_id,
            event_date=on,
            quantity=Decimal(str(quantity)),
            reason=reason,
            created_at=self._tick(),
        )
        self.waste.append(event)
        return event

    def seed_transfer(
        self, from_lot_id: int, to_lot_id: int, quantity: Any, on: date, lot_type: LotType = LotType.RAW_MATERIAL
    ) -> dict[str, Any]:
        record = {
            "id": self._new_id(),
            "lot_type": lot_type,
            "from_lot_id": from_lot_id,
            "to_lot_id": to_lot_id,
            "event_date": on,
            "quantity": Decimal(str(quantity)),
            "reason": "rebalance",
            "notes": None,
            "created_by": None,
            "created_at": self._tick(),
        }
        self.transfers.append(record)
        return record

    def _transfer_event(self, record: dict[str, Any], lot_id: int) -> TransferEvent:
        direction = MovementType.TRANSFER_OUT if record["from_lot_id"] == lot_id else MovementType.TRANSFER_IN
        return TransferEvent(lot_id=lot_id, direction=direction, **record)

    # ----- LedgerSource -----

    async def allows_decimal(self, lot_type: LotType, unit: str) -> bool:
        configured = self.units.get((LotType(lot_type), unit.lower()))
        if configured is not None:
            return configured
        return unit.lower() not in self.whole_number_units

    async def get_lot(self, lot_type: LotType, lot_id: int) -> LotSnapshot:
        self._check("get_lot")
        kind = LotType(lot_type)
        row = self.lots.get((kind, lot_id))
        if row is None:
            raise NotFoundError(f"Lot {lot_id} not found", kind.value, lot_id)
        return LotSnapshot(
            lot_type=kind,
            lot_id=lot_id,
            allows_decimal=await self.allows_decimal(kind, row["unit"]),
            **row,
        )

    async def list_lots(self, lot_type: LotType, include_archived: bool = False) -> list[LotSnapshot]:
        self._check("list_lots")
        kind = LotType(lot_type)
        ids = [
            lot_id
            for (k, lot_id), row in self.lots.items()
            if k == kind and (include_archived or not row["is_archived"])
        ]
        ids.sort(key=lambda lot_id: (self.lots[(kind, lot_id)]["received_date"], lot_id), reverse=True)
        return [await self.get_lot(kind, lot_id) for lot_id in ids]

    async def list_consumption(
        self, lot_type: LotType, lot_id: int, until: Optional[date] = None
    ) -> list[ConsumptionEvent]:
        self._check("list_consumption")
        if (LotType(lot_type), lot_id) not in self.lots:
            return []
        return [e for e in self.consumption if e.lot_id == lot_id and (until is None or e.event_date <= until)]

    async def list_waste(self, lot_type: LotType, lot_id: int, until: Optional[date] = None) -> list[WasteEvent]:
        self._check("list_waste")
        return [
            e
            for e in self.waste
            if e.lot_type == LotType(lot_type) and e.lot_id == lot_id and (until is None or e.event_date <= until)
        ]

    async def list_transfers(
        self, lot_type: LotType, lot_id: int, until: Optional[date] = None
    ) -> list[TransferEvent]:
        self._check("list_transfers")
        return [
            self._transfer_event(r, lot_id)
            for r in self.transfers
            if r["lot_type"] == LotType(lot_type)
            and lot_id in (r["from_lot_id"], r["to_lot_id"])
            and (until is None or r["event_date"] <= until)
        ]

    # ----- LedgerStore -----

    async def get_batch(self, batch_id: int) -> BatchInfo:
        if batch_id not in self.batches:
            raise NotFoundError(f"Production batch {batch_id} not found")
        return self.batches[batch_id]

    async def lock_lots(self, lot_type: LotType, lot_ids: list[int]) -> None:
        for lot_id in sorted(set(lot_ids)):
            await self.get_lot(lot_type, lot_id)
            self.locked.append((LotType(lot_type), lot_id))

    async def create_lot(
        self,
        lot_type: LotType,
        lot_code: str,
        name: str,
        unit: str,
        quantity_received: Decimal,
        received_date: date,
        notes: Optional[str] = None,
        created_by: Optional[int] = None,
        **extra: Any,
    ) -> LotSnapshot:
        self._check("create_lot")
        if any(row["lot_code"] == lot_code for (kind, _), row in self.lots.items() if kind == LotType(lot_type)):
            raise ConflictError(f"Could not complete creating lot {lot_code}: it conflicts with existing records")
        self._begin()
        lot_id = self.add_lot(lot_type, quantity_received, unit, lot_code, received_date, name)
        return await self.get_lot(lot_type, lot_id)

    async def create_batch(self, batch_code: str, batch_date: date) -> BatchInfo:
        if any(batch.batch_code == batch_code for batch in self.batches.values()):
            raise ConflictError(f"Could not complete creating batch {batch_code}: it conflicts with existing records")
        self._begin()
        return self.batches[self.add_batch(batch_date, batch_code)]

    async def add_consumption(self, lot: LotSnapshot, batch: BatchInfo, quantity: Decimal) -> ConsumptionEvent:
        self._check("add_consumption")
        self._begin()
        event = ConsumptionEvent(
            id=self._new_id(),
            lot_id=lot.lot_id,
            batch_id=batch.id,
            batch_code=batch.batch_code,
            event_date=batch.batch_date,
            quantity=quantity,
            created_at=self._tick(),
        )
        self.consumption.append(event)
        return event

    async def add_waste(
        self,
        lot: LotSnapshot,
        quantity: Decimal,
        reason: str,
        waste_date: date,
        notes: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> WasteEvent:
        self._check("add_waste")
        self._begin()
        event = WasteEvent(
            id=self._new_id(),
            lot_type=lot.lot_type,
            lot_id=lot.lot_id,
            event_date=waste_date,
            quantity=quantity,
            reason=reason,
            notes=notes,
            created_by=created_by,
            created_at=self._tick(),
        )
        self.waste.append(event)
        return event

    async def add_transfer(
        self,
        from_lot: LotSnapshot,
        to_lot: LotSnapshot,
        quantity: Decimal,
        reason: str,
        transfer_date: date,
        notes: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> TransferEvent:
        self._check("add_transfer")
        self._begin()
        record = self.seed_transfer(from_lot.lot_id, to_lot.lot_id, quantity, transfer_date, from_lot.lot_type)
        record.update(reason=reason, notes=notes, created_by=created_by)
        return self._transfer_event(record, from_lot.lot_id)

    async def set_cached_quantity(self, lot_type: LotType, lot_id: int, quantity: Decimal) -> None:
        self._check("set_cached_quantity")
        self._begin()
        self.lots[(LotType(lot_type), lot_id)]["quantity_available"] = quantity

    async def log_operation(
        self,
        operation: str,
        lot_type: Optional[LotType] = None,
        lot_id: Optional[int] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        self._check("log_operation")
        self._begin()
        self.audit.append({"operation": operation, "lot_type": lot_type, "lot_id": lot_id, "data": data})

    async def commit(self) -> None:
        self._check("commit")
        self._saved = None
        self.commits += 1

    async def rollback(self) -> None:
        if self._saved is not None:
            for key, value in self._saved.items():
                setattr(self, key, value)
            self._saved = None
        self.rollbacks += 1


@pytest.fixture
def ledger() -> InMemoryLedger:
    """Empty in-memory ledger store."""
    return InMemoryLedger()


class AsyncContextManagerMock:
    """Mock async context manager for testing."""

    def __init__(self, return_value: Any) -> None:
        self.return_value = return_value

    async def __aenter__(self) -> Any:
        return self.return_value

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        return False


@pytest.fixture
def patch_ledger(ledger: InMemoryLedger, mocker: Any) -> InMemoryLedger:
    """Route the API and MCP entry points to the in-memory ledger."""
    factory = lambda: AsyncContextManagerMock(object())  # noqa: E731
    source = lambda session: ledger  # noqa: E731
    for module in ("stockledger.api", "stockledger.server"):
        mocker.patch(f"{module}.AsyncSessionLocal", factory)
        mocker.patch(f"{module}.DatabaseLedgerSource", source)
    return ledger


# ===== Database fixtures =====


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        postgres_db="stockledger_test",
        postgres_user="postgres",
        postgres_password="postgres",
        postgres_host="localhost",
        postgres_port=int(os.environ.get("POSTGRES_PORT", "5433")),
        debug=True,
    )


@pytest_asyncio.fixture(scope="function")
async def test_engine(test_settings: Settings) -> AsyncGenerator[Any, None]:
    """Create a test database engine, skipping when PostgreSQL is unreachable."""
    engine = build_engine(test_settings, echo=False, connect_args={"timeout": 5})

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await init_db(engine)
    except (OSError, SQLAlchemyError) as e:
        await engine.dispose()
        pytest.skip(f"PostgreSQL test database unavailable: {e}")

    yield engine

    # Clean up
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine: Any) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with build_session_factory(test_engine)() as session:
        yield session
        await session.rollback()
