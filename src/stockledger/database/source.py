"""SQLAlchemy-backed ledger source."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, settings as default_settings
from ..exceptions import ConflictError, DataAccessError, NotFoundError
from ..ledger import ConsumptionEvent, LotSnapshot, LotType, MovementType, TransferEvent, WasteEvent
from ..operations import BatchInfo
from . import crud
from .models import ProductionBatch, TransferRecord, User, WasteRecord

logger = logging.getLogger(__name__)


@contextmanager
def _data_access(action: str) -> Iterator[None]:
    """Translate driver and connection failures into DataAccessError.

    Constraint violations are not transient and become ConflictError.
    """
    try:
        yield
    except IntegrityError as e:
        logger.warning(f"Conflict while {action}: {e.orig}")
        raise ConflictError(f"Could not complete {action}: it conflicts with existing records") from e
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Data access failed while {action}: {e}")
        raise DataAccessError(f"Data access failed while {action}") from e


def _user_name(user: Optional[User]) -> Optional[str]:
    if user is None:
        return None
    return user.full_name or user.email


def _batch_info(batch: ProductionBatch) -> BatchInfo:
    return BatchInfo(
        id=batch.id,
        batch_code=batch.batch_code,
        batch_date=batch.batch_date,
        is_locked=batch.is_locked,
        qa_status=batch.qa_status,
    )


def _waste_event(record: WasteRecord, with_recorder: bool = True) -> WasteEvent:
    return WasteEvent(
        id=record.id,
        lot_type=LotType(record.lot_type),
        lot_id=record.lot_id,
        event_date=record.waste_date,
        quantity=record.quantity_wasted,
        reason=record.reason,
        notes=record.notes,
        created_by=record.created_by,
        created_by_name=_user_name(record.recorder) if with_recorder else None,
        created_at=record.created_at,
    )


def _transfer_event(record: TransferRecord, lot_id: int, with_recorder: bool = True) -> TransferEvent:
    direction = MovementType.TRANSFER_OUT if record.from_lot_id == lot_id else MovementType.TRANSFER_IN
    return TransferEvent(
        id=record.id,
        lot_type=LotType(record.lot_type),
        lot_id=lot_id,
        from_lot_id=record.from_lot_id,
        to_lot_id=record.to_lot_id,
        event_date=record.transfer_date,
        quantity=record.quantity_transferred,
        direction=direction,
        reason=record.reason,
        notes=record.notes,
        created_by=record.created_by,
        created_by_name=_user_name(record.recorder) if with_recorder else None,
        created_at=record.created_at,
    )


class DatabaseLedgerSource:
    """Ledger source and store backed by one ``AsyncSession``.

    Reads and writes share the session, so a write path sees its own
    flushed rows before ``commit``.
    """

    def __init__(self, session: AsyncSession, config: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = config or default_settings

    # ===== Reads =====

    async def allows_decimal(self, lot_type: LotType, unit: str) -> bool:
        with _data_access("resolving unit"):
            row = await crud.get_unit_by_name(self.session, lot_type, unit)
        if row is not None:
            return row.allows_decimal
        return not self.settings.is_whole_number_unit(unit)

    async def _to_snapshot(self, lot_type: LotType, lot: Any) -> LotSnapshot:
        return LotSnapshot(
            lot_type=lot_type,
            lot_id=lot.id,
            lot_code=lot.lot_code,
            name=lot.name,
            unit=lot.unit,
            allows_decimal=await self.allows_decimal(lot_type, lot.unit),
            quantity_received=lot.quantity_received,
            quantity_available=lot.quantity_available,
            received_date=lot.received_date,
            is_archived=bool(lot.is_archived),
        )

    async def _snapshot(self, lot_type: LotType, lot_id: int, lock: bool = False) -> LotSnapshot:
        with _data_access(f"reading {lot_type.value} id={lot_id}"):
            lot = await crud.get_lot(self.session, lot_type, lot_id, lock=lock)
        if lot is None:
            raise NotFoundError(f"{lot_type.value.replace('_', ' ').capitalize()} lot {lot_id} not found", lot_type.value, lot_id)
        return await self._to_snapshot(lot_type, lot)

    async def get_lot(self, lot_type: LotType, lot_id: int) -> LotSnapshot:
        return await self._snapshot(LotType(lot_type), lot_id)

    async def list_lots(self, lot_type: LotType, include_archived: bool = False) -> list[LotSnapshot]:
        kind = LotType(lot_type)
        with _data_access(f"listing {kind.value} lots"):
            lots = await crud.list_lots(self.session, kind, include_archived=include_archived)
        return [await self._to_snapshot(kind, lot) for lot in lots]

    async def list_consumption(
        self, lot_type: LotType, lot_id: int, until: Optional[date] = None
    ) -> list[ConsumptionEvent]:
        with _data_access(f"listing consumption for lot {lot_id}"):
            rows = await crud.list_batch_usage(self.session, lot_type, lot_id, until)
        return [
            ConsumptionEvent(
                id=usage.id,
                lot_id=usage.lot_id,
                batch_id=batch.id,
                batch_code=batch.batch_code,
                event_date=batch.batch_date,
                quantity=usage.quantity_consumed,
                is_locked=batch.is_locked,
                qa_status=batch.qa_status,
                created_at=usage.created_at,
            )
            for usage, batch in rows
        ]

    async def list_waste(
        self, lot_type: LotType, lot_id: int, until: Optional[date] = None
    ) -> list[WasteEvent]:
        with _data_access(f"listing waste for lot {lot_id}"):
            records = await crud.list_waste_records(self.session, lot_type, lot_id, until)
        return [_waste_event(record) for record in records]

    async def list_transfers(
        self, lot_type: LotType, lot_id: int, until: Optional[date] = None
    ) -> list[TransferEvent]:
        with _data_access(f"listing transfers for lot {lot_id}"):
            records = await crud.list_transfer_records(self.session, lot_type, lot_id, until)
        return [_transfer_event(record, lot_id) for record in records]

    async def get_batch(self, batch_id: int) -> BatchInfo:
        with _data_access(f"reading batch id={batch_id}"):
            batch = await crud.get_batch(self.session, batch_id)
        if batch is None:
            raise NotFoundError(f"Production batch {batch_id} not found")
        return _batch_info(batch)

    # ===== Writes =====

    async def lock_lots(self, lot_type: LotType, lot_ids: list[int]) -> None:
        # Fixed order so two transfers over the same pair cannot deadlock
        for lot_id in sorted(set(lot_ids)):
            await self._snapshot(LotType(lot_type), lot_id, lock=True)

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
        with _data_access(f"creating lot {lot_code}"):
            lot = await crud.create_lot(
                self.session,
                lot_type,
                lot_code=lot_code,
                name=name,
                unit=unit,
                quantity_received=quantity_received,
                received_date=received_date,
                notes=notes,
                created_by=created_by,
                commit=False,
                **extra,
            )
        return await self.get_lot(LotType(lot_type), lot.id)

    async def create_batch(self, batch_code: str, batch_date: date) -> BatchInfo:
        with _data_access(f"creating batch {batch_code}"):
            batch = await crud.create_batch(self.session, batch_code, batch_date, commit=False)
        return _batch_info(batch)

    async def add_consumption(self, lot: LotSnapshot, batch: BatchInfo, quantity: Decimal) -> ConsumptionEvent:
        with _data_access(f"recording consumption for lot {lot.lot_id}"):
            usage = await crud.add_batch_usage(
                self.session, batch.id, lot.lot_type, lot.lot_id, quantity, lot.unit, commit=False
            )
        return ConsumptionEvent(
            id=usage.id,
            lot_id=usage.lot_id,
            batch_id=batch.id,
            batch_code=batch.batch_code,
            event_date=batch.batch_date,
            quantity=usage.quantity_consumed,
            is_locked=batch.is_locked,
            qa_status=batch.qa_status,
            created_at=usage.created_at,
        )

    async def add_waste(
        self,
        lot: LotSnapshot,
        quantity: Decimal,
        reason: str,
        waste_date: date,
        notes: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> WasteEvent:
        with _data_access(f"recording waste for lot {lot.lot_id}"):
            record = await crud.create_waste_record(
                self.session,
                lot.lot_type,
                lot.lot_id,
                lot.lot_code,
                quantity,
                lot.unit,
                reason,
                waste_date,
                notes=notes,
                created_by=created_by,
                commit=False,
            )
        return _waste_event(record, with_recorder=False)

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
        with _data_access(f"recording transfer {from_lot.lot_id} -> {to_lot.lot_id}"):
            source_row = await crud.get_lot(self.session, from_lot.lot_type, from_lot.lot_id)
            target_row = await crud.get_lot(self.session, to_lot.lot_type, to_lot.lot_id)
            if source_row is None or target_row is None:
                raise NotFoundError("One or both lots not found")
            record = await crud.create_transfer_record(
                self.session,
                from_lot.lot_type,
                source_row,
                target_row,
                quantity,
                reason,
                transfer_date,
                notes=notes,
                created_by=created_by,
                commit=False,
            )
        return _transfer_event(record, from_lot.lot_id, with_recorder=False)

    async def set_cached_quantity(self, lot_type: LotType, lot_id: int, quantity: Decimal) -> None:
        with _data_access(f"updating cached quantity for lot {lot_id}"):
            await crud.update_quantity_available(self.session, lot_type, lot_id, quantity, commit=False)

    async def log_operation(
        self,
        operation: str,
        lot_type: Optional[LotType] = None,
        lot_id: Optional[int] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        with _data_access(f"logging {operation}"):
            await crud.log_transaction(self.session, operation, lot_type, lot_id, data, commit=False)

    async def commit(self) -> None:
        with _data_access("committing"):
            await self.session.commit()

    async def rollback(self) -> None:
        with _data_access("rolling back"):
            await self.session.rollback()
