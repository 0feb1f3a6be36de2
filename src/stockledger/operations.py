"""Write paths that append to the stock ledger.

Each operation validates against the ledger balance before writing,
appends the event, refreshes the cached ``quantity_available`` of every
lot it touched and logs an audit entry, all inside one store
transaction.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict

from .exceptions import InvalidReasonError, InvalidTransferError
from .ledger import (
    ConsumptionEvent,
    LedgerSource,
    LotSnapshot,
    LotType,
    QuantityLike,
    TransferEvent,
    WasteEvent,
    compute_balance,
    event_sort_key,
    normalize_quantity,
    validate_deduction,
)

logger = logging.getLogger(__name__)


class BatchInfo(BaseModel):
    """A production batch as seen by the write paths."""

    model_config = ConfigDict(frozen=True)

    id: int
    batch_code: str
    batch_date: date
    is_locked: bool = False
    qa_status: str = "pending"


class LedgerStore(LedgerSource, Protocol):
    """A ledger source that can also append events in a transaction."""

    async def allows_decimal(self, lot_type: LotType, unit: str) -> bool: ...

    async def get_batch(self, batch_id: int) -> BatchInfo: ...

    async def list_lots(self, lot_type: LotType, include_archived: bool = False) -> list[LotSnapshot]: ...

    async def lock_lots(self, lot_type: LotType, lot_ids: list[int]) -> None: ...

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
    ) -> LotSnapshot: ...

    async def create_batch(self, batch_code: str, batch_date: date) -> BatchInfo: ...

    async def add_consumption(self, lot: LotSnapshot, batch: BatchInfo, quantity: Decimal) -> ConsumptionEvent: ...

    async def add_waste(
        self,
        lot: LotSnapshot,
        quantity: Decimal,
        reason: str,
        waste_date: date,
        notes: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> WasteEvent: ...

    async def add_transfer(
        self,
        from_lot: LotSnapshot,
        to_lot: LotSnapshot,
        quantity: Decimal,
        reason: str,
        transfer_date: date,
        notes: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> TransferEvent: ...

    async def set_cached_quantity(self, lot_type: LotType, lot_id: int, quantity: Decimal) -> None: ...

    async def log_operation(
        self,
        operation: str,
        lot_type: Optional[LotType] = None,
        lot_id: Optional[int] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


async def _refresh_cached_quantities(store: LedgerStore, lot_type: LotType, lot_ids: list[int]) -> None:
    for lot_id in lot_ids:
        balance = await compute_balance(store, lot_type, lot_id)
        await store.set_cached_quantity(lot_type, lot_id, balance)


async def receive_lot(
    store: LedgerStore,
    lot_type: Union[LotType, str],
    lot_code: str,
    name: str,
    unit: str,
    quantity_received: QuantityLike,
    received_date: Optional[date] = None,
    notes: Optional[str] = None,
    created_by: Optional[int] = None,
    **extra: Any,
) -> LotSnapshot:
    """Create a lot of raw material or recurring product.

    Args:
        store: Ledger store
        lot_type: ``raw_material`` or ``recurring_product``
        lot_code: Unique lot identifier
        name: Material or product name
        unit: Unit of measure display name
        quantity_received: Quantity received (positive, integral for whole-number units)
        received_date: Defaults to today
        notes: Optional notes
        created_by: Optional ID of the receiving user
        **extra: Type-specific fields (supplier_name, condition, category)

    Returns:
        The created lot
    """
    kind = LotType(lot_type)
    allows_decimal = await store.allows_decimal(kind, unit)
    quantity = normalize_quantity(quantity_received, allows_decimal, unit)
    received_on = received_date or date.today()

    try:
        lot = await store.create_lot(
            kind,
            lot_code=lot_code,
            name=name,
            unit=unit,
            quantity_received=quantity,
            received_date=received_on,
            notes=notes,
            created_by=created_by,
            **extra,
        )
        await store.log_operation(
            "RECEIVE",
            kind,
            lot.lot_id,
            {"lot_code": lot_code, "quantity": quantity, "unit": unit, "received_date": received_on},
        )
        await store.commit()
    except Exception:  # Intentionally broad: must rollback on any error before re-raising
        await store.rollback()
        raise

    logger.info(f"Received {kind.value} lot {lot_code}: {quantity} {unit}")
    return lot


async def create_production_batch(store: LedgerStore, batch_code: str, batch_date: Optional[date] = None) -> BatchInfo:
    """Create a production batch dated ``batch_date`` (default today)."""
    try:
        batch = await store.create_batch(batch_code, batch_date or date.today())
        await store.log_operation("CREATE_BATCH", data={"batch_code": batch_code, "batch_date": batch.batch_date})
        await store.commit()
    except Exception:  # Intentionally broad: must rollback on any error before re-raising
        await store.rollback()
        raise
    return batch


async def record_batch_usage(
    store: LedgerStore,
    batch_id: int,
    lot_type: Union[LotType, str],
    lot_id: int,
    quantity: QuantityLike,
) -> ConsumptionEvent:
    """Record that a production batch consumed part of a lot.

    The balance is checked as of the batch date.

    Raises:
        NotFoundError: Batch or lot missing
        InvalidQuantityError: Bad quantity for the lot's unit
        InsufficientStockError: Not enough stock on the batch date
    """
    kind = LotType(lot_type)
    try:
        batch = await store.get_batch(batch_id)
        await store.lock_lots(kind, [lot_id])
        lot = await store.get_lot(kind, lot_id)
        amount = await validate_deduction(store, lot, quantity, batch.batch_date, action="consume")

        event = await store.add_consumption(lot, batch, amount)
        await _refresh_cached_quantities(store, kind, [lot_id])
        await store.log_operation(
            "CONSUME",
            kind,
            lot_id,
            {"batch_id": batch_id, "batch_code": batch.batch_code, "quantity": amount, "unit": lot.unit},
        )
        await store.commit()
    except Exception:  # Intentionally broad: must rollback on any error before re-raising
        await store.rollback()
        raise

    logger.info(f"Batch {batch.batch_code} consumed {amount} {lot.unit} of {lot.lot_code}")
    return event


async def record_waste(
    store: LedgerStore,
    lot_type: Union[LotType, str],
    lot_id: int,
    quantity: QuantityLike,
    reason: str,
    notes: Optional[str] = None,
    waste_date: Optional[date] = None,
    created_by: Optional[int] = None,
) -> WasteEvent:
    """Record waste against a lot.

    Args:
        store: Ledger store
        lot_type: Lot type of the lot
        lot_id: ID of the lot
        quantity: Quantity wasted
        reason: Why the stock was wasted
        notes: Optional notes
        waste_date: Date of the waste (default today); the balance is checked as of this date
        created_by: Optional ID of the recording user

    Returns:
        The created waste event

    Raises:
        NotFoundError: Lot missing
        InvalidReasonError: Blank reason
        InvalidQuantityError: Bad quantity for the lot's unit
        InsufficientStockError: Quantity exceeds the balance as of ``waste_date``
        DataAccessError: The store failed
    """
    kind = LotType(lot_type)
    effective_date = waste_date or date.today()
    if not reason or not reason.strip():
        raise InvalidReasonError("A waste reason is required")

    try:
        await store.lock_lots(kind, [lot_id])
        lot = await store.get_lot(kind, lot_id)
        amount = await validate_deduction(store, lot, quantity, effective_date, action="waste")

        event = await store.add_waste(
            lot,
            amount,
            reason.strip(),
            effective_date,
            notes=notes,
            created_by=created_by,
        )
        await _refresh_cached_quantities(store, kind, [lot_id])
        await store.log_operation(
            "WASTE",
            kind,
            lot_id,
            {
                "waste_id": event.id,
                "quantity": amount,
                "unit": lot.unit,
                "reason": event.reason,
                "waste_date": effective_date,
            },
        )
        await store.commit()
    except Exception:  # Intentionally broad: must rollback on any error before re-raising
        await store.rollback()
        raise

    logger.info(f"Recorded waste of {amount} {lot.unit} on {lot.lot_code} ({event.reason})")
    return event


async def transfer_between_lots(
    store: LedgerStore,
    lot_type: Union[LotType, str],
    from_lot_id: int,
    to_lot_id: int,
    quantity: QuantityLike,
    reason: str,
    notes: Optional[str] = None,
    transfer_date: Optional[date] = None,
    created_by: Optional[int] = None,
) -> TransferEvent:
    """Move stock from one lot to another of the same type and unit.

    Args:
        store: Ledger store
        lot_type: Lot type shared by both lots
        from_lot_id: Source lot
        to_lot_id: Target lot
        quantity: Quantity to move
        reason: Why the stock was moved
        notes: Optional notes
        transfer_date: Date of the transfer (default today); the source balance is checked as of this date
        created_by: Optional ID of the recording user

    Returns:
        The transfer as seen from the source lot (``transfer_out``)

    Raises:
        NotFoundError: Either lot missing
        InvalidTransferError: Same lot on both sides, or units differ
        InvalidReasonError: Blank reason
        InvalidQuantityError: Bad quantity for the unit
        InsufficientStockError: Quantity exceeds the source balance
        DataAccessError: The store failed
    """
    kind = LotType(lot_type)
    effective_date = transfer_date or date.today()
    if from_lot_id == to_lot_id:
        raise InvalidTransferError("Cannot transfer a lot into itself")
    if not reason or not reason.strip():
        raise InvalidReasonError("A transfer reason is required")

    try:
        await store.lock_lots(kind, [from_lot_id, to_lot_id])
        from_lot = await store.get_lot(kind, from_lot_id)
        to_lot = await store.get_lot(kind, to_lot_id)
        if from_lot.unit != to_lot.unit:
            raise InvalidTransferError(
                f"Cannot transfer between lots with different units: {from_lot.unit} vs {to_lot.unit}"
            )
        amount = await validate_deduction(store, from_lot, quantity, effective_date, action="transfer")

        event = await store.add_transfer(
            from_lot,
            to_lot,
            amount,
            reason.strip(),
            effective_date,
            notes=notes,
            created_by=created_by,
        )
        await _refresh_cached_quantities(store, kind, [from_lot_id, to_lot_id])
        await store.log_operation(
            "TRANSFER",
            kind,
            from_lot_id,
            {
                "transfer_id": event.id,
                "from_lot": from_lot.lot_code,
                "to_lot": to_lot.lot_code,
                "quantity": amount,
                "unit": from_lot.unit,
                "transfer_date": effective_date,
            },
        )
        await store.commit()
    except Exception:  # Intentionally broad: must rollback on any error before re-raising
        await store.rollback()
        raise

    logger.info(f"Transferred {amount} {from_lot.unit} from {from_lot.lot_code} to {to_lot.lot_code}")
    return event


async def list_waste_records(source: LedgerSource, lot_type: Union[LotType, str], lot_id: int) -> list[WasteEvent]:
    """Waste recorded against a lot, newest first."""
    kind = LotType(lot_type)
    await source.get_lot(kind, lot_id)
    records = await source.list_waste(kind, lot_id)
    return sorted(records, key=event_sort_key, reverse=True)


async def list_transfer_records(
    source: LedgerSource, lot_type: Union[LotType, str], lot_id: int
) -> list[TransferEvent]:
    """Transfers into or out of a lot, newest first, with direction relative to the lot."""
    kind = LotType(lot_type)
    await source.get_lot(kind, lot_id)
    records = await source.list_transfers(kind, lot_id)
    return sorted(records, key=event_sort_key, reverse=True)


async def list_usage_records(
    source: LedgerSource, lot_type: Union[LotType, str], lot_id: int
) -> list[ConsumptionEvent]:
    """Batches that drew on a lot, newest first, with each batch's lock and QA flags."""
    kind = LotType(lot_type)
    await source.get_lot(kind, lot_id)
    records = await source.list_consumption(kind, lot_id)
    return sorted(records, key=event_sort_key, reverse=True)


async def list_lot_snapshots(
    store: LedgerStore, lot_type: Union[LotType, str], include_archived: bool = False
) -> list[LotSnapshot]:
    """Lots of one type with their cached balances, newest received first.

    Archived lots are left out unless ``include_archived`` is set.
    """
    return await store.list_lots(LotType(lot_type), include_archived=include_archived)
