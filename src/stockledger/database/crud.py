"""CRUD operations for lots and their stock movements."""

import json
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Optional, Union

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .models import (
    LOT_MODELS,
    BatchUsage,
    ProductionBatch,
    RawMaterial,
    RecurringProduct,
    TransactionLog,
    TransferRecord,
    Unit,
    User,
    WasteRecord,
)

logger = logging.getLogger(__name__)

Lot = Union[RawMaterial, RecurringProduct]


def lot_type_value(lot_type: Any) -> str:
    """Return the plain string for a lot type given as str or enum member."""
    return str(getattr(lot_type, "value", lot_type))


def lot_model(lot_type: Any) -> type[Lot]:
    """Return the model class storing lots of ``lot_type``.

    Raises:
        ValueError: If the lot type is unknown
    """
    value = lot_type_value(lot_type)
    try:
        return LOT_MODELS[value]
    except KeyError:
        raise ValueError(f"Unknown lot type: {value}") from None


async def _save(session: AsyncSession, instance: Any, commit: bool) -> None:
    session.add(instance)
    if commit:
        await session.commit()
    else:
        await session.flush()
    await session.refresh(instance)


# ===== User Operations =====


async def create_user(session: AsyncSession, email: str, full_name: Optional[str] = None) -> User:
    """Create a new user.

    Args:
        session: Database session
        email: User's email address
        full_name: Optional display name shown in movement history

    Returns:
        The created user
    """
    user = User(email=email, full_name=full_name)
    await _save(session, user, commit=True)
    logger.info(f"Created user: {user.email} (id={user.id})")
    return user


# ===== Unit Operations =====


async def create_unit(
    session: AsyncSession,
    unit_key: str,
    display_name: str,
    lot_type: Any,
    allows_decimal: bool,
    status: str = "active",
) -> Unit:
    """Create a unit of measure for one lot type.

    Args:
        session: Database session
        unit_key: Unique key (e.g., "rm_pieces")
        display_name: Name stored on lots (e.g., "Pieces")
        lot_type: Lot type the unit applies to
        allows_decimal: Whether fractional quantities are allowed
        status: "active" or "inactive"

    Returns:
        The created unit
    """
    unit = Unit(
        unit_key=unit_key,
        display_name=display_name,
        lot_type=lot_type_value(lot_type),
        allows_decimal=allows_decimal,
        status=status,
    )
    await _save(session, unit, commit=True)
    logger.info(f"Created unit: {unit.display_name} (allows_decimal={unit.allows_decimal}, id={unit.id})")
    return unit


async def get_unit_by_name(session: AsyncSession, lot_type: Any, display_name: str) -> Optional[Unit]:
    """Get a unit by display name for a lot type, including inactive units."""
    result = await session.execute(
        select(Unit)
        .where(
            Unit.lot_type == lot_type_value(lot_type),
            Unit.display_name == display_name,
        )
        .order_by(Unit.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_units(
    session: AsyncSession,
    lot_type: Any = None,
    include_inactive: bool = False,
) -> list[Unit]:
    """List units ordered by display name.

    Args:
        session: Database session
        lot_type: Optional lot type filter
        include_inactive: Include units no longer selectable for new lots

    Returns:
        List of units
    """
    query = select(Unit).order_by(Unit.display_name)
    if lot_type is not None:
        query = query.where(Unit.lot_type == lot_type_value(lot_type))
    if not include_inactive:
        query = query.where(Unit.status == "active")
    result = await session.execute(query)
    return list(result.scalars().all())


# ===== Lot Operations =====


async def create_lot(
    session: AsyncSession,
    lot_type: Any,
    lot_code: str,
    name: str,
    unit: str,
    quantity_received: Decimal,
    received_date: date,
    notes: Optional[str] = None,
    created_by: Optional[int] = None,
    commit: bool = True,
    **extra: Any,
) -> Lot:
    """Create a received lot of raw material or recurring product.

    ``quantity_available`` starts equal to ``quantity_received``.

    Args:
        session: Database session
        lot_type: "raw_material" or "recurring_product"
        lot_code: Unique lot identifier printed on the stock
        name: Name of the material or product
        unit: Unit of measure display name
        quantity_received: Quantity received
        received_date: Date the lot was received
        notes: Optional notes
        created_by: Optional ID of the receiving user
        commit: Commit immediately (False flushes within the caller's transaction)
        **extra: Type-specific columns (supplier_name, condition, category)

    Returns:
        The created lot
    """
    model = lot_model(lot_type)
    lot = model(
        lot_code=lot_code,
        name=name,
        unit=unit,
        quantity_received=quantity_received,
        quantity_available=quantity_received,
        received_date=received_date,
        notes=notes,
        created_by=created_by,
        **extra,
    )
    await _save(session, lot, commit)
    logger.info(f"Created {model.__tablename__} lot: {lot.lot_code} (qty={quantity_received} {unit}, id={lot.id})")
    return lot


async def get_lot(
    session: AsyncSession,
    lot_type: Any,
    lot_id: int,
    lock: bool = False,
) -> Optional[Lot]:
    """Get a lot by ID.

    Args:
        session: Database session
        lot_type: Lot type of the lot
        lot_id: ID of the lot
        lock: Take a row lock (SELECT ... FOR UPDATE) until the transaction ends

    Returns:
        The lot if found, None otherwise
    """
    model = lot_model(lot_type)
    query = select(model).where(model.id == lot_id)
    if lock:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def list_lots(
    session: AsyncSession,
    lot_type: Any,
    include_archived: bool = False,
) -> list[Lot]:
    """List lots of one type, newest received first."""
    model = lot_model(lot_type)
    query = select(model).order_by(model.received_date.desc(), model.id.desc())
    if not include_archived:
        query = query.where(model.is_archived.is_(False))
    result = await session.execute(query)
    return list(result.scalars().all())


async def update_quantity_available(
    session: AsyncSession,
    lot_type: Any,
    lot_id: int,
    quantity: Decimal,
    commit: bool = True,
) -> None:
    """Overwrite a lot's cached available quantity.

    Args:
        session: Database session
        lot_type: Lot type of the lot
        lot_id: ID of the lot
        quantity: Balance recomputed from the ledger
        commit: Commit immediately
    """
    model = lot_model(lot_type)
    await session.execute(
        update(model).where(model.id == lot_id).values(quantity_available=quantity)
    )
    if commit:
        await session.commit()
    logger.info(f"Synced {model.__tablename__} id={lot_id} quantity_available to {quantity}")


# ===== Production Batch Operations =====


async def create_batch(
    session: AsyncSession,
    batch_code: str,
    batch_date: date,
    commit: bool = True,
) -> ProductionBatch:
    """Create a production batch.

    Args:
        session: Database session
        batch_code: Unique batch identifier
        batch_date: Date the batch was produced; consumption is dated by it
        commit: Commit immediately

    Returns:
        The created batch
    """
    batch = ProductionBatch(batch_code=batch_code, batch_date=batch_date)
    await _save(session, batch, commit)
    logger.info(f"Created production batch: {batch.batch_code} (date={batch_date}, id={batch.id})")
    return batch


async def get_batch(session: AsyncSession, batch_id: int) -> Optional[ProductionBatch]:
    """Get a production batch by ID."""
    result = await session.execute(select(ProductionBatch).where(ProductionBatch.id == batch_id))
    return result.scalar_one_or_none()


async def add_batch_usage(
    session: AsyncSession,
    batch_id: int,
    lot_type: Any,
    lot_id: int,
    quantity: Decimal,
    unit: str,
    commit: bool = True,
) -> BatchUsage:
    """Record consumption of a lot by a production batch."""
    usage = BatchUsage(
        batch_id=batch_id,
        lot_type=lot_type_value(lot_type),
        lot_id=lot_id,
        quantity_consumed=quantity,
        unit=unit,
    )
    await _save(session, usage, commit)
    logger.info(f"Recorded batch usage id={usage.id}: batch={batch_id}, lot={lot_id}, qty={quantity}")
    return usage


async def list_batch_usage(
    session: AsyncSession,
    lot_type: Any,
    lot_id: int,
    until: Optional[date] = None,
) -> list[tuple[BatchUsage, ProductionBatch]]:
    """List consumption of a lot with the consuming batches.

    Args:
        session: Database session
        lot_type: Lot type of the lot
        lot_id: ID of the lot
        until: Optional inclusive cutoff on the batch date

    Returns:
        (usage, batch) pairs ordered by batch date, then usage id
    """
    query = (
        select(BatchUsage, ProductionBatch)
        .join(ProductionBatch, BatchUsage.batch_id == ProductionBatch.id)
        .where(
            BatchUsage.lot_type == lot_type_value(lot_type),
            BatchUsage.lot_id == lot_id,
        )
        .order_by(ProductionBatch.batch_date.asc(), BatchUsage.id.asc())
    )
    if until is not None:
        query = query.where(ProductionBatch.batch_date <= until)
    result = await session.execute(query)
    return [(row[0], row[1]) for row in result.all()]


# ===== Waste Operations =====


async def create_waste_record(
    session: AsyncSession,
    lot_type: Any,
    lot_id: int,
    lot_identifier: str,
    quantity: Decimal,
    unit: str,
    reason: str,
    waste_date: date,
    notes: Optional[str] = None,
    created_by: Optional[int] = None,
    commit: bool = True,
) -> WasteRecord:
    """Append a waste record.

    Args:
        session: Database session
        lot_type: Lot type of the wasted lot
        lot_id: ID of the wasted lot
        lot_identifier: Lot code, kept for display
        quantity: Quantity wasted
        unit: Unit of measure
        reason: Why the stock was wasted
        waste_date: Date of the waste
        notes: Optional notes
        created_by: Optional ID of the recording user
        commit: Commit immediately

    Returns:
        The created waste record
    """
    record = WasteRecord(
        lot_type=lot_type_value(lot_type),
        lot_id=lot_id,
        lot_identifier=lot_identifier,
        quantity_wasted=quantity,
        unit=unit,
        reason=reason,
        notes=notes,
        waste_date=waste_date,
        created_by=created_by,
    )
    await _save(session, record, commit)
    logger.info(f"Recorded waste id={record.id}: lot={lot_identifier}, qty={quantity} {unit}, date={waste_date}")
    return record


async def list_waste_records(
    session: AsyncSession,
    lot_type: Any,
    lot_id: int,
    until: Optional[date] = None,
) -> list[WasteRecord]:
    """List waste records for a lot, oldest first, with the recorder eager-loaded.

    Args:
        session: Database session
        lot_type: Lot type of the lot
        lot_id: ID of the lot
        until: Optional inclusive cutoff on the waste date

    Returns:
        List of waste records
    """
    query = (
        select(WasteRecord)
        .options(selectinload(WasteRecord.recorder))
        .where(
            WasteRecord.lot_type == lot_type_value(lot_type),
            WasteRecord.lot_id == lot_id,
        )
    )
    if until is not None:
        query = query.where(WasteRecord.waste_date <= until)
    query = query.order_by(WasteRecord.waste_date.asc(), WasteRecord.id.asc())
    result = await session.execute(query)
    return list(result.scalars().all())


# ===== Transfer Operations =====


async def create_transfer_record(
    session: AsyncSession,
    lot_type: Any,
    from_lot: Lot,
    to_lot: Lot,
    quantity: Decimal,
    reason: str,
    transfer_date: date,
    notes: Optional[str] = None,
    created_by: Optional[int] = None,
    commit: bool = True,
) -> TransferRecord:
    """Append a transfer record between two lots of the same type.

    The single row is read as ``transfer_out`` for ``from_lot`` and
    ``transfer_in`` for ``to_lot``.
    """
    record = TransferRecord(
        lot_type=lot_type_value(lot_type),
        from_lot_id=from_lot.id,
        from_lot_identifier=from_lot.lot_code,
        to_lot_id=to_lot.id,
        to_lot_identifier=to_lot.lot_code,
        quantity_transferred=quantity,
        unit=from_lot.unit,
        reason=reason,
        notes=notes,
        transfer_date=transfer_date,
        created_by=created_by,
    )
    await _save(session, record, commit)
    logger.info(
        f"Recorded transfer id={record.id}: {from_lot.lot_code} -> {to_lot.lot_code}, "
        f"qty={quantity} {from_lot.unit}, date={transfer_date}"
    )
    return record


async def list_transfer_records(
    session: AsyncSession,
    lot_type: Any,
    lot_id: int,
    until: Optional[date] = None,
) -> list[TransferRecord]:
    """List transfers where the lot is the source or the target, oldest first.

    Args:
        session: Database session
        lot_type: Lot type of the lot
        lot_id: ID of the lot
        until: Optional inclusive cutoff on the transfer date

    Returns:
        List of transfer records
    """
    query = (
        select(TransferRecord)
        .options(selectinload(TransferRecord.recorder))
        .where(
            TransferRecord.lot_type == lot_type_value(lot_type),
            or_(TransferRecord.from_lot_id == lot_id, TransferRecord.to_lot_id == lot_id),
        )
    )
    if until is not None:
        query = query.where(TransferRecord.transfer_date <= until)
    query = query.order_by(TransferRecord.transfer_date.asc(), TransferRecord.id.asc())
    result = await session.execute(query)
    return list(result.scalars().all())


# ===== Transaction Log Operations =====


async def log_transaction(
    session: AsyncSession,
    operation: str,
    lot_type: Any = None,
    lot_id: Optional[int] = None,
    data: Optional[dict[str, Any]] = None,
    status: str = "COMMITTED",
    commit: bool = True,
) -> TransactionLog:
    """Log a ledger write to the transaction log.

    Args:
        session: Database session
        operation: Operation type (RECEIVE, CONSUME, WASTE, TRANSFER)
        lot_type: Optional lot type of the affected lot
        lot_id: Optional ID of the affected lot
        data: Optional additional data as dictionary
        status: Status of the transaction
        commit: Commit immediately

    Returns:
        The created transaction log entry
    """
    log_entry = TransactionLog(
        operation=operation,
        lot_type=lot_type_value(lot_type) if lot_type is not None else None,
        lot_id=lot_id,
        data=json.dumps(data, default=str) if data else None,
        status=status,
    )
    await _save(session, log_entry, commit)
    logger.info(f"Logged transaction: {operation} (id={log_entry.id})")
    return log_entry


async def get_transaction_logs(
    session: AsyncSession,
    limit: int = 100,
    lot_type: Any = None,
    lot_id: Optional[int] = None,
) -> list[TransactionLog]:
    """Get transaction logs, newest first, optionally for one lot.

    Args:
        session: Database session
        limit: Maximum number of logs to return
        lot_type: Optional lot type filter
        lot_id: Optional lot ID filter

    Returns:
        List of transaction log entries
    """
    query = select(TransactionLog).order_by(TransactionLog.timestamp.desc(), TransactionLog.id.desc())
    if lot_type is not None:
        query = query.where(TransactionLog.lot_type == lot_type_value(lot_type))
    if lot_id is not None:
        query = query.where(TransactionLog.lot_id == lot_id)
    result = await session.execute(query.limit(limit))
    return list(result.scalars().all())
