"""Stock ledger reconciliation.

Recomputes the available quantity of a lot from its event streams
(batch consumption, waste, transfers) instead of trusting the cached
``quantity_available`` column. Every function here is a read: the data
comes from a ``LedgerSource`` and nothing is cached between calls.
"""

import logging
from datetime import date, datetime, timezone
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict

from .exceptions import InsufficientStockError, InvalidQuantityError
from .utils import format_quantity

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
WHOLE = Decimal("1")
ZERO = Decimal("0")

# Sort key for records without a creation timestamp
_NO_TIMESTAMP = datetime.min.replace(tzinfo=timezone.utc)

QuantityLike = Union[Decimal, int, float, str]


class LotType(str, Enum):
    """Kinds of lot tracked by the ledger."""

    RAW_MATERIAL = "raw_material"
    RECURRING_PRODUCT = "recurring_product"


class MovementType(str, Enum):
    """Kinds of movement that change a lot's balance."""

    RECEIVED = "received"
    CONSUMPTION = "consumption"
    WASTE = "waste"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"

    @property
    def is_outgoing(self) -> bool:
        return self in (MovementType.CONSUMPTION, MovementType.WASTE, MovementType.TRANSFER_OUT)


class LotSnapshot(BaseModel):
    """A lot as read from the data store."""

    model_config = ConfigDict(frozen=True)

    lot_type: LotType
    lot_id: int
    lot_code: str
    name: str
    unit: str
    allows_decimal: bool
    quantity_received: Decimal
    quantity_available: Decimal
    received_date: Optional[date] = None
    is_archived: bool = False


class ConsumptionEvent(BaseModel):
    """Part of a lot used by a production batch."""

    model_config = ConfigDict(frozen=True)

    id: int
    lot_id: int
    batch_id: int
    batch_code: Optional[str] = None
    event_date: date
    quantity: Decimal
    is_locked: bool = False
    qa_status: str = "pending"
    created_at: Optional[datetime] = None


class WasteEvent(BaseModel):
    """Quantity written off a lot."""

    model_config = ConfigDict(frozen=True)

    id: int
    lot_type: LotType
    lot_id: int
    event_date: date
    quantity: Decimal
    reason: str
    notes: Optional[str] = None
    created_by: Optional[int] = None
    created_by_name: Optional[str] = None
    created_at: Optional[datetime] = None


class TransferEvent(BaseModel):
    """One side of a transfer, seen from ``lot_id``."""

    model_config = ConfigDict(frozen=True)

    id: int
    lot_type: LotType
    lot_id: int
    from_lot_id: int
    to_lot_id: int
    event_date: date
    quantity: Decimal
    direction: MovementType
    reason: str
    notes: Optional[str] = None
    created_by: Optional[int] = None
    created_by_name: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def counterpart_lot_id(self) -> int:
        return self.to_lot_id if self.direction is MovementType.TRANSFER_OUT else self.from_lot_id


class Movement(BaseModel):
    """A history row with the running balance around it."""

    movement_type: MovementType
    event_date: Optional[date]
    quantity: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reference_id: Optional[int] = None
    counterpart_lot_id: Optional[int] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    recorded_by: Optional[str] = None


class Reconciliation(BaseModel):
    """Cached snapshot compared with the recomputed balance."""

    lot: LotSnapshot
    computed_balance: Decimal
    cached_balance: Decimal

    @property
    def drift(self) -> Decimal:
        return self.cached_balance - self.computed_balance

    @property
    def in_sync(self) -> bool:
        return self.drift == ZERO


class LedgerSource(Protocol):
    """Read access to lots and their event streams.

    ``until`` is an inclusive cutoff date; ``None`` means every event.
    Implementations raise ``NotFoundError`` for a missing lot and
    ``DataAccessError`` when the store cannot be read.
    """

    async def get_lot(self, lot_type: LotType, lot_id: int) -> LotSnapshot: ...

    async def list_consumption(
        self, lot_type: LotType, lot_id: int, until: Optional[date] = None
    ) -> list[ConsumptionEvent]: ...

    async def list_waste(
        self, lot_type: LotType, lot_id: int, until: Optional[date] = None
    ) -> list[WasteEvent]: ...

    async def list_transfers(
        self, lot_type: LotType, lot_id: int, until: Optional[date] = None
    ) -> list[TransferEvent]: ...


# ===== Quantity Handling =====


def to_decimal(value: QuantityLike) -> Decimal:
    """Convert a quantity to Decimal without binary float artefacts."""
    if isinstance(value, bool):
        raise InvalidQuantityError(f"Invalid quantity: {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise InvalidQuantityError(f"Invalid quantity: {value!r}") from e
    if not result.is_finite():
        raise InvalidQuantityError(f"Invalid quantity: {value!r}")
    return result


def round_quantity(value: QuantityLike, allows_decimal: bool) -> Decimal:
    """Round a computed balance for storage and display.

    Whole-number units are floored to an integer; other units are rounded
    half-up to two decimal places. Negative values pass through.
    """
    amount = to_decimal(value)
    if allows_decimal:
        return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return amount.quantize(WHOLE, rounding=ROUND_FLOOR)


def normalize_quantity(value: QuantityLike, allows_decimal: bool, unit: str = "") -> Decimal:
    """Validate a quantity submitted for a write.

    Args:
        value: Submitted quantity
        allows_decimal: Whether the lot's unit accepts fractions
        unit: Unit name, used in error messages

    Returns:
        The quantity as a Decimal (integral for whole-number units,
        two decimal places otherwise)

    Raises:
        InvalidQuantityError: If the quantity is not a number, not
            positive, or a fraction of a whole-number unit
    """
    amount = to_decimal(value)
    if allows_decimal:
        amount = amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    else:
        if amount != amount.to_integral_value():
            raise InvalidQuantityError(
                f"{unit or 'This unit'} only accepts whole numbers; got {amount}"
            )
        amount = amount.quantize(WHOLE)
    if amount <= ZERO:
        raise InvalidQuantityError("Quantity must be greater than 0")
    return amount


# ===== Balance Computation =====


def net_balance(
    lot: LotSnapshot,
    consumption: list[ConsumptionEvent],
    waste: list[WasteEvent],
    transfers: list[TransferEvent],
) -> Decimal:
    """Net the event streams against the received quantity."""
    consumed = sum((event.quantity for event in consumption), ZERO)
    wasted = sum((event.quantity for event in waste), ZERO)
    outgoing = sum(
        (t.quantity for t in transfers if t.direction is MovementType.TRANSFER_OUT), ZERO
    )
    incoming = sum(
        (t.quantity for t in transfers if t.direction is MovementType.TRANSFER_IN), ZERO
    )
    balance = lot.quantity_received - consumed - wasted - outgoing + incoming
    return round_quantity(balance, lot.allows_decimal)


async def _lot_balance(
    source: LedgerSource,
    lot_type: LotType,
    lot_id: int,
    as_of: Optional[date],
) -> tuple[LotSnapshot, Decimal]:
    lot = await source.get_lot(lot_type, lot_id)
    # Sequential on purpose: one source may wrap a single session
    consumption = await source.list_consumption(lot_type, lot_id, as_of)
    waste = await source.list_waste(lot_type, lot_id, as_of)
    transfers = await source.list_transfers(lot_type, lot_id, as_of)
    balance = net_balance(lot, consumption, waste, transfers)
    if balance < ZERO:
        logger.warning(
            f"Negative balance {balance} for {lot_type.value} id={lot_id} (as_of={as_of}); ledger data is inconsistent"
        )
    return lot, balance


async def compute_balance(
    source: LedgerSource,
    lot_type: Union[LotType, str],
    lot_id: int,
    as_of: Optional[date] = None,
) -> Decimal:
    """Compute the available quantity of a lot.

    Args:
        source: Where lots and events are read from
        lot_type: ``raw_material`` or ``recurring_product``
        lot_id: ID of the lot
        as_of: Inclusive cutoff date; every event counts when omitted

    Returns:
        received - consumption - waste - outgoing + incoming, rounded for
        the lot's unit. Not clamped at zero.

    Raises:
        NotFoundError: If the lot does not exist
        DataAccessError: If any fetch fails
    """
    _, balance = await _lot_balance(source, LotType(lot_type), lot_id, as_of)
    return balance


async def compute_balance_around_event(
    source: LedgerSource,
    lot_type: Union[LotType, str],
    lot_id: int,
    event_date: date,
    event_quantity: QuantityLike,
    direction: Union[MovementType, str],
    is_after: bool,
) -> Decimal:
    """Balance immediately before or after one recorded movement.

    The balance as of ``event_date`` already includes the movement. For
    the "before" figure only this movement's own quantity is reversed;
    other movements on the same day stay applied.
    """
    movement = MovementType(direction)
    if movement is MovementType.RECEIVED:
        raise ValueError("The received quantity is not a ledger event")

    lot, balance = await _lot_balance(source, LotType(lot_type), lot_id, event_date)
    if is_after:
        return balance

    quantity = to_decimal(event_quantity)
    reversed_balance = balance + quantity if movement.is_outgoing else balance - quantity
    return round_quantity(reversed_balance, lot.allows_decimal)


async def reconcile_lot(
    source: LedgerSource,
    lot_type: Union[LotType, str],
    lot_id: int,
) -> Reconciliation:
    """Compare a lot's cached ``quantity_available`` with its ledger balance."""
    lot, balance = await _lot_balance(source, LotType(lot_type), lot_id, None)
    result = Reconciliation(
        lot=lot,
        computed_balance=balance,
        cached_balance=round_quantity(lot.quantity_available, lot.allows_decimal),
    )
    if not result.in_sync:
        logger.info(
            f"Cached quantity drift on {lot.lot_type.value} id={lot_id}: "
            f"cached={result.cached_balance}, ledger={balance}"
        )
    return result


# ===== Validation =====


async def validate_deduction(
    source: LedgerSource,
    lot: LotSnapshot,
    quantity: QuantityLike,
    on_date: date,
    action: str = "use",
) -> Decimal:
    """Check that ``quantity`` can leave ``lot`` on ``on_date``.

    Must run before the new event is written, so the balance reflects the
    state without it.

    Returns:
        The normalized quantity

    Raises:
        InvalidQuantityError: Non-positive, or a fraction of a whole-number unit
        InsufficientStockError: More than the balance as of ``on_date``
    """
    requested = normalize_quantity(quantity, lot.allows_decimal, lot.unit)
    available = await compute_balance(source, lot.lot_type, lot.lot_id, on_date)
    if requested > available:
        shown_requested = format_quantity(requested, lot.allows_decimal)
        shown_available = format_quantity(available, lot.allows_decimal)
        logger.warning(
            f"Rejected {action} of {requested} on {lot.lot_type.value} id={lot.lot_id}: only {available} available on {on_date}"
        )
        raise InsufficientStockError(
            f"Cannot {action} {shown_requested} {lot.unit}. Only {shown_available} {lot.unit} available.",
            available=available,
            requested=requested,
            unit=lot.unit,
        )
    return requested


# ===== History =====


def event_sort_key(event: Union[ConsumptionEvent, WasteEvent, TransferEvent]) -> tuple[date, datetime, int]:
    created_at = event.created_at or _NO_TIMESTAMP
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    # Row ids are monotonic and break ties between same-day events
    return (event.event_date, created_at, event.id)


async def stock_history(
    source: LedgerSource,
    lot_type: Union[LotType, str],
    lot_id: int,
) -> list[Movement]:
    """List every movement of a lot in chronological order with running balances.

    Movements are ordered by event date, then creation time, then record
    id. The first row is always the received quantity.
    """
    kind = LotType(lot_type)
    lot = await source.get_lot(kind, lot_id)
    consumption = await source.list_consumption(kind, lot_id)
    waste = await source.list_waste(kind, lot_id)
    transfers = await source.list_transfers(kind, lot_id)

    received = round_quantity(lot.quantity_received, lot.allows_decimal)
    history = [
        Movement(
            movement_type=MovementType.RECEIVED,
            event_date=lot.received_date,
            quantity=received,
            balance_before=ZERO,
            balance_after=received,
        )
    ]

    events: list[Union[ConsumptionEvent, WasteEvent, TransferEvent]] = [*consumption, *waste, *transfers]
    running = received
    for event in sorted(events, key=event_sort_key):
        if isinstance(event, ConsumptionEvent):
            movement_type = MovementType.CONSUMPTION
            details = {
                "reference_id": event.batch_id,
                "reason": f"Consumed in batch {event.batch_code or event.batch_id}",
            }
        elif isinstance(event, WasteEvent):
            movement_type = MovementType.WASTE
            details = {
                "reference_id": event.id,
                "reason": event.reason,
                "notes": event.notes,
                "recorded_by": event.created_by_name,
            }
        else:
            movement_type = event.direction
            details = {
                "reference_id": event.id,
                "counterpart_lot_id": event.counterpart_lot_id,
                "reason": event.reason,
                "notes": event.notes,
                "recorded_by": event.created_by_name,
            }

        delta = -event.quantity if movement_type.is_outgoing else event.quantity
        balance_after = round_quantity(running + delta, lot.allows_decimal)
        history.append(
            Movement(
                movement_type=movement_type,
                event_date=event.event_date,
                quantity=event.quantity,
                balance_before=running,
                balance_after=balance_after,
                **details,
            )
        )
        running = balance_after

    return history
