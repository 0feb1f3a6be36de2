"""Exceptions raised by the stock ledger."""

from decimal import Decimal
from typing import Optional


class StockLedgerError(Exception):
    """Base class for all stock ledger errors."""

    pass


class NotFoundError(StockLedgerError):
    """Raised when a lot (or another referenced record) does not exist."""

    def __init__(self, message: str, lot_type: Optional[str] = None, lot_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.lot_type = lot_type
        self.lot_id = lot_id


class DataAccessError(StockLedgerError):
    """Raised when the underlying data store could not be read or written.

    Safe to retry unmodified.
    """

    pass


class LedgerValidationError(StockLedgerError):
    """Base class for input errors detected before any write."""

    pass


class InvalidQuantityError(LedgerValidationError):
    """Raised for non-positive quantities or fractions of a whole-number unit."""

    pass


class InvalidTransferError(LedgerValidationError):
    """Raised when two lots cannot take part in a transfer."""

    pass


class InsufficientStockError(LedgerValidationError):
    """Raised when a deduction exceeds the lot's computed balance."""

    def __init__(self, message: str, available: Decimal, requested: Decimal, unit: str) -> None:
        super().__init__(message)
        self.available = available
        self.requested = requested
        self.unit = unit


class InvalidReasonError(LedgerValidationError):
    """Raised when a waste or transfer is recorded without a reason."""

    pass


class ConflictError(StockLedgerError):
    """Raised when a write collides with stored records.

    Duplicate lot or batch codes and unknown recorders end up here;
    retrying the same request will fail the same way.
    """

    pass
