"""Database package initialization."""

from .crud import (
    add_batch_usage,
    create_batch,
    create_lot,
    create_transfer_record,
    create_unit,
    create_user,
    create_waste_record,
    get_batch,
    get_lot,
    get_transaction_logs,
    get_unit_by_name,
    list_batch_usage,
    list_lots,
    list_transfer_records,
    list_units,
    list_waste_records,
    log_transaction,
    update_quantity_available,
)
from .engine import AsyncSessionLocal, close_db, get_session, init_db
from .models import (
    Base,
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
from .source import DatabaseLedgerSource

__all__ = [
    # Models
    "Base",
    "User",
    "Unit",
    "RawMaterial",
    "RecurringProduct",
    "ProductionBatch",
    "BatchUsage",
    "WasteRecord",
    "TransferRecord",
    "TransactionLog",
    # Engine
    "AsyncSessionLocal",
    "init_db",
    "close_db",
    "get_session",
    # CRUD - Users and units
    "create_user",
    "create_unit",
    "get_unit_by_name",
    "list_units",
    # CRUD - Lots
    "create_lot",
    "get_lot",
    "list_lots",
    "update_quantity_available",
    # CRUD - Movements
    "create_batch",
    "get_batch",
    "add_batch_usage",
    "list_batch_usage",
    "create_waste_record",
    "list_waste_records",
    "create_transfer_record",
    "list_transfer_records",
    # CRUD - Transactions
    "log_transaction",
    "get_transaction_logs",
    # Ledger source
    "DatabaseLedgerSource",
]
