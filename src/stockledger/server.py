"""FastMCP server for stock ledger queries and movements."""

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from . import operations
from .database.engine import AsyncSessionLocal, close_db, init_db
from .database.source import DatabaseLedgerSource
from .exceptions import StockLedgerError
from .ledger import LotType, MovementType, compute_balance, compute_balance_around_event, reconcile_lot, stock_history
from .utils import format_quantity, parse_cutoff_date

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Lifespan management for database connection
@asynccontextmanager
async def lifespan(app: Any) -> AsyncGenerator[None, None]:
    """Manage database lifecycle during server startup and shutdown."""
    logger.info("Starting Stock Ledger MCP Server...")
    try:
        await init_db()
        logger.info("Database initialized successfully")
        yield
    finally:
        logger.info("Shutting down server...")
        await close_db()
        logger.info("Server shutdown complete")


# Initialize FastMCP server
mcp = FastMCP(
    name="stockledger",
    lifespan=lifespan,
)


@asynccontextmanager
async def _ledger() -> AsyncIterator[DatabaseLedgerSource]:
    async with AsyncSessionLocal() as session:
        yield DatabaseLedgerSource(session)


def _parse_date(value: str, field: str) -> Optional[date]:
    """Parse an optional date argument; empty means not given."""
    if not value:
        return None
    parsed = parse_cutoff_date(value)
    if parsed is None:
        raise ToolError(f"Could not understand {field}: {value}")
    return parsed


@mcp.tool()  # type: ignore[misc]
async def get_stock_balance(lot_type: str, lot_id: int, as_of: str = "") -> dict[str, Any]:
    """Get the available quantity of a lot, computed from its movements.

    Args:
        lot_type: "raw_material" or "recurring_product"
        lot_id: ID of the lot
        as_of: Optional cutoff date such as "2025-02-15", "yesterday" or "2 weeks ago".
            Movements after this date are ignored.

    Returns:
        Dictionary with the lot code, balance and unit

    Examples:
        - "How much flour is left in lot 12?" -> get_stock_balance("raw_material", 12)
        - "What did lot 12 hold last week?" -> get_stock_balance("raw_material", 12, "last week")
    """
    cutoff = _parse_date(as_of, "as_of")
    try:
        async with _ledger() as ledger:
            lot = await ledger.get_lot(LotType(lot_type), lot_id)
            balance = await compute_balance(ledger, lot_type, lot_id, cutoff)
        return {
            "status": "success",
            "lot_code": lot.lot_code,
            "name": lot.name,
            "as_of": cutoff.isoformat() if cutoff else None,
            "balance": format_quantity(balance, lot.allows_decimal),
            "unit": lot.unit,
        }
    except StockLedgerError as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error computing stock balance")
        raise ToolError(f"Failed to compute balance: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def get_balance_around_event(
    lot_type: str,
    lot_id: int,
    event_date: str,
    quantity: float,
    direction: str,
    position: str = "after",
) -> dict[str, Any]:
    """Get a lot's balance immediately before or after one recorded movement.

    Args:
        lot_type: "raw_material" or "recurring_product"
        lot_id: ID of the lot
        event_date: Date of the movement (e.g., "2025-02-15")
        quantity: Quantity of the movement
        direction: "consumption", "waste", "transfer_out" or "transfer_in"
        position: "before" or "after"

    Returns:
        Dictionary with the balance and unit
    """
    if position not in ("before", "after"):
        raise ToolError("position must be 'before' or 'after'")
    on_date = _parse_date(event_date, "event_date")
    if on_date is None:
        raise ToolError("event_date is required")
    try:
        movement = MovementType(direction)
    except ValueError:
        raise ToolError(f"Unknown direction: {direction}") from None
    if movement is MovementType.RECEIVED:
        raise ToolError("direction must be a recorded movement, not 'received'")

    try:
        async with _ledger() as ledger:
            lot = await ledger.get_lot(LotType(lot_type), lot_id)
            balance = await compute_balance_around_event(
                ledger, lot_type, lot_id, on_date, quantity, movement, is_after=position == "after"
            )
        return {
            "status": "success",
            "lot_code": lot.lot_code,
            "event_date": on_date.isoformat(),
            "position": position,
            "balance": format_quantity(balance, lot.allows_decimal),
            "unit": lot.unit,
        }
    except StockLedgerError as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error computing balance around event")
        raise ToolError(f"Failed to compute balance: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def get_stock_history(lot_type: str, lot_id: int) -> dict[str, Any]:
    """List every movement of a lot in order, with the running balance after each.

    Args:
        lot_type: "raw_material" or "recurring_product"
        lot_id: ID of the lot

    Returns:
        Dictionary with the lot code, unit and movements
    """
    try:
        async with _ledger() as ledger:
            lot = await ledger.get_lot(LotType(lot_type), lot_id)
            movements = await stock_history(ledger, lot_type, lot_id)
        return {
            "status": "success",
            "lot_code": lot.lot_code,
            "unit": lot.unit,
            "count": len(movements),
            "movements": [
                {
                    "type": m.movement_type.value,
                    "date": m.event_date.isoformat() if m.event_date else None,
                    "quantity": format_quantity(m.quantity, lot.allows_decimal),
                    "balance_after": format_quantity(m.balance_after, lot.allows_decimal),
                    "reason": m.reason,
                }
                for m in movements
            ],
        }
    except StockLedgerError as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error listing stock history")
        raise ToolError(f"Failed to list history: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def reconcile_stock(lot_type: str, lot_id: int) -> dict[str, Any]:
    """Compare a lot's stored available quantity with the balance computed from its movements.

    Args:
        lot_type: "raw_material" or "recurring_product"
        lot_id: ID of the lot

    Returns:
        Dictionary with both figures and whether they agree
    """
    try:
        async with _ledger() as ledger:
            result = await reconcile_lot(ledger, lot_type, lot_id)
        allows_decimal = result.lot.allows_decimal
        return {
            "status": "success",
            "lot_code": result.lot.lot_code,
            "computed_balance": format_quantity(result.computed_balance, allows_decimal),
            "cached_balance": format_quantity(result.cached_balance, allows_decimal),
            "in_sync": result.in_sync,
            "unit": result.lot.unit,
        }
    except StockLedgerError as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error reconciling stock")
        raise ToolError(f"Failed to reconcile lot: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def record_waste(
    lot_type: str,
    lot_id: int,
    quantity: float,
    reason: str,
    notes: str = "",
    waste_date: str = "",
) -> dict[str, Any]:
    """Record that part of a lot was wasted.

    Args:
        lot_type: "raw_material" or "recurring_product"
        lot_id: ID of the lot
        quantity: Quantity wasted
        reason: Why it was wasted (e.g., "spoiled", "dropped")
        notes: Optional notes
        waste_date: Optional date of the waste; defaults to today

    Returns:
        Dictionary with status, message and the new balance

    Examples:
        - "Throw out 2 kg of lot 12, it spoiled" -> record_waste("raw_material", 12, 2, "spoiled")
    """
    on_date = _parse_date(waste_date, "waste_date")
    try:
        async with _ledger() as ledger:
            event = await operations.record_waste(
                ledger,
                lot_type,
                lot_id,
                quantity,
                reason,
                notes=notes or None,
                waste_date=on_date,
            )
            lot = await ledger.get_lot(LotType(lot_type), lot_id)
            balance = await compute_balance(ledger, lot_type, lot_id)
        return {
            "status": "success",
            "message": f"Recorded waste of {format_quantity(event.quantity, lot.allows_decimal)} {lot.unit} on {lot.lot_code}",
            "waste_id": event.id,
            "balance": format_quantity(balance, lot.allows_decimal),
            "unit": lot.unit,
        }
    except StockLedgerError as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error recording waste")
        raise ToolError(f"Failed to record waste: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def transfer_stock(
    lot_type: str,
    from_lot_id: int,
    to_lot_id: int,
    quantity: float,
    reason: str,
    notes: str = "",
    transfer_date: str = "",
) -> dict[str, Any]:
    """Move stock from one lot to another lot of the same type and unit.

    Args:
        lot_type: "raw_material" or "recurring_product"
        from_lot_id: Lot the stock leaves
        to_lot_id: Lot the stock goes into
        quantity: Quantity to move
        reason: Why it was moved (e.g., "consolidation")
        notes: Optional notes
        transfer_date: Optional date of the transfer; defaults to today

    Returns:
        Dictionary with status, message and both new balances
    """
    on_date = _parse_date(transfer_date, "transfer_date")
    try:
        async with _ledger() as ledger:
            event = await operations.transfer_between_lots(
                ledger,
                lot_type,
                from_lot_id,
                to_lot_id,
                quantity,
                reason,
                notes=notes or None,
                transfer_date=on_date,
            )
            from_lot = await ledger.get_lot(LotType(lot_type), from_lot_id)
            to_lot = await ledger.get_lot(LotType(lot_type), to_lot_id)
            from_balance = await compute_balance(ledger, lot_type, from_lot_id)
            to_balance = await compute_balance(ledger, lot_type, to_lot_id)
        allows_decimal = from_lot.allows_decimal
        return {
            "status": "success",
            "message": (
                f"Moved {format_quantity(event.quantity, allows_decimal)} {from_lot.unit} "
                f"from {from_lot.lot_code} to {to_lot.lot_code}"
            ),
            "transfer_id": event.id,
            "from_balance": format_quantity(from_balance, allows_decimal),
            "to_balance": format_quantity(to_balance, allows_decimal),
            "unit": from_lot.unit,
        }
    except StockLedgerError as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error transferring stock")
        raise ToolError(f"Failed to transfer stock: {str(e)}")


def main() -> None:
    """Entry point for the MCP server."""
    logger.info("Initializing Stock Ledger MCP Server")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
