"""FastAPI REST API for the stock ledger."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Annotated, Any, Literal, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

# Load environment variables from .env file (find it relative to this file)
_env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(_env_path)

from .auth import TokenData, decode_access_token
from .config import settings
from .database.engine import AsyncSessionLocal, close_db, init_db
from .database.source import DatabaseLedgerSource
from .exceptions import (
    ConflictError,
    DataAccessError,
    InsufficientStockError,
    LedgerValidationError,
    NotFoundError,
)
from .ledger import (
    LotSnapshot,
    LotType,
    Movement,
    MovementType,
    TransferEvent,
    WasteEvent,
    compute_balance,
    compute_balance_around_event,
    reconcile_lot,
    stock_history,
)
from .operations import (
    create_production_batch,
    list_lot_snapshots,
    list_transfer_records,
    list_usage_records,
    list_waste_records,
    receive_lot,
    record_batch_usage,
    record_waste,
    transfer_between_lots,
)
from .utils import format_quantity, parse_cutoff_date

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# Pydantic models for API
class RawMaterialCreate(BaseModel):
    lot_code: str = Field(..., min_length=1, description="Unique lot identifier")
    name: str = Field(..., min_length=1, description="Material name")
    unit: str = Field(..., min_length=1, description="Unit of measure (e.g., kg, Pieces)")
    quantity_received: Decimal = Field(..., gt=0, description="Quantity received")
    received_date: Optional[date] = Field(None, description="Defaults to today")
    supplier_name: Optional[str] = None
    condition: Optional[str] = None
    notes: Optional[str] = None


class RecurringProductCreate(BaseModel):
    lot_code: str = Field(..., min_length=1, description="Unique lot identifier")
    name: str = Field(..., min_length=1, description="Product name")
    unit: str = Field(..., min_length=1, description="Unit of measure")
    quantity_received: Decimal = Field(..., gt=0, description="Quantity received")
    received_date: Optional[date] = Field(None, description="Defaults to today")
    category: Optional[str] = None
    supplier_name: Optional[str] = None
    notes: Optional[str] = None


class WasteCreate(BaseModel):
    quantity: Decimal = Field(..., description="Quantity wasted")
    reason: str = Field(..., min_length=1, description="Why the stock was wasted")
    notes: Optional[str] = None
    waste_date: Optional[date] = Field(None, description="Defaults to today")


class TransferCreate(BaseModel):
    lot_type: LotType
    from_lot_id: int
    to_lot_id: int
    quantity: Decimal = Field(..., description="Quantity to move")
    reason: str = Field(..., min_length=1, description="Why the stock was moved")
    notes: Optional[str] = None
    transfer_date: Optional[date] = Field(None, description="Defaults to today")


class BatchCreate(BaseModel):
    batch_code: str = Field(..., min_length=1, description="Unique batch identifier")
    batch_date: Optional[date] = Field(None, description="Defaults to today")


class BatchUsageCreate(BaseModel):
    lot_type: LotType
    lot_id: int
    quantity: Decimal = Field(..., description="Quantity consumed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage database lifecycle."""
    logger.info("Starting Stock Ledger API...")
    await init_db()
    logger.info("Database initialized")
    yield
    logger.info("Shutting down...")
    await close_db()


# Create FastAPI app
app = FastAPI(
    title="Stock Ledger API",
    description="Balances, history and movements for raw material and recurring product lots",
    version="0.1.0",
    lifespan=lifespan,
)

# Security check: don't allow wildcard with credentials in production
if settings.is_production and "*" in settings.allowed_origins:
    raise ValueError("CORS_ORIGINS cannot be '*' in production when credentials are enabled")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate limiting
limiter = Limiter(key_func=get_remote_address, default_limits=["60/minute"])
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return JSON 429 with Retry-After header."""
    retry_after = exc.detail.split(" ")[-1] if exc.detail else "60"
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded"},
        headers={"Retry-After": retry_after},
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InsufficientStockError)
async def insufficient_stock_handler(request: Request, exc: InsufficientStockError) -> JSONResponse:
    """Return 409 with the figures needed to correct the request."""
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "available": str(exc.available),
            "requested": str(exc.requested),
            "unit": exc.unit,
        },
    )


@app.exception_handler(LedgerValidationError)
async def validation_handler(request: Request, exc: LedgerValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    """Duplicate codes and unknown recorders; retrying will not help."""
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(DataAccessError)
async def data_access_handler(request: Request, exc: DataAccessError) -> JSONResponse:
    """Storage failures are transient; tell the client to retry."""
    return JSONResponse(
        status_code=503,
        content={"detail": "Stock data is temporarily unavailable, please retry"},
        headers={"Retry-After": "5"},
    )


@app.get("/health")
async def health_check():
    """Health check endpoint - verifies DB connectivity."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "dependencies": {"database": "healthy"},
        }
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "dependencies": {"database": "unhealthy"},
            },
        )


# ===== Authentication =====

api_router = APIRouter()

# Tokens are issued outside this service with create_access_token and the
# shared JWT_SECRET_KEY; the API only verifies them.
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)]
) -> TokenData:
    """Dependency to get the current authenticated user from a bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = decode_access_token(credentials.credentials)
    if token_data is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token_data


@asynccontextmanager
async def _ledger() -> AsyncIterator[DatabaseLedgerSource]:
    async with AsyncSessionLocal() as session:
        yield DatabaseLedgerSource(session)


# ===== Serialization =====


def _lot_payload(lot: LotSnapshot) -> dict[str, Any]:
    return {
        "lot_type": lot.lot_type.value,
        "id": lot.lot_id,
        "lot_code": lot.lot_code,
        "name": lot.name,
        "unit": lot.unit,
        "allows_decimal": lot.allows_decimal,
        "quantity_received": format_quantity(lot.quantity_received, lot.allows_decimal),
        "received_date": lot.received_date.isoformat() if lot.received_date else None,
    }


def _movement_payload(movement: Movement, allows_decimal: bool) -> dict[str, Any]:
    return {
        "type": movement.movement_type.value,
        "date": movement.event_date.isoformat() if movement.event_date else None,
        "quantity": format_quantity(movement.quantity, allows_decimal),
        "balance_before": format_quantity(movement.balance_before, allows_decimal),
        "balance_after": format_quantity(movement.balance_after, allows_decimal),
        "reference_id": movement.reference_id,
        "counterpart_lot_id": movement.counterpart_lot_id,
        "reason": movement.reason,
        "notes": movement.notes,
        "recorded_by": movement.recorded_by,
    }


def _waste_payload(event: WasteEvent, allows_decimal: bool, recorded_by: Optional[str] = None) -> dict[str, Any]:
    return {
        "id": event.id,
        "waste_date": event.event_date.isoformat(),
        "quantity": format_quantity(event.quantity, allows_decimal),
        "reason": event.reason,
        "notes": event.notes,
        "recorded_by": recorded_by or event.created_by_name,
    }


def _transfer_payload(
    event: TransferEvent, allows_decimal: bool, recorded_by: Optional[str] = None
) -> dict[str, Any]:
    return {
        "id": event.id,
        "direction": event.direction.value,
        "from_lot_id": event.from_lot_id,
        "to_lot_id": event.to_lot_id,
        "transfer_date": event.event_date.isoformat(),
        "quantity": format_quantity(event.quantity, allows_decimal),
        "reason": event.reason,
        "notes": event.notes,
        "recorded_by": recorded_by or event.created_by_name,
    }


def _cutoff(as_of: Optional[str]) -> Optional[date]:
    if as_of is None:
        return None
    cutoff = parse_cutoff_date(as_of)
    if cutoff is None:
        raise HTTPException(status_code=400, detail=f"Could not understand date: {as_of}")
    return cutoff


# ===== Lots =====


@api_router.post("/raw-materials", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_raw_material(
    request: Request,
    current_user: Annotated[TokenData, Depends(get_current_user)],
    body: RawMaterialCreate,
):
    """Receive a raw material lot."""
    extra = {k: v for k, v in {"supplier_name": body.supplier_name, "condition": body.condition}.items() if v}
    async with _ledger() as ledger:
        lot = await receive_lot(
            ledger,
            LotType.RAW_MATERIAL,
            lot_code=body.lot_code,
            name=body.name,
            unit=body.unit,
            quantity_received=body.quantity_received,
            received_date=body.received_date,
            notes=body.notes,
            created_by=current_user.user_id,
            **extra,
        )
    return {"status": "success", "lot": _lot_payload(lot)}


@api_router.post("/recurring-products", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_recurring_product(
    request: Request,
    current_user: Annotated[TokenData, Depends(get_current_user)],
    body: RecurringProductCreate,
):
    """Receive a recurring product lot."""
    extra = {k: v for k, v in {"category": body.category, "supplier_name": body.supplier_name}.items() if v}
    async with _ledger() as ledger:
        lot = await receive_lot(
            ledger,
            LotType.RECURRING_PRODUCT,
            lot_code=body.lot_code,
            name=body.name,
            unit=body.unit,
            quantity_received=body.quantity_received,
            received_date=body.received_date,
            notes=body.notes,
            created_by=current_user.user_id,
            **extra,
        )
    return {"status": "success", "lot": _lot_payload(lot)}


@api_router.get("/lots/{lot_type}")
async def list_lots(
    current_user: Annotated[TokenData, Depends(get_current_user)],
    lot_type: LotType,
    include_archived: bool = Query(False, description="Include archived lots"),
):
    """List lots of one type with their cached available quantity."""
    async with _ledger() as ledger:
        lots = await list_lot_snapshots(ledger, lot_type, include_archived=include_archived)
    return {
        "count": len(lots),
        "lots": [
            {
                **_lot_payload(lot),
                "quantity_available": format_quantity(lot.quantity_available, lot.allows_decimal),
                "is_archived": lot.is_archived,
            }
            for lot in lots
        ],
    }


@api_router.get("/lots/{lot_type}/{lot_id}")
async def get_lot_detail(
    current_user: Annotated[TokenData, Depends(get_current_user)],
    lot_type: LotType,
    lot_id: int,
):
    """Get a lot with its ledger balance and any drift in the cached quantity."""
    async with _ledger() as ledger:
        result = await reconcile_lot(ledger, lot_type, lot_id)
    allows_decimal = result.lot.allows_decimal
    return {
        **_lot_payload(result.lot),
        "quantity_available": format_quantity(result.computed_balance, allows_decimal),
        "cached_quantity_available": format_quantity(result.cached_balance, allows_decimal),
        "in_sync": result.in_sync,
    }


@api_router.get("/lots/{lot_type}/{lot_id}/balance")
async def get_balance(
    current_user: Annotated[TokenData, Depends(get_current_user)],
    lot_type: LotType,
    lot_id: int,
    as_of: Optional[str] = Query(None, description="Cutoff date, e.g. 2025-02-15 or 'yesterday'"),
):
    """Compute a lot's available quantity, optionally as of a past date."""
    cutoff = _cutoff(as_of)
    async with _ledger() as ledger:
        lot = await ledger.get_lot(lot_type, lot_id)
        balance = await compute_balance(ledger, lot_type, lot_id, cutoff)
    return {
        "lot_type": lot_type.value,
        "lot_id": lot_id,
        "lot_code": lot.lot_code,
        "as_of": cutoff.isoformat() if cutoff else None,
        "balance": format_quantity(balance, lot.allows_decimal),
        "unit": lot.unit,
    }


@api_router.get("/lots/{lot_type}/{lot_id}/balance/around-event")
async def get_balance_around_event(
    current_user: Annotated[TokenData, Depends(get_current_user)],
    lot_type: LotType,
    lot_id: int,
    event_date: date = Query(..., description="Date of the movement"),
    quantity: Decimal = Query(..., description="Quantity of the movement"),
    direction: MovementType = Query(..., description="consumption, waste, transfer_out or transfer_in"),
    position: Literal["before", "after"] = Query("after"),
):
    """Balance immediately before or after one recorded movement."""
    if direction is MovementType.RECEIVED:
        raise HTTPException(status_code=400, detail="direction must be a recorded movement, not 'received'")
    async with _ledger() as ledger:
        lot = await ledger.get_lot(lot_type, lot_id)
        balance = await compute_balance_around_event(
            ledger,
            lot_type,
            lot_id,
            event_date,
            quantity,
            direction,
            is_after=position == "after",
        )
    return {
        "lot_type": lot_type.value,
        "lot_id": lot_id,
        "event_date": event_date.isoformat(),
        "position": position,
        "balance": format_quantity(balance, lot.allows_decimal),
        "unit": lot.unit,
    }


@api_router.get("/lots/{lot_type}/{lot_id}/history")
async def get_history(
    current_user: Annotated[TokenData, Depends(get_current_user)],
    lot_type: LotType,
    lot_id: int,
):
    """Every movement of a lot in order, with running balances."""
    async with _ledger() as ledger:
        lot = await ledger.get_lot(lot_type, lot_id)
        movements = await stock_history(ledger, lot_type, lot_id)
    return {
        "lot": _lot_payload(lot),
        "count": len(movements),
        "movements": [_movement_payload(m, lot.allows_decimal) for m in movements],
    }


@api_router.get("/lots/{lot_type}/{lot_id}/usage")
async def get_usage(
    current_user: Annotated[TokenData, Depends(get_current_user)],
    lot_type: LotType,
    lot_id: int,
):
    """List production batches that consumed a lot, newest first."""
    async with _ledger() as ledger:
        lot = await ledger.get_lot(lot_type, lot_id)
        records = await list_usage_records(ledger, lot_type, lot_id)
    return {
        "count": len(records),
        "unit": lot.unit,
        "records": [
            {
                "id": r.id,
                "batch_id": r.batch_id,
                "batch_code": r.batch_code,
                "batch_date": r.event_date.isoformat(),
                "quantity": format_quantity(r.quantity, lot.allows_decimal),
                "is_locked": r.is_locked,
                "qa_status": r.qa_status,
            }
            for r in records
        ],
    }


# ===== Waste =====


@api_router.get("/lots/{lot_type}/{lot_id}/waste")
async def get_waste(
    current_user: Annotated[TokenData, Depends(get_current_user)],
    lot_type: LotType,
    lot_id: int,
):
    """List waste recorded against a lot, newest first."""
    async with _ledger() as ledger:
        lot = await ledger.get_lot(lot_type, lot_id)
        records = await list_waste_records(ledger, lot_type, lot_id)
    return {
        "count": len(records),
        "unit": lot.unit,
        "records": [_waste_payload(r, lot.allows_decimal) for r in records],
    }


@api_router.post("/lots/{lot_type}/{lot_id}/waste", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_waste(
    request: Request,
    current_user: Annotated[TokenData, Depends(get_current_user)],
    lot_type: LotType,
    lot_id: int,
    body: WasteCreate,
):
    """Record waste against a lot."""
    async with _ledger() as ledger:
        event = await record_waste(
            ledger,
            lot_type,
            lot_id,
            body.quantity,
            body.reason,
            notes=body.notes,
            waste_date=body.waste_date,
            created_by=current_user.user_id,
        )
        lot = await ledger.get_lot(lot_type, lot_id)
        balance = await compute_balance(ledger, lot_type, lot_id)
    return {
        "status": "success",
        "message": f"Recorded waste of {format_quantity(event.quantity, lot.allows_decimal)} {lot.unit} on {lot.lot_code}",
        "waste": _waste_payload(event, lot.allows_decimal, recorded_by=current_user.recorder),
        "balance": format_quantity(balance, lot.allows_decimal),
    }


# ===== Transfers =====


@api_router.get("/lots/{lot_type}/{lot_id}/transfers")
async def get_transfers(
    current_user: Annotated[TokenData, Depends(get_current_user)],
    lot_type: LotType,
    lot_id: int,
):
    """List transfers into and out of a lot, newest first."""
    async with _ledger() as ledger:
        lot = await ledger.get_lot(lot_type, lot_id)
        records = await list_transfer_records(ledger, lot_type, lot_id)
    return {
        "count": len(records),
        "unit": lot.unit,
        "records": [_transfer_payload(r, lot.allows_decimal) for r in records],
    }


@api_router.post("/transfers", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_transfer(
    request: Request,
    current_user: Annotated[TokenData, Depends(get_current_user)],
    body: TransferCreate,
):
    """Move stock between two lots of the same type and unit."""
    async with _ledger() as ledger:
        event = await transfer_between_lots(
            ledger,
            body.lot_type,
            body.from_lot_id,
            body.to_lot_id,
            body.quantity,
            body.reason,
            notes=body.notes,
            transfer_date=body.transfer_date,
            created_by=current_user.user_id,
        )
        source_lot = await ledger.get_lot(body.lot_type, body.from_lot_id)
        from_balance = await compute_balance(ledger, body.lot_type, body.from_lot_id)
        to_balance = await compute_balance(ledger, body.lot_type, body.to_lot_id)
    allows_decimal = source_lot.allows_decimal
    return {
        "status": "success",
        "transfer": _transfer_payload(event, allows_decimal, recorded_by=current_user.recorder),
        "from_balance": format_quantity(from_balance, allows_decimal),
        "to_balance": format_quantity(to_balance, allows_decimal),
    }


# ===== Production Batches =====


@api_router.post("/batches", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_batch(
    request: Request,
    current_user: Annotated[TokenData, Depends(get_current_user)],
    body: BatchCreate,
):
    """Create a production batch."""
    async with _ledger() as ledger:
        batch = await create_production_batch(ledger, body.batch_code, body.batch_date)
    return {
        "status": "success",
        "batch": {
            "id": batch.id,
            "batch_code": batch.batch_code,
            "batch_date": batch.batch_date.isoformat(),
        },
    }


@api_router.post("/batches/{batch_id}/usage", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_batch_usage(
    request: Request,
    current_user: Annotated[TokenData, Depends(get_current_user)],
    batch_id: int,
    body: BatchUsageCreate,
):
    """Record that a batch consumed part of a lot."""
    async with _ledger() as ledger:
        event = await record_batch_usage(ledger, batch_id, body.lot_type, body.lot_id, body.quantity)
        lot = await ledger.get_lot(body.lot_type, body.lot_id)
        balance = await compute_balance(ledger, body.lot_type, body.lot_id)
    return {
        "status": "success",
        "usage": {
            "id": event.id,
            "batch_id": event.batch_id,
            "lot_id": event.lot_id,
            "quantity": format_quantity(event.quantity, lot.allows_decimal),
            "batch_date": event.event_date.isoformat(),
        },
        "balance": format_quantity(balance, lot.allows_decimal),
    }


app.include_router(api_router, prefix="/api")


def run_api():
    """Run the FastAPI server."""
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)  # nosec B104


if __name__ == "__main__":
    run_api()
