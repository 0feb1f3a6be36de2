"""SQLAlchemy database models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Quantities are stored with two decimal places
QUANTITY_PRECISION = 12
QUANTITY_SCALE = 2

LOT_TYPE_CHECK = "lot_type IN ('raw_material', 'recurring_product')"


def _quantity_column(nullable: bool = False) -> Mapped[Decimal]:
    return mapped_column(Numeric(QUANTITY_PRECISION, QUANTITY_SCALE), nullable=nullable)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """Model for users who record stock movements."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}')>"


class Unit(Base):
    """Admin-controlled unit of measure for one lot type."""

    __tablename__ = "units"
    __table_args__ = (
        CheckConstraint(LOT_TYPE_CHECK, name="ck_units_lot_type"),
        CheckConstraint("status IN ('active', 'inactive')", name="ck_units_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    unit_key: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    lot_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    allows_decimal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Unit(id={self.id}, display_name='{self.display_name}', allows_decimal={self.allows_decimal})>"


class LotColumns:
    """Columns shared by raw material and recurring product lots."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    lot_code: Mapped[str] = mapped_column(String, unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    unit: Mapped[str] = mapped_column(String, nullable=False)
    quantity_received: Mapped[Decimal] = _quantity_column()
    # Denormalized snapshot, refreshed from the ledger after each write
    quantity_available: Mapped[Decimal] = _quantity_column()
    received_date: Mapped[date] = mapped_column(Date, nullable=False, server_default=func.current_date())
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class RawMaterial(LotColumns, Base):
    """Model for a received lot of raw material."""

    __tablename__ = "raw_materials"
    __table_args__ = (
        CheckConstraint("quantity_received > 0", name="ck_raw_materials_received_positive"),
    )

    supplier_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    condition: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    def __repr__(self) -> str:
        return f"<RawMaterial(id={self.id}, lot_code='{self.lot_code}', available={self.quantity_available})>"


class RecurringProduct(LotColumns, Base):
    """Model for a received lot of a recurring product (packaging, consumables)."""

    __tablename__ = "recurring_products"
    __table_args__ = (
        CheckConstraint("quantity_received > 0", name="ck_recurring_products_received_positive"),
    )

    category: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    supplier_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    def __repr__(self) -> str:
        return f"<RecurringProduct(id={self.id}, lot_code='{self.lot_code}', available={self.quantity_available})>"


class ProductionBatch(Base):
    """Model for a production batch that consumes lots."""

    __tablename__ = "production_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    batch_code: Mapped[str] = mapped_column(String, unique=True, nullable=False, index=True)
    batch_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    qa_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    usages = relationship("BatchUsage", back_populates="batch", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<ProductionBatch(id={self.id}, batch_code='{self.batch_code}', batch_date={self.batch_date})>"


class BatchUsage(Base):
    """Consumption of part of a lot by a production batch."""

    __tablename__ = "batch_usage"
    __table_args__ = (
        CheckConstraint(LOT_TYPE_CHECK, name="ck_batch_usage_lot_type"),
        CheckConstraint("quantity_consumed > 0", name="ck_batch_usage_quantity_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    batch_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("production_batches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    lot_type: Mapped[str] = mapped_column(String, nullable=False)
    lot_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    quantity_consumed: Mapped[Decimal] = _quantity_column()
    unit: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    batch = relationship("ProductionBatch", back_populates="usages")

    def __repr__(self) -> str:
        return f"<BatchUsage(id={self.id}, batch_id={self.batch_id}, lot_id={self.lot_id}, qty={self.quantity_consumed})>"


class WasteRecord(Base):
    """Append-only record of stock lost, damaged or expired."""

    __tablename__ = "waste_tracking"
    __table_args__ = (
        CheckConstraint(LOT_TYPE_CHECK, name="ck_waste_tracking_lot_type"),
        CheckConstraint("quantity_wasted > 0", name="ck_waste_tracking_quantity_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    lot_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    lot_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    lot_identifier: Mapped[str] = mapped_column(String, nullable=False)
    quantity_wasted: Mapped[Decimal] = _quantity_column()
    unit: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str] = mapped_column(String, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    waste_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    created_by: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    recorder = relationship("User")

    def __repr__(self) -> str:
        return f"<WasteRecord(id={self.id}, lot_id={self.lot_id}, qty={self.quantity_wasted}, date={self.waste_date})>"


class TransferRecord(Base):
    """Append-only record of stock moved from one lot to another."""

    __tablename__ = "transfer_tracking"
    __table_args__ = (
        CheckConstraint(LOT_TYPE_CHECK, name="ck_transfer_tracking_lot_type"),
        CheckConstraint("quantity_transferred > 0", name="ck_transfer_tracking_quantity_positive"),
        CheckConstraint("from_lot_id <> to_lot_id", name="ck_transfer_tracking_distinct_lots"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    lot_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    from_lot_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    from_lot_identifier: Mapped[str] = mapped_column(String, nullable=False)
    to_lot_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    to_lot_identifier: Mapped[str] = mapped_column(String, nullable=False)
    quantity_transferred: Mapped[Decimal] = _quantity_column()
    unit: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str] = mapped_column(String, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transfer_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    created_by: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    recorder = relationship("User")

    def __repr__(self) -> str:
        return (
            f"<TransferRecord(id={self.id}, from={self.from_lot_id}, to={self.to_lot_id}, "
            f"qty={self.quantity_transferred}, date={self.transfer_date})>"
        )


class TransactionLog(Base):
    """Model for auditing ledger writes."""

    __tablename__ = "transaction_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation: Mapped[str] = mapped_column(String, nullable=False)
    lot_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    lot_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="COMMITTED")
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<TransactionLog(id={self.id}, operation='{self.operation}', status='{self.status}')>"


LOT_MODELS: dict[str, type[RawMaterial] | type[RecurringProduct]] = {
    "raw_material": RawMaterial,
    "recurring_product": RecurringProduct,
}
