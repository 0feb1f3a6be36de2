"""Initial schema: users, units, lots, production batches, stock movements, transaction log.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LOT_TYPE_CHECK = "lot_type IN ('raw_material', 'recurring_product')"


def _quantity(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=False)


def _lot_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("lot_code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("unit", sa.String(), nullable=False),
        _quantity("quantity_received"),
        _quantity("quantity_available"),
        sa.Column("received_date", sa.Date(), server_default=sa.text("CURRENT_DATE"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_archived", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # Users
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Units of measure
    op.create_table(
        "units",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("unit_key", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("lot_type", sa.String(), nullable=False),
        sa.Column("allows_decimal", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("status", sa.String(), server_default="active", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("unit_key"),
        sa.CheckConstraint(LOT_TYPE_CHECK, name="ck_units_lot_type"),
        sa.CheckConstraint("status IN ('active', 'inactive')", name="ck_units_status"),
    )
    op.create_index("ix_units_id", "units", ["id"])
    op.create_index("ix_units_display_name", "units", ["display_name"])
    op.create_index("ix_units_lot_type", "units", ["lot_type"])

    # Lots
    op.create_table(
        "raw_materials",
        *_lot_columns(),
        sa.Column("supplier_name", sa.String(), nullable=True),
        sa.Column("condition", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lot_code"),
        sa.CheckConstraint("quantity_received > 0", name="ck_raw_materials_received_positive"),
    )
    op.create_table(
        "recurring_products",
        *_lot_columns(),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("supplier_name", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lot_code"),
        sa.CheckConstraint("quantity_received > 0", name="ck_recurring_products_received_positive"),
    )
    for table in ("raw_materials", "recurring_products"):
        op.create_index(f"ix_{table}_id", table, ["id"])
        op.create_index(f"ix_{table}_lot_code", table, ["lot_code"])
        op.create_index(f"ix_{table}_name", table, ["name"])
    op.create_index("ix_recurring_products_category", "recurring_products", ["category"])

    # Production batches
    op.create_table(
        "production_batches",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_code", sa.String(), nullable=False),
        sa.Column("batch_date", sa.Date(), nullable=False),
        sa.Column("is_locked", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("qa_status", sa.String(), server_default="pending", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("batch_code"),
    )
    op.create_index("ix_production_batches_id", "production_batches", ["id"])
    op.create_index("ix_production_batches_batch_code", "production_batches", ["batch_code"])
    op.create_index("ix_production_batches_batch_date", "production_batches", ["batch_date"])

    op.create_table(
        "batch_usage",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "batch_id", sa.Integer(), sa.ForeignKey("production_batches.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("lot_type", sa.String(), nullable=False),
        sa.Column("lot_id", sa.Integer(), nullable=False),
        _quantity("quantity_consumed"),
        sa.Column("unit", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(LOT_TYPE_CHECK, name="ck_batch_usage_lot_type"),
        sa.CheckConstraint("quantity_consumed > 0", name="ck_batch_usage_quantity_positive"),
    )
    op.create_index("ix_batch_usage_id", "batch_usage", ["id"])
    op.create_index("ix_batch_usage_batch_id", "batch_usage", ["batch_id"])
    op.create_index("ix_batch_usage_lot_id", "batch_usage", ["lot_id"])

    # Waste
    op.create_table(
        "waste_tracking",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("lot_type", sa.String(), nullable=False),
        sa.Column("lot_id", sa.Integer(), nullable=False),
        sa.Column("lot_identifier", sa.String(), nullable=False),
        _quantity("quantity_wasted"),
        sa.Column("unit", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("waste_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(LOT_TYPE_CHECK, name="ck_waste_tracking_lot_type"),
        sa.CheckConstraint("quantity_wasted > 0", name="ck_waste_tracking_quantity_positive"),
    )
    op.create_index("ix_waste_tracking_id", "waste_tracking", ["id"])
    op.create_index("ix_waste_tracking_lot_type", "waste_tracking", ["lot_type"])
    op.create_index("ix_waste_tracking_lot_id", "waste_tracking", ["lot_id"])
    op.create_index("ix_waste_tracking_waste_date", "waste_tracking", ["waste_date"])

    # Transfers
    op.create_table(
        "transfer_tracking",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("lot_type", sa.String(), nullable=False),
        sa.Column("from_lot_id", sa.Integer(), nullable=False),
        sa.Column("from_lot_identifier", sa.String(), nullable=False),
        sa.Column("to_lot_id", sa.Integer(), nullable=False),
        sa.Column("to_lot_identifier", sa.String(), nullable=False),
        _quantity("quantity_transferred"),
        sa.Column("unit", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("transfer_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(LOT_TYPE_CHECK, name="ck_transfer_tracking_lot_type"),
        sa.CheckConstraint("quantity_transferred > 0", name="ck_transfer_tracking_quantity_positive"),
        sa.CheckConstraint("from_lot_id <> to_lot_id", name="ck_transfer_tracking_distinct_lots"),
    )
    op.create_index("ix_transfer_tracking_id", "transfer_tracking", ["id"])
    op.create_index("ix_transfer_tracking_lot_type", "transfer_tracking", ["lot_type"])
    op.create_index("ix_transfer_tracking_from_lot_id", "transfer_tracking", ["from_lot_id"])
    op.create_index("ix_transfer_tracking_to_lot_id", "transfer_tracking", ["to_lot_id"])
    op.create_index("ix_transfer_tracking_transfer_date", "transfer_tracking", ["transfer_date"])

    # Transaction log
    op.create_table(
        "transaction_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("lot_type", sa.String(), nullable=True),
        sa.Column("lot_id", sa.Integer(), nullable=True),
        sa.Column("data", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), server_default="COMMITTED", nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("transaction_log")
    op.drop_table("transfer_tracking")
    op.drop_table("waste_tracking")
    op.drop_table("batch_usage")
    op.drop_table("production_batches")
    op.drop_table("recurring_products")
    op.drop_table("raw_materials")
    op.drop_table("units")
    op.drop_table("users")
