"""Initial COD ledger schema

Revision ID: 20261001_initial_ledger
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261001_initial_ledger"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(with_updated: bool = True):
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())]
    if with_updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()))
    return cols


def upgrade():
    op.create_table(
        "stores",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=True),
        sa.Column("settlement_code_prefix", sa.String(length=16), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(with_updated=False),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_stores_code", "stores", ["code"], unique=True)
    op.create_index("ix_stores_is_active", "stores", ["is_active"])

    op.create_table(
        "carriers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("failed_attempt_fee_percent", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint("store_id", "name", name="uq_carriers_store_name"),
        sa.CheckConstraint(
            "failed_attempt_fee_percent IS NULL OR "
            "(failed_attempt_fee_percent >= 0 AND failed_attempt_fee_percent <= 100)",
            name="ck_carriers_failed_fee_percent",
        ),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_carriers_store_id", "carriers", ["store_id"])

    op.create_table(
        "carrier_rates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id"), nullable=False),
        sa.Column("carrier_id", sa.Integer(), sa.ForeignKey("carriers.id"), nullable=False),
        sa.Column("scope", sa.String(length=8), nullable=False),
        sa.Column("scope_name", sa.String(length=255), nullable=False),
        sa.Column("scope_key", sa.String(length=255), nullable=False),
        sa.Column("rate", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("rate >= 0", name="ck_carrier_rates_rate_non_negative"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_carrier_rates_store_id", "carrier_rates", ["store_id"])
    op.create_index("ix_carrier_rates_carrier_id", "carrier_rates", ["carrier_id"])
    op.create_index("ix_carrier_rates_carrier_scope", "carrier_rates", ["carrier_id", "scope", "is_active"])
    op.create_index(
        "uq_carrier_rates_active_scope",
        "carrier_rates",
        ["carrier_id", "scope", "scope_key"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id"), nullable=False),
        sa.Column("sku", sa.String(length=64), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
        sa.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_products_store_id", "products", ["store_id"])

    op.create_table(
        "settlements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id"), nullable=False),
        sa.Column("carrier_id", sa.Integer(), sa.ForeignKey("carriers.id"), nullable=False),
        sa.Column("settlement_code", sa.String(length=64), nullable=False),
        sa.Column("settlement_date", sa.Date(), nullable=False),
        sa.Column("total_dispatched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_delivered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_not_delivered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cod_delivered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_prepaid_delivered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cod_expected", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cod_collected", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_carrier_fees", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_attempt_fee", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("net_receivable", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_paid", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_due", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_date", sa.Date(), nullable=True),
        sa.Column("payment_method", sa.String(length=64), nullable=True),
        sa.Column("payment_reference", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("discrepancy_notes", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("store_id", "settlement_code", name="uq_settlements_store_code"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_settlements_store_id", "settlements", ["store_id"])
    op.create_index("ix_settlements_carrier_id", "settlements", ["carrier_id"])
    op.create_index("ix_settlements_status", "settlements", ["status"])
    op.create_index("ix_settlements_store_date", "settlements", ["store_id", "settlement_date"])
    op.create_index(
        "ix_settlements_store_carrier_date", "settlements", ["store_id", "carrier_id", "settlement_date"]
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id"), nullable=False),
        sa.Column("order_number", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("courier_id", sa.Integer(), sa.ForeignKey("carriers.id"), nullable=True),
        sa.Column("payment_method", sa.String(length=64), nullable=True),
        sa.Column("prepaid_method", sa.String(length=64), nullable=True),
        sa.Column("payment_type", sa.String(length=16), nullable=False, server_default="COD"),
        sa.Column("total_price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cod_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("shipping_city", sa.String(length=255), nullable=True),
        sa.Column("delivery_zone", sa.String(length=255), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settlement_id", sa.Integer(), sa.ForeignKey("settlements.id"), nullable=True),
        *_timestamps(),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("total_price >= 0", name="ck_orders_total_price_non_negative"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_orders_store_id", "orders", ["store_id"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_courier_id", "orders", ["courier_id"])
    op.create_index("ix_orders_reconciled_at", "orders", ["reconciled_at"])
    op.create_index("ix_orders_settlement_id", "orders", ["settlement_id"])
    op.create_index("ix_orders_store_status", "orders", ["store_id", "status"])
    op.create_index(
        "ix_orders_pending_reconciliation", "orders", ["store_id", "courier_id", "reconciled_at"]
    )

    op.create_table(
        "order_line_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="SET NULL"), nullable=True),
        sa.Column("sku", sa.String(length=64), nullable=True),
        sa.Column("product_name", sa.String(length=255), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Integer(), nullable=True),
        sa.Column("stock_deducted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("stock_deducted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("order_id", "position", name="uq_order_line_items_order_position"),
        sa.CheckConstraint("quantity >= 0", name="ck_order_line_items_quantity"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_order_line_items_order_id", "order_line_items", ["order_id"])
    op.create_index("ix_order_line_items_product_id", "order_line_items", ["product_id"])

    op.create_table(
        "inventory_movements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("line_item_id", sa.Integer(), nullable=True),
        sa.Column("quantity_change", sa.Integer(), nullable=False),
        sa.Column("stock_before", sa.Integer(), nullable=False),
        sa.Column("stock_after", sa.Integer(), nullable=False),
        sa.Column("movement_type", sa.String(length=32), nullable=False),
        sa.Column("order_status_from", sa.String(length=32), nullable=True),
        sa.Column("order_status_to", sa.String(length=32), nullable=True),
        sa.Column("note", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_inventory_movements_store_id", "inventory_movements", ["store_id"])
    op.create_index("ix_inventory_movements_product_id", "inventory_movements", ["product_id"])
    op.create_index("ix_inventory_movements_order_id", "inventory_movements", ["order_id"])
    op.create_index("ix_inventory_movements_movement_type", "inventory_movements", ["movement_type"])
    op.create_index("ix_inventory_movements_created_at", "inventory_movements", ["created_at"])
    op.create_index(
        "ix_inventory_movements_product_created", "inventory_movements", ["product_id", "created_at", "id"]
    )

    op.create_table(
        "ledger_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id"), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("note", sa.String(length=255), nullable=True),
        sa.Column("payload", sa.Text(), nullable=True),
        *_timestamps(with_updated=False),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_ledger_events_store_id", "ledger_events", ["store_id"])
    op.create_index("ix_ledger_events_event_type", "ledger_events", ["event_type"])
    op.create_index("ix_ledger_events_entity", "ledger_events", ["entity_type", "entity_id"])
    op.create_index("ix_ledger_events_store_occurred", "ledger_events", ["store_id", "occurred_at"])

    op.create_table(
        "advisory_locks",
        sa.Column("lock_key", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("acquired_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_acquired_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade():
    op.drop_table("advisory_locks")
    op.drop_table("ledger_events")
    op.drop_table("inventory_movements")
    op.drop_table("order_line_items")
    op.drop_table("orders")
    op.drop_table("settlements")
    op.drop_table("products")
    op.drop_table("carrier_rates")
    op.drop_table("carriers")
    op.drop_table("stores")
