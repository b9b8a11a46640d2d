from __future__ import annotations

from ..extensions import db
from codledger.time_utils import to_utc_z


MOVEMENT_ORDER_READY = "order_ready"
MOVEMENT_ORDER_CANCELLED = "order_cancelled"
MOVEMENT_ORDER_REVERTED = "order_reverted"
MOVEMENT_RETURN_ACCEPTED = "return_accepted"
MOVEMENT_RETURN_REJECTED = "return_rejected"

VALID_MOVEMENT_TYPES = (
    MOVEMENT_ORDER_READY,
    MOVEMENT_ORDER_CANCELLED,
    MOVEMENT_ORDER_REVERTED,
    MOVEMENT_RETURN_ACCEPTED,
    MOVEMENT_RETURN_REJECTED,
)


class Product(db.Model):
    """
    Catalog product with its current stock.

    stock is the one mutable quantity in the ledger. It is only changed by
    inventory_service while holding a row lock, and every change appends an
    InventoryMovement, so stock is always reconstructible from the movement log.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(255), nullable=False)

    stock = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    store = db.relationship("Store", backref=db.backref("products", lazy=True))

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock} store_id={self.store_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "sku": self.sku,
            "name": self.name,
            "stock": self.stock,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryMovement(db.Model):
    """
    Immutable audit record of one stock change.

    Append-only: never updated or deleted. product_id is deliberately not a
    foreign key so the log survives catalog deletions.
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_inventory_movements_product_created", "product_id", "created_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    line_item_id = db.Column(db.Integer, nullable=True)

    quantity_change = db.Column(db.Integer, nullable=False)
    stock_before = db.Column(db.Integer, nullable=False)
    stock_after = db.Column(db.Integer, nullable=False)

    movement_type = db.Column(db.String(32), nullable=False, index=True)
    order_status_from = db.Column(db.String(32), nullable=True)
    order_status_to = db.Column(db.String(32), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<InventoryMovement id={self.id} product_id={self.product_id} "
            f"{self.movement_type} {self.quantity_change:+d}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "order_id": self.order_id,
            "line_item_id": self.line_item_id,
            "quantity_change": self.quantity_change,
            "stock_before": self.stock_before,
            "stock_after": self.stock_after,
            "movement_type": self.movement_type,
            "order_status_from": self.order_status_from,
            "order_status_to": self.order_status_to,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
