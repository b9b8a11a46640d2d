from __future__ import annotations

from ..extensions import db
from codledger.time_utils import to_utc_z, to_iso_date


PAYMENT_TYPE_COD = "COD"
PAYMENT_TYPE_PREPAID = "PREPAID"
VALID_PAYMENT_TYPES = (PAYMENT_TYPE_COD, PAYMENT_TYPE_PREPAID)


class Order(db.Model):
    """
    Customer purchase fulfilled through the delivery pipeline.

    STATE: status is only written by order_service.transition_order and
    reconciled_at only by the reconciliation engine. Never assign either field
    directly.

    - courier_id NULL means self-pickup: exempt from dispatch and settlement.
    - payment_type is the closed COD/PREPAID classification fixed at ingestion.
      payment_method / prepaid_method keep the raw storefront strings.
    - reconciled_at goes NULL -> non-NULL exactly once, together with
      settlement_id, inside the transaction that creates the settlement.

    Amounts are integer minor currency units.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_store_status", "store_id", "status"),
        db.Index("ix_orders_pending_reconciliation", "store_id", "courier_id", "reconciled_at"),
        db.CheckConstraint("total_price >= 0", name="ck_orders_total_price_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    order_number = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)

    courier_id = db.Column(db.Integer, db.ForeignKey("carriers.id"), nullable=True, index=True)

    payment_method = db.Column(db.String(64), nullable=True)
    prepaid_method = db.Column(db.String(64), nullable=True)
    payment_type = db.Column(db.String(16), nullable=False, default=PAYMENT_TYPE_COD)

    total_price = db.Column(db.Integer, nullable=False, default=0)
    cod_amount = db.Column(db.Integer, nullable=False, default=0)

    shipping_city = db.Column(db.String(255), nullable=True)
    delivery_zone = db.Column(db.String(255), nullable=True)

    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reconciled_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    courier = db.relationship("Carrier", foreign_keys=[courier_id])
    line_items = db.relationship(
        "OrderLineItem",
        back_populates="order",
        order_by="OrderLineItem.position",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_cod(self) -> bool:
        return self.payment_type == PAYMENT_TYPE_COD

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status!r} store_id={self.store_id}>"

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "order_number": self.order_number,
            "status": self.status,
            "courier_id": self.courier_id,
            "payment_method": self.payment_method,
            "prepaid_method": self.prepaid_method,
            "payment_type": self.payment_type,
            "total_price": self.total_price,
            "cod_amount": self.cod_amount,
            "shipping_city": self.shipping_city,
            "delivery_zone": self.delivery_zone,
            "delivered_at": to_utc_z(self.delivered_at),
            "delivery_date": to_iso_date(self.delivered_at.date()) if self.delivered_at else None,
            "reconciled_at": to_utc_z(self.reconciled_at),
            "settlement_id": self.settlement_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["line_items"] = [line.to_dict() for line in self.line_items]
        return data


class OrderLineItem(db.Model):
    """
    One ordered line of an order.

    product_id may be NULL (unmapped storefront product) or point to a product
    that was later removed from the catalog; both are skipped by inventory.
    stock_deducted tracks whether this line currently holds a decrement, which
    makes decrement/restore idempotent per line.
    """
    __tablename__ = "order_line_items"
    __table_args__ = (
        db.UniqueConstraint("order_id", "position", name="uq_order_line_items_order_position"),
        db.CheckConstraint("quantity >= 0", name="ck_order_line_items_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="SET NULL"), nullable=True, index=True)
    sku = db.Column(db.String(64), nullable=True)
    product_name = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Integer, nullable=True)

    stock_deducted = db.Column(db.Boolean, nullable=False, default=False)
    stock_deducted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    order = db.relationship("Order", back_populates="line_items")

    def __repr__(self) -> str:
        return f"<OrderLineItem id={self.id} order_id={self.order_id} product_id={self.product_id} qty={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "position": self.position,
            "product_id": self.product_id,
            "sku": self.sku,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "stock_deducted": self.stock_deducted,
            "stock_deducted_at": to_utc_z(self.stock_deducted_at),
        }
