# Overview: Service-layer operations for inventory; encapsulates stock changes and the movement log.

# backend/codledger/services/inventory_service.py

from __future__ import annotations

import logging

from ..extensions import db
from ..errors import InsufficientStock, ProductNotFound, ValidationError
from ..models import Product, InventoryMovement
from ..models.inventory import (
    MOVEMENT_ORDER_READY,
    MOVEMENT_ORDER_CANCELLED,
    MOVEMENT_ORDER_REVERTED,
    MOVEMENT_RETURN_ACCEPTED,
    MOVEMENT_RETURN_REJECTED,
)
from codledger.time_utils import utcnow
from .concurrency import first_locked_nowait
"""
Inventory Ledger Invariants (authoritative)

Stock model:
- Product.stock is the current on-hand quantity and is never negative.
- Every change to Product.stock appends exactly one InventoryMovement with
  stock_before / stock_after, inside the same DB transaction.
- Movements are append-only. Replaying quantity_change in (created_at, id)
  order from the first stock_before reproduces Product.stock exactly.

Concurrency:
- The product row is locked (FOR UPDATE NOWAIT) before stock is read, so two
  orders touching the same product can never lose an update. Contention is
  surfaced as ConcurrentModification.

Deleted catalog entries:
- If the referenced product no longer exists the call is a logged no-op and
  returns None. Orders never become unfulfillable because of catalog cleanup.

Transactions:
- Functions here flush but never commit; they always run inside the caller's
  transaction (usually order_service.transition_order).
"""

logger = logging.getLogger(__name__)

RESTORE_MOVEMENT_TYPES = (MOVEMENT_ORDER_CANCELLED, MOVEMENT_ORDER_REVERTED, MOVEMENT_RETURN_ACCEPTED)


def _lock_product(store_id: int, product_id: int | None, *, order_id: int | None) -> Product | None:
    if product_id is None:
        return None
    query = db.session.query(Product).filter_by(id=product_id, store_id=store_id)
    return first_locked_nowait(query, entity="product", product_id=product_id, order_id=order_id)


def _append_movement(
    *,
    product: Product,
    order_id: int | None,
    line_item_id: int | None,
    quantity_change: int,
    stock_before: int,
    movement_type: str,
    status_from: str | None,
    status_to: str | None,
    note: str | None,
) -> InventoryMovement:
    movement = InventoryMovement(
        store_id=product.store_id,
        product_id=product.id,
        order_id=order_id,
        line_item_id=line_item_id,
        quantity_change=quantity_change,
        stock_before=stock_before,
        stock_after=stock_before + quantity_change,
        movement_type=movement_type,
        order_status_from=status_from,
        order_status_to=status_to,
        note=note[:255] if note else None,
        created_at=utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def _skip_missing_product(store_id: int, product_id: int | None, order_id: int | None, action: str) -> None:
    logger.warning(
        "Skipping stock %s: product %s not found in store %s (order %s)",
        action, product_id, store_id, order_id,
    )


def decrement_stock(
    *,
    store_id: int,
    product_id: int | None,
    order_id: int | None,
    quantity: int,
    line_item_id: int | None = None,
    status_from: str | None = None,
    status_to: str | None = None,
    note: str | None = None,
) -> InventoryMovement | None:
    """
    Take `quantity` units out of stock for an order.

    Raises:
        ValidationError: quantity is not positive
        InsufficientStock: quantity exceeds current stock (stock is untouched)
        ConcurrentModification: another transaction holds the product row

    Returns:
        The appended movement, or None if the product no longer exists.
    """
    if quantity <= 0:
        raise ValidationError("quantity must be positive", product_id=product_id, quantity=quantity)

    product = _lock_product(store_id, product_id, order_id=order_id)
    if product is None:
        _skip_missing_product(store_id, product_id, order_id, "decrement")
        return None

    stock_before = product.stock
    if quantity > stock_before:
        raise InsufficientStock(
            f'Insufficient stock for product "{product.name}" (SKU: {product.sku or "N/A"}). '
            f"Required: {quantity}, Available: {stock_before}",
            product_id=product.id,
            sku=product.sku,
            order_id=order_id,
            required=quantity,
            available=stock_before,
        )

    product.stock = stock_before - quantity
    return _append_movement(
        product=product,
        order_id=order_id,
        line_item_id=line_item_id,
        quantity_change=-quantity,
        stock_before=stock_before,
        movement_type=MOVEMENT_ORDER_READY,
        status_from=status_from,
        status_to=status_to,
        note=note or f"Stock decremented: {quantity} x {product.name}",
    )


def restore_stock(
    *,
    store_id: int,
    product_id: int | None,
    order_id: int | None,
    quantity: int,
    movement_type: str = MOVEMENT_ORDER_CANCELLED,
    line_item_id: int | None = None,
    status_from: str | None = None,
    status_to: str | None = None,
    note: str | None = None,
) -> InventoryMovement | None:
    """
    Put `quantity` units back into stock.

    movement_type records why: order_cancelled, order_reverted or return_accepted.

    Returns:
        The appended movement, or None if the product no longer exists.
    """
    if movement_type not in RESTORE_MOVEMENT_TYPES:
        raise ValidationError(
            f"movement_type must be one of {', '.join(RESTORE_MOVEMENT_TYPES)}",
            movement_type=movement_type,
        )
    if quantity <= 0:
        raise ValidationError("quantity must be positive", product_id=product_id, quantity=quantity)

    product = _lock_product(store_id, product_id, order_id=order_id)
    if product is None:
        _skip_missing_product(store_id, product_id, order_id, "restore")
        return None

    stock_before = product.stock
    product.stock = stock_before + quantity
    return _append_movement(
        product=product,
        order_id=order_id,
        line_item_id=line_item_id,
        quantity_change=quantity,
        stock_before=stock_before,
        movement_type=movement_type,
        status_from=status_from,
        status_to=status_to,
        note=note or f"Stock restored: {quantity} x {product.name}",
    )


def record_rejected_return(
    *,
    store_id: int,
    product_id: int | None,
    order_id: int | None,
    quantity: int,
    line_item_id: int | None = None,
    status_from: str | None = None,
    status_to: str | None = None,
    note: str | None = None,
) -> InventoryMovement | None:
    """
    Audit a returned line that is NOT restocked (damaged, missing parts...).

    Appends a zero-delta return_rejected movement; stock is unchanged.
    """
    product = _lock_product(store_id, product_id, order_id=order_id)
    if product is None:
        _skip_missing_product(store_id, product_id, order_id, "return audit")
        return None

    return _append_movement(
        product=product,
        order_id=order_id,
        line_item_id=line_item_id,
        quantity_change=0,
        stock_before=product.stock,
        movement_type=MOVEMENT_RETURN_REJECTED,
        status_from=status_from,
        status_to=status_to,
        note=note or f"Return rejected: {quantity} x {product.name} not restocked",
    )


def list_movements(
    *,
    store_id: int,
    product_id: int | None = None,
    order_id: int | None = None,
    limit: int | None = None,
) -> list[InventoryMovement]:
    q = InventoryMovement.query.filter_by(store_id=store_id)
    if product_id is not None:
        q = q.filter_by(product_id=product_id)
    if order_id is not None:
        q = q.filter_by(order_id=order_id)
    q = q.order_by(InventoryMovement.created_at.asc(), InventoryMovement.id.asc())
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def count_movements_for_order(order_id: int) -> int:
    return InventoryMovement.query.filter_by(order_id=order_id).count()


def replay_stock(*, store_id: int, product_id: int) -> dict:
    """
    Rebuild a product's stock from its movement log.

    The starting point is the stock_before of the first movement (or the
    current stock when the product never moved). consistent is True when the
    replayed value equals Product.stock.
    """
    product = db.session.query(Product).filter_by(id=product_id, store_id=store_id).first()
    if product is None:
        raise ProductNotFound(f"Product {product_id} not found", product_id=product_id, store_id=store_id)

    movements = list_movements(store_id=store_id, product_id=product_id)
    initial = movements[0].stock_before if movements else product.stock

    replayed = initial
    chain_ok = True
    for movement in movements:
        if movement.stock_before != replayed:
            chain_ok = False
        replayed += movement.quantity_change

    return {
        "store_id": store_id,
        "product_id": product_id,
        "initial_stock": initial,
        "replayed_stock": replayed,
        "current_stock": product.stock,
        "movement_count": len(movements),
        "consistent": chain_ok and replayed == product.stock,
    }
