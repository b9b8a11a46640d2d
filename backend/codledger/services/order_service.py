# Overview: Service-layer operations for orders; the order state machine and its inventory side effects.

"""
Order State Machine

================================================================================
PURPOSE: Move orders through the fulfillment lifecycle exactly once per request
================================================================================

STATE MACHINE:
    pending -> contacted -> confirmed -> in_preparation -> ready_to_ship
            -> shipped -> in_transit -> delivered

    side branches: not_delivered, incident, cancelled, rejected, returned
    incident -> (retry) -> delivered | cancelled

    Terminal: cancelled, rejected, returned, and delivered once reconciled.

INVENTORY SIDE EFFECTS (per line item, driven by OrderLineItem.stock_deducted):
    - Entering ready_to_ship / shipped / in_transit / delivered decrements
      every line that does not already hold a decrement (order_ready).
      Insufficient stock on any line fails the whole transition.
    - Entering cancelled / rejected restores held lines (order_cancelled).
    - Entering returned restores held lines (return_accepted); lines listed
      as rejected are audited with a zero-delta return_rejected instead.
    - Moving back to pending / contacted / confirmed / in_preparation
      restores held lines (order_reverted).
    - not_delivered and incident keep the stock out: the goods are still
      with the courier.

RULES (NON-NEGOTIABLE):
1. status and reconciled_at are only written here.
2. The order row is locked before its current status is validated; a
   transition against a stale status fails instead of overwriting.
3. Transitions to the same status are rejected.
4. An order may only be deleted if it never produced an inventory movement
   and was never reconciled. Otherwise cancel it.
================================================================================
"""

from __future__ import annotations

import logging
from typing import Iterable

from ..extensions import db
from ..errors import (
    AlreadyReconciled,
    CarrierNotFound,
    InvalidStateTransition,
    OrderDeletionBlocked,
    OrderNotFound,
    ValidationError,
)
from ..models import Carrier, Order, OrderLineItem
from ..models.inventory import (
    MOVEMENT_ORDER_CANCELLED,
    MOVEMENT_ORDER_REVERTED,
    MOVEMENT_RETURN_ACCEPTED,
)
from ..models.orders import PAYMENT_TYPE_COD, PAYMENT_TYPE_PREPAID
from codledger.time_utils import utcnow
from . import inventory_service
from .concurrency import first_locked_nowait, lock_for_update, run_in_transaction
from .ledger_service import append_ledger_event


logger = logging.getLogger(__name__)


# =============================================================================
# STATUSES
# =============================================================================

STATUS_PENDING = "pending"
STATUS_CONTACTED = "contacted"
STATUS_CONFIRMED = "confirmed"
STATUS_IN_PREPARATION = "in_preparation"
STATUS_READY_TO_SHIP = "ready_to_ship"
STATUS_SHIPPED = "shipped"
STATUS_IN_TRANSIT = "in_transit"
STATUS_DELIVERED = "delivered"
STATUS_NOT_DELIVERED = "not_delivered"
STATUS_INCIDENT = "incident"
STATUS_CANCELLED = "cancelled"
STATUS_REJECTED = "rejected"
STATUS_RETURNED = "returned"

VALID_STATUSES = {
    STATUS_PENDING,
    STATUS_CONTACTED,
    STATUS_CONFIRMED,
    STATUS_IN_PREPARATION,
    STATUS_READY_TO_SHIP,
    STATUS_SHIPPED,
    STATUS_IN_TRANSIT,
    STATUS_DELIVERED,
    STATUS_NOT_DELIVERED,
    STATUS_INCIDENT,
    STATUS_CANCELLED,
    STATUS_REJECTED,
    STATUS_RETURNED,
}

TERMINAL_STATUSES = {STATUS_CANCELLED, STATUS_REJECTED, STATUS_RETURNED}

# Entering one of these takes the order's goods out of stock.
STOCK_DECREMENT_STATUSES = {STATUS_READY_TO_SHIP, STATUS_SHIPPED, STATUS_IN_TRANSIT, STATUS_DELIVERED}

# Moving back into one of these puts held stock back.
PRE_SHIPMENT_STATUSES = {STATUS_PENDING, STATUS_CONTACTED, STATUS_CONFIRMED, STATUS_IN_PREPARATION}

# A delivered=true reconciliation line may confirm delivery from these.
DELIVERY_CONFIRMABLE_STATUSES = {STATUS_SHIPPED, STATUS_IN_TRANSIT, STATUS_NOT_DELIVERED, STATUS_INCIDENT}

# A delivered=false reconciliation line is only billable from these: the courier took the order out.
FAILED_ATTEMPT_STATUSES = {
    STATUS_SHIPPED,
    STATUS_IN_TRANSIT,
    STATUS_NOT_DELIVERED,
    STATUS_INCIDENT,
    STATUS_RETURNED,
}

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    STATUS_PENDING: {STATUS_CONTACTED, STATUS_CONFIRMED, STATUS_CANCELLED, STATUS_REJECTED},
    STATUS_CONTACTED: {STATUS_PENDING, STATUS_CONFIRMED, STATUS_CANCELLED, STATUS_REJECTED},
    STATUS_CONFIRMED: {
        STATUS_PENDING,
        STATUS_CONTACTED,
        STATUS_IN_PREPARATION,
        STATUS_READY_TO_SHIP,
        STATUS_SHIPPED,
        STATUS_CANCELLED,
        STATUS_REJECTED,
    },
    STATUS_IN_PREPARATION: {STATUS_PENDING, STATUS_CONFIRMED, STATUS_READY_TO_SHIP, STATUS_CANCELLED},
    STATUS_READY_TO_SHIP: {
        STATUS_PENDING,
        STATUS_CONFIRMED,
        STATUS_IN_PREPARATION,
        STATUS_SHIPPED,
        STATUS_IN_TRANSIT,
        STATUS_CANCELLED,
    },
    STATUS_SHIPPED: {
        STATUS_IN_TRANSIT,
        STATUS_DELIVERED,
        STATUS_NOT_DELIVERED,
        STATUS_INCIDENT,
        STATUS_RETURNED,
        STATUS_CANCELLED,
    },
    STATUS_IN_TRANSIT: {
        STATUS_DELIVERED,
        STATUS_NOT_DELIVERED,
        STATUS_INCIDENT,
        STATUS_RETURNED,
        STATUS_CANCELLED,
    },
    STATUS_NOT_DELIVERED: {
        STATUS_IN_TRANSIT,
        STATUS_DELIVERED,
        STATUS_INCIDENT,
        STATUS_RETURNED,
        STATUS_CANCELLED,
    },
    STATUS_INCIDENT: {STATUS_DELIVERED, STATUS_CANCELLED, STATUS_RETURNED},
    STATUS_DELIVERED: {STATUS_RETURNED, STATUS_CANCELLED},
    STATUS_CANCELLED: set(),
    STATUS_REJECTED: set(),
    STATUS_RETURNED: set(),
}


# =============================================================================
# PAYMENT CLASSIFICATION (ingestion boundary)
# =============================================================================

COD_PAYMENT_METHODS = {"cod", "cash", "contra_entrega", "contra entrega", "efectivo", ""}


def classify_payment_method(payment_method: str | None, prepaid_method: str | None = None) -> str:
    """
    Classify a storefront payment string as COD or PREPAID.

    Runs once at ingestion; the result is stored in Order.payment_type and the
    settlement core only reads that column.

    - prepaid_method set -> PREPAID (paid by transfer/QR before delivery)
    - payment_method in COD_PAYMENT_METHODS (case-insensitive, empty = COD) -> COD
    - anything else -> PREPAID
    """
    if prepaid_method:
        return PAYMENT_TYPE_PREPAID
    normalized = (payment_method or "").strip().lower()
    return PAYMENT_TYPE_COD if normalized in COD_PAYMENT_METHODS else PAYMENT_TYPE_PREPAID


# =============================================================================
# VALIDATION
# =============================================================================

def validate_status(status: str) -> None:
    if status not in VALID_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(sorted(VALID_STATUSES))}",
            status=status,
        )


def can_transition(from_status: str, to_status: str) -> bool:
    """
    Check if a state transition is allowed by the lifecycle table.

    Same-status "transitions" are not allowed: a request to move an order to
    the status it already has is a stale request.
    """
    validate_status(from_status)
    validate_status(to_status)
    return to_status in ALLOWED_TRANSITIONS[from_status]


# =============================================================================
# INGESTION
# =============================================================================

def create_order(
    *,
    store_id: int,
    line_items: Iterable[dict],
    total_price: int,
    payment_method: str | None = None,
    prepaid_method: str | None = None,
    courier_id: int | None = None,
    shipping_city: str | None = None,
    delivery_zone: str | None = None,
    order_number: str | None = None,
    commit: bool = True,
) -> Order:
    """
    Insert a new order in `pending` status with its ordered line items.

    This is the boundary used by the storefront ingestion collaborator; the
    core has no opinion on the upstream format.

    line_items: [{"product_id", "sku", "product_name", "quantity", "unit_price"}]
    """
    items = list(line_items)
    if total_price is None or total_price < 0:
        raise ValidationError("total_price must be non-negative", total_price=total_price)
    for item in items:
        qty = item.get("quantity")
        if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
            raise ValidationError("line item quantity must be a positive integer", quantity=qty)

    def _op() -> Order:
        if courier_id is not None:
            carrier = db.session.query(Carrier).filter_by(id=courier_id, store_id=store_id).first()
            if carrier is None:
                raise CarrierNotFound(f"Carrier not found: {courier_id}", carrier_id=courier_id)

        payment_type = classify_payment_method(payment_method, prepaid_method)
        order = Order(
            store_id=store_id,
            order_number=order_number,
            status=STATUS_PENDING,
            courier_id=courier_id,
            payment_method=payment_method,
            prepaid_method=prepaid_method,
            payment_type=payment_type,
            total_price=total_price,
            cod_amount=total_price if payment_type == PAYMENT_TYPE_COD else 0,
            shipping_city=shipping_city,
            delivery_zone=delivery_zone,
        )
        for position, item in enumerate(items, start=1):
            order.line_items.append(
                OrderLineItem(
                    position=position,
                    product_id=item.get("product_id"),
                    sku=item.get("sku"),
                    product_name=item.get("product_name"),
                    quantity=item["quantity"],
                    unit_price=item.get("unit_price"),
                )
            )
        db.session.add(order)
        db.session.flush()
        return order

    return run_in_transaction(_op, commit=commit)


def assign_courier(*, store_id: int, order_id: int, carrier_id: int | None, commit: bool = True) -> Order:
    """Hand an order to a courier (or back to self-pickup with None) before it is settled."""
    def _op() -> Order:
        order = _get_order_locked(store_id, order_id)
        if order.reconciled_at is not None:
            raise AlreadyReconciled(
                f"Order {order_id} is already reconciled; courier cannot change",
                order_id=order_id,
            )
        if carrier_id is not None:
            carrier = db.session.query(Carrier).filter_by(id=carrier_id, store_id=store_id).first()
            if carrier is None:
                raise CarrierNotFound(f"Carrier not found: {carrier_id}", carrier_id=carrier_id)
        order.courier_id = carrier_id
        return order

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# LOOKUPS
# =============================================================================

def get_order(store_id: int, order_id: int) -> Order:
    order = db.session.query(Order).filter_by(id=order_id, store_id=store_id).first()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", order_id=order_id, store_id=store_id)
    return order


def _get_order_locked(store_id: int | None, order_id: int) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if store_id is not None:
        query = query.filter_by(store_id=store_id)
    order = lock_for_update(query).first()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", order_id=order_id, store_id=store_id)
    # Re-read under the lock; the identity map may hold an older snapshot.
    db.session.refresh(order)
    return order


def lock_order_nowait(store_id: int, order_id: int) -> Order | None:
    """Lock an order without waiting; ConcurrentModification if someone else holds it."""
    query = db.session.query(Order).filter_by(id=order_id, store_id=store_id)
    order = first_locked_nowait(query, entity="order", order_id=order_id)
    if order is not None:
        db.session.refresh(order)
    return order


# =============================================================================
# TRANSITIONS
# =============================================================================

def _decrement_lines(order: Order, from_status: str, to_status: str) -> None:
    now = utcnow()
    for line in order.line_items:
        if line.stock_deducted or line.quantity <= 0:
            continue
        if line.product_id is None:
            logger.warning(
                "Order %s line %s (%s) has no product reference - skipping stock decrement",
                order.id, line.position, line.sku or line.product_name or "unknown",
            )
            continue
        movement = inventory_service.decrement_stock(
            store_id=order.store_id,
            product_id=line.product_id,
            order_id=order.id,
            quantity=line.quantity,
            line_item_id=line.id,
            status_from=from_status,
            status_to=to_status,
        )
        if movement is not None:
            line.stock_deducted = True
            line.stock_deducted_at = now


def _restore_lines(
    order: Order,
    from_status: str,
    to_status: str,
    movement_type: str,
    rejected_line_item_ids: set[int],
) -> None:
    for line in order.line_items:
        if not line.stock_deducted:
            continue
        if line.id in rejected_line_item_ids:
            inventory_service.record_rejected_return(
                store_id=order.store_id,
                product_id=line.product_id,
                order_id=order.id,
                quantity=line.quantity,
                line_item_id=line.id,
                status_from=from_status,
                status_to=to_status,
            )
        else:
            inventory_service.restore_stock(
                store_id=order.store_id,
                product_id=line.product_id,
                order_id=order.id,
                quantity=line.quantity,
                movement_type=movement_type,
                line_item_id=line.id,
                status_from=from_status,
                status_to=to_status,
            )
        line.stock_deducted = False
        line.stock_deducted_at = None


def _restore_movement_type(to_status: str) -> str | None:
    if to_status in (STATUS_CANCELLED, STATUS_REJECTED):
        return MOVEMENT_ORDER_CANCELLED
    if to_status == STATUS_RETURNED:
        return MOVEMENT_RETURN_ACCEPTED
    if to_status in PRE_SHIPMENT_STATUSES:
        return MOVEMENT_ORDER_REVERTED
    return None


def apply_transition(
    order: Order,
    target_status: str,
    *,
    actor_user_id: int | None = None,
    rejected_line_item_ids: Iterable[int] | None = None,
    note: str | None = None,
) -> Order:
    """
    Apply a transition to an order the caller has ALREADY locked.

    Validates against the lifecycle table, runs the inventory side effects and
    appends the audit event. Flushes; never commits.
    """
    validate_status(target_status)
    from_status = order.status

    if order.reconciled_at is not None and from_status == STATUS_DELIVERED:
        raise InvalidStateTransition(
            f"Order {order.id} is delivered and reconciled; no further transitions allowed",
            order_id=order.id,
            from_status=from_status,
            to_status=target_status,
        )

    if not can_transition(from_status, target_status):
        raise InvalidStateTransition(
            f"Cannot move order {order.id} from '{from_status}' to '{target_status}'",
            order_id=order.id,
            from_status=from_status,
            to_status=target_status,
        )

    rejected_ids = set(rejected_line_item_ids or ())
    if rejected_ids and target_status != STATUS_RETURNED:
        raise ValidationError(
            "rejected_line_item_ids only apply to returns",
            order_id=order.id,
            to_status=target_status,
        )
    unknown = rejected_ids - {line.id for line in order.line_items}
    if unknown:
        raise ValidationError(
            f"Line items {sorted(unknown)} do not belong to order {order.id}",
            order_id=order.id,
        )

    if target_status in STOCK_DECREMENT_STATUSES:
        _decrement_lines(order, from_status, target_status)
    else:
        movement_type = _restore_movement_type(target_status)
        if movement_type is not None:
            _restore_lines(order, from_status, target_status, movement_type, rejected_ids)

    order.status = target_status
    if target_status == STATUS_DELIVERED and order.delivered_at is None:
        order.delivered_at = utcnow()

    db.session.flush()

    append_ledger_event(
        store_id=order.store_id,
        event_type="order.status_changed",
        entity_type="order",
        entity_id=order.id,
        actor_user_id=actor_user_id,
        note=note,
        payload={"from": from_status, "to": target_status},
    )
    return order


def transition_order(
    order_id: int,
    target_status: str,
    *,
    actor_user_id: int | None = None,
    store_id: int | None = None,
    expected_status: str | None = None,
    rejected_line_item_ids: Iterable[int] | None = None,
    note: str | None = None,
    commit: bool = True,
) -> Order:
    """
    Move an order to `target_status`.

    Args:
        order_id: Order to transition
        target_status: Desired status
        actor_user_id: Who requested it (audit)
        store_id: Tenant scope; when given the order must belong to it
        expected_status: Status the caller believes the order has. If the
            order has moved on since, the call fails instead of overwriting.
        rejected_line_item_ids: For returns, lines that are not restocked
        commit: False to compose into a caller-owned transaction

    Returns:
        The updated order

    Raises:
        OrderNotFound, InvalidStateTransition, InsufficientStock,
        ConcurrentModification, ValidationError
    """
    validate_status(target_status)
    if expected_status is not None:
        validate_status(expected_status)

    def _op() -> Order:
        order = _get_order_locked(store_id, order_id)
        if expected_status is not None and order.status != expected_status:
            raise InvalidStateTransition(
                f"Order {order_id} is '{order.status}', not '{expected_status}'; reload and retry",
                order_id=order_id,
                from_status=order.status,
                expected_status=expected_status,
                to_status=target_status,
            )
        return apply_transition(
            order,
            target_status,
            actor_user_id=actor_user_id,
            rejected_line_item_ids=rejected_line_item_ids,
            note=note,
        )

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# RECONCILIATION HOOKS (called by reconciliation_service under its locks)
# =============================================================================

def confirm_delivery(order: Order, *, actor_user_id: int | None = None) -> Order:
    """
    Make sure a locked order reported as delivered by the courier is `delivered`.

    Already delivered: no-op. In transit / shipped / failed / incident: moves to
    delivered. Anything else cannot have been delivered.
    """
    if order.status == STATUS_DELIVERED:
        return order
    if order.status not in DELIVERY_CONFIRMABLE_STATUSES:
        raise InvalidStateTransition(
            f"Order {order.id} is '{order.status}' and cannot be settled as delivered",
            order_id=order.id,
            from_status=order.status,
            to_status=STATUS_DELIVERED,
        )
    return apply_transition(order, STATUS_DELIVERED, actor_user_id=actor_user_id, note="delivery confirmed at settlement")


def check_failed_attempt(order: Order) -> Order:
    """
    Make sure a locked order reported as NOT delivered was actually dispatched.

    The status is left alone; an order that never left the warehouse cannot
    be billed a failed attempt.
    """
    if order.status not in FAILED_ATTEMPT_STATUSES:
        raise InvalidStateTransition(
            f"Order {order.id} is '{order.status}' and was never dispatched; "
            "it cannot be settled as a failed attempt",
            order_id=order.id,
            from_status=order.status,
            to_status=STATUS_NOT_DELIVERED,
        )
    return order


def mark_reconciled(order: Order, *, settlement_id: int, reconciled_at) -> Order:
    """Stamp reconciled_at / settlement_id on a locked order, exactly once."""
    if order.reconciled_at is not None:
        raise AlreadyReconciled(
            f"Order {order.id} is already reconciled",
            order_id=order.id,
            settlement_id=order.settlement_id,
        )
    order.reconciled_at = reconciled_at
    order.settlement_id = settlement_id
    return order


# =============================================================================
# DELETION
# =============================================================================

def delete_order(*, store_id: int, order_id: int, actor_user_id: int | None = None, commit: bool = True) -> None:
    """
    Hard-delete an order that never touched stock and was never settled.

    Raises:
        OrderDeletionBlocked: the order has inventory movements or is reconciled;
            it must be cancelled instead.
    """
    def _op() -> None:
        order = _get_order_locked(store_id, order_id)
        movements = inventory_service.count_movements_for_order(order.id)
        if movements or order.reconciled_at is not None:
            raise OrderDeletionBlocked(
                f"Order {order_id} has inventory history or is settled; cancel it instead",
                order_id=order_id,
                movements=movements,
                reconciled=order.reconciled_at is not None,
            )
        append_ledger_event(
            store_id=store_id,
            event_type="order.deleted",
            entity_type="order",
            entity_id=order.id,
            actor_user_id=actor_user_id,
            payload={"status": order.status, "order_number": order.order_number},
        )
        db.session.delete(order)
        db.session.flush()

    run_in_transaction(_op, commit=commit)
