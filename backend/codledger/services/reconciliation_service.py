# Overview: Service-layer operations for reconciliation; turns a courier's delivery day into one settlement.

"""
Reconciliation Engine Invariants (authoritative)

One call = one DB transaction = at most one Settlement.

Protocol (lock order is fixed: advisory lock, then code lock, then row locks):
1. Validate the payload (amounts, order list, duplicates) before any lock.
2. Bound the transaction with statement_timeout (Postgres).
3. Take the advisory lock for (store, carrier, delivery date); concurrent
   reconciliations of the same carrier-day queue here.
4. Load the carrier (CarrierNotFound).
5. Check every submitted order exists in the store (OrderNotFound) and none is
   already reconciled (AlreadyReconciled) before anything is mutated.
6. Lock each order NOWAIT in submitted order (ConcurrentModification on
   contention), re-check it under the lock, and resolve its carrier fee.
   - delivered=true: fee -> total_carrier_fees; total_price -> total_cod_expected
     when the order is COD; status is confirmed as delivered.
   - delivered=false: the order must have been dispatched (shipped,
     in_transit, not_delivered, incident or returned), else
     InvalidStateTransition; fee * failed_attempt_fee_percent -> failed fee;
     the status is left alone (the attempt still consumed the courier's trip).
7. net_receivable = collected - carrier fees - failed fees.
8. Allocate the settlement code, insert the settlement (status pending,
   balance_due = net_receivable), stamp reconciled_at/settlement_id on
   every order, write the audit event.
9. Commit. Any error rolls everything back: no partial settlement, no
   partial reconciled_at, no partial inventory movements.

There is no retry in here. Retrying is the caller's decision.

Money is integer minor units. The failed-attempt fee is summed as
fee * percent over all failed orders and divided by 100 once (half-up), so
the total does not depend on processing order.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    AlreadyReconciled,
    CarrierMismatch,
    CarrierNotFound,
    ConcurrentModification,
    ConflictError,
    OrderNotFound,
    ValidationError,
)
from ..models import Carrier, Order, Settlement
from ..models.settlements import SETTLEMENT_STATUS_PENDING
from codledger.time_utils import parse_iso_date, to_iso_date, utcnow
from . import order_service
from .concurrency import acquire_xact_lock, run_in_transaction, set_statement_timeout
from .ledger_service import append_ledger_event
from .rate_service import resolve_fee_for_order
from .settlement_code_service import next_settlement_code, settlement_lock_key


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationLine:
    order_id: int
    delivered: bool


@dataclass
class _Totals:
    dispatched: int = 0
    delivered: int = 0
    not_delivered: int = 0
    cod_delivered: int = 0
    prepaid_delivered: int = 0
    cod_expected: int = 0
    carrier_fees: int = 0
    # sum of fee * percent; divided by 100 once at the end
    failed_fee_hundredths: int = 0

    @property
    def failed_attempt_fee(self) -> int:
        return (self.failed_fee_hundredths + 50) // 100


# =============================================================================
# INPUT VALIDATION (before any lock)
# =============================================================================

def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def normalize_lines(orders) -> list[ReconciliationLine]:
    """Turn [{order_id, delivered}] (or ReconciliationLine) into typed lines, rejecting bad input."""
    if not orders:
        raise ValidationError("At least one order is required")

    lines: list[ReconciliationLine] = []
    seen: set[int] = set()
    for index, raw in enumerate(orders):
        if isinstance(raw, ReconciliationLine):
            line = raw
        elif isinstance(raw, dict):
            order_id = raw.get("order_id")
            delivered = raw.get("delivered")
            if not _is_int(order_id) or order_id <= 0:
                raise ValidationError("order_id must be a positive integer", index=index, order_id=order_id)
            if not isinstance(delivered, bool):
                raise ValidationError("delivered must be true or false", index=index, order_id=order_id)
            line = ReconciliationLine(order_id=order_id, delivered=delivered)
        else:
            raise ValidationError("Each order must be an object with order_id and delivered", index=index)

        if line.order_id in seen:
            raise ValidationError(f"Order {line.order_id} submitted more than once", order_id=line.order_id)
        seen.add(line.order_id)
        lines.append(line)
    return lines


def _failed_fee_percent(carrier: Carrier) -> int:
    if carrier.failed_attempt_fee_percent is not None:
        return carrier.failed_attempt_fee_percent
    return current_app.config.get("DEFAULT_FAILED_ATTEMPT_FEE_PERCENT", 50)


# =============================================================================
# RECONCILE
# =============================================================================

def _precheck_orders(store_id: int, lines: list[ReconciliationLine]) -> None:
    ids = [line.order_id for line in lines]
    rows = (
        db.session.query(Order.id, Order.reconciled_at, Order.settlement_id)
        .filter(Order.store_id == store_id, Order.id.in_(ids))
        .all()
    )
    found = {row.id: row for row in rows}
    for order_id in ids:
        row = found.get(order_id)
        if row is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id, store_id=store_id)
        if row.reconciled_at is not None:
            raise AlreadyReconciled(
                f"Order {order_id} was already reconciled",
                order_id=order_id,
                settlement_id=row.settlement_id,
            )


def _lock_line_order(store_id: int, carrier_id: int, line: ReconciliationLine) -> Order:
    order = order_service.lock_order_nowait(store_id, line.order_id)
    if order is None:
        raise OrderNotFound(f"Order {line.order_id} not found", order_id=line.order_id, store_id=store_id)
    if order.reconciled_at is not None:
        raise AlreadyReconciled(
            f"Order {order.id} was already reconciled",
            order_id=order.id,
            settlement_id=order.settlement_id,
        )
    if order.courier_id != carrier_id:
        raise CarrierMismatch(
            f"Order {order.id} is not assigned to carrier {carrier_id}",
            order_id=order.id,
            carrier_id=carrier_id,
            order_courier_id=order.courier_id,
        )
    return order


def reconcile(
    *,
    store_id: int,
    user_id: int | None,
    carrier_id: int,
    delivery_date,
    total_cash_collected: int,
    orders,
    discrepancy_notes: str | None = None,
) -> Settlement:
    """
    Reconcile one carrier's deliveries for one date into a new Settlement.

    Args:
        store_id: Tenant scope; every order must belong to it
        user_id: Operator creating the settlement (audit)
        carrier_id: Carrier being settled
        delivery_date: Day being settled (date or YYYY-MM-DD)
        total_cash_collected: Cash the courier handed over, minor units
        orders: [{"order_id": int, "delivered": bool}, ...]
        discrepancy_notes: Free text kept on the settlement

    Returns:
        The committed Settlement

    Raises:
        ValidationError, CarrierNotFound, OrderNotFound, AlreadyReconciled,
        ConcurrentModification, CarrierMismatch, InvalidStateTransition,
        SequenceExhausted
    """
    if not _is_int(total_cash_collected) or total_cash_collected < 0:
        raise ValidationError(
            "total_cash_collected must be a non-negative integer",
            total_cash_collected=total_cash_collected,
        )
    if not _is_int(carrier_id) or carrier_id <= 0:
        raise ValidationError("carrier_id must be a positive integer", carrier_id=carrier_id)
    try:
        settlement_date = parse_iso_date(delivery_date)
    except ValueError as exc:
        raise ValidationError(str(exc), delivery_date=str(delivery_date)) from exc
    if settlement_date is None:
        raise ValidationError("delivery_date is required")
    lines = normalize_lines(orders)

    def _op() -> Settlement:
        set_statement_timeout(current_app.config.get("RECONCILIATION_STATEMENT_TIMEOUT_MS"))
        acquire_xact_lock(settlement_lock_key(store_id, carrier_id, settlement_date))

        carrier = db.session.query(Carrier).filter_by(id=carrier_id, store_id=store_id).first()
        if carrier is None:
            raise CarrierNotFound(f"Carrier not found: {carrier_id}", carrier_id=carrier_id, store_id=store_id)
        percent = _failed_fee_percent(carrier)

        _precheck_orders(store_id, lines)

        totals = _Totals()
        locked: list[Order] = []
        for line in lines:
            order = _lock_line_order(store_id, carrier_id, line)
            fee = resolve_fee_for_order(order, carrier_id).fee
            totals.dispatched += 1

            if line.delivered:
                order_service.confirm_delivery(order, actor_user_id=user_id)
                totals.delivered += 1
                totals.carrier_fees += fee
                if order.is_cod:
                    totals.cod_delivered += 1
                    totals.cod_expected += order.total_price
                else:
                    totals.prepaid_delivered += 1
            else:
                order_service.check_failed_attempt(order)
                totals.not_delivered += 1
                totals.failed_fee_hundredths += fee * percent

            locked.append(order)

        if not locked:
            raise ConcurrentModification("No orders could be locked for reconciliation", carrier_id=carrier_id)

        failed_fee = totals.failed_attempt_fee
        net_receivable = Settlement.compute_net_receivable(total_cash_collected, totals.carrier_fees, failed_fee)

        settlement = Settlement(
            store_id=store_id,
            carrier_id=carrier_id,
            settlement_code=next_settlement_code(store_id, settlement_date),
            settlement_date=settlement_date,
            total_dispatched=totals.dispatched,
            total_delivered=totals.delivered,
            total_not_delivered=totals.not_delivered,
            total_cod_delivered=totals.cod_delivered,
            total_prepaid_delivered=totals.prepaid_delivered,
            total_cod_expected=totals.cod_expected,
            total_cod_collected=total_cash_collected,
            total_carrier_fees=totals.carrier_fees,
            failed_attempt_fee=failed_fee,
            net_receivable=net_receivable,
            amount_paid=0,
            balance_due=net_receivable,
            status=SETTLEMENT_STATUS_PENDING,
            discrepancy_notes=discrepancy_notes,
            created_by_user_id=user_id,
        )
        db.session.add(settlement)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ConcurrentModification(
                f"Settlement code {settlement.settlement_code} was taken concurrently",
                settlement_code=settlement.settlement_code,
                store_id=store_id,
            ) from exc

        now = utcnow()
        for order in locked:
            order_service.mark_reconciled(order, settlement_id=settlement.id, reconciled_at=now)
        db.session.flush()

        append_ledger_event(
            store_id=store_id,
            event_type="settlement.created",
            entity_type="settlement",
            entity_id=settlement.id,
            actor_user_id=user_id,
            occurred_at=now,
            payload={
                "settlement_code": settlement.settlement_code,
                "carrier_id": carrier_id,
                "settlement_date": settlement_date.isoformat(),
                "order_ids": [o.id for o in locked],
                "net_receivable": net_receivable,
            },
        )
        return settlement

    try:
        settlement = run_in_transaction(_op)
    except ConflictError as exc:
        logger.warning(
            "Reconciliation aborted for store %s carrier %s on %s: %s %s",
            store_id, carrier_id, settlement_date.isoformat(), exc.code, exc.context,
        )
        raise

    logger.info(
        "Settlement %s created: carrier=%s orders=%s collected=%s fees=%s failed_fees=%s net=%s",
        settlement.settlement_code,
        carrier_id,
        settlement.total_dispatched,
        settlement.total_cod_collected,
        settlement.total_carrier_fees,
        settlement.failed_attempt_fee,
        settlement.net_receivable,
    )
    return settlement


# =============================================================================
# PENDING RECONCILIATION
# =============================================================================

def _pending_orders_query(store_id: int):
    return db.session.query(Order).filter(
        Order.store_id == store_id,
        Order.status == order_service.STATUS_DELIVERED,
        Order.reconciled_at.is_(None),
        Order.courier_id.isnot(None),
        Order.delivered_at.isnot(None),
    )


def get_pending_reconciliation(store_id: int) -> list[dict]:
    """
    Delivered, unreconciled, courier-assigned orders grouped by (delivery date, carrier).

    Newest day first; carriers by name within a day.
    """
    orders = _pending_orders_query(store_id).order_by(Order.delivered_at.asc(), Order.id.asc()).all()
    carriers = {c.id: c for c in db.session.query(Carrier).filter_by(store_id=store_id).all()}

    groups: "OrderedDict[tuple[date, int], dict]" = OrderedDict()
    for order in orders:
        key = (order.delivered_at.date(), order.courier_id)
        group = groups.get(key)
        if group is None:
            carrier = carriers.get(order.courier_id)
            group = {
                "delivery_date": to_iso_date(key[0]),
                "carrier_id": order.courier_id,
                "carrier_name": carrier.name if carrier else None,
                "failed_attempt_fee_percent": carrier.failed_attempt_fee_percent if carrier else None,
                "total_orders": 0,
                "total_cod_expected": 0,
                "total_prepaid": 0,
            }
            groups[key] = group
        group["total_orders"] += 1
        if order.is_cod:
            group["total_cod_expected"] += order.total_price
        else:
            group["total_prepaid"] += 1

    result = list(groups.values())
    result.sort(key=lambda g: g["carrier_name"] or "")
    result.sort(key=lambda g: g["delivery_date"], reverse=True)
    return result


def get_pending_reconciliation_orders(store_id: int, carrier_id: int, delivery_date) -> list[dict]:
    """Orders of one pending group, each with the fee the carrier would charge and its source."""
    try:
        day = parse_iso_date(delivery_date)
    except ValueError as exc:
        raise ValidationError(str(exc), delivery_date=str(delivery_date)) from exc
    if day is None:
        raise ValidationError("date is required")

    start = datetime.combine(day, time.min)
    end = start + timedelta(days=1)
    orders = (
        _pending_orders_query(store_id)
        .filter(
            Order.courier_id == carrier_id,
            Order.delivered_at >= start,
            Order.delivered_at < end,
        )
        .order_by(Order.delivered_at.asc(), Order.id.asc())
        .all()
    )

    result = []
    for order in orders:
        resolution = resolve_fee_for_order(order, carrier_id)
        data = order.to_dict(include_lines=False)
        data["carrier_fee"] = resolution.fee
        data["fee_source"] = resolution.source
        result.append(data)
    return result
