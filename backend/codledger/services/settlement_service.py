# Overview: Service-layer operations for settlements after creation; listing, payments, corrections, cancellation.

"""
Settlement Lifecycle Service

STATUS FLOW:
    pending -> partial -> paid
    pending -> cancelled

DESIGN PRINCIPLES:
- A settlement is created only by reconciliation_service.reconcile.
- Payment recording touches amount_paid / balance_due / status / payment
  fields only. The four money totals and net_receivable never change here.
- correct_settlement_collected is the single audited path that may change a
  financial total, and only before any payment was recorded.
- Cancelling a settlement does not release its orders: reconciled_at stays
  set so no order can ever be settled twice.
- Every change writes a LedgerEvent in the same transaction.
"""

from __future__ import annotations

from datetime import date

from ..extensions import db
from ..errors import LedgerError, SettlementNotFound, SettlementPaymentError, ValidationError
from ..models import Settlement
from ..models.settlements import (
    CORRECTION_SESSION_KEY,
    SETTLEMENT_STATUS_CANCELLED,
    SETTLEMENT_STATUS_PAID,
    SETTLEMENT_STATUS_PARTIAL,
    SETTLEMENT_STATUS_PENDING,
    VALID_SETTLEMENT_STATUSES,
)
from codledger.time_utils import parse_iso_date, utcnow
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_ledger_event


def _run(op):
    try:
        return run_with_retry(op)
    except LedgerError:
        db.session.rollback()
        raise


def _get_locked(store_id: int, settlement_id: int) -> Settlement:
    settlement = lock_for_update(
        db.session.query(Settlement).filter_by(id=settlement_id, store_id=store_id)
    ).first()
    if settlement is None:
        raise SettlementNotFound(f"Settlement {settlement_id} not found", settlement_id=settlement_id)
    db.session.refresh(settlement)
    return settlement


# =============================================================================
# QUERIES
# =============================================================================

def get_settlement(store_id: int, settlement_id: int) -> Settlement:
    settlement = db.session.query(Settlement).filter_by(id=settlement_id, store_id=store_id).first()
    if settlement is None:
        raise SettlementNotFound(f"Settlement {settlement_id} not found", settlement_id=settlement_id)
    return settlement


def list_settlements(
    store_id: int,
    *,
    status: str | None = None,
    carrier_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Settlement]:
    """Settlements of a store, newest settlement date first."""
    q = db.session.query(Settlement).filter(Settlement.store_id == store_id)
    if status is not None:
        if status not in VALID_SETTLEMENT_STATUSES:
            raise ValidationError(f"Invalid settlement status: {status}", status=status)
        q = q.filter(Settlement.status == status)
    if carrier_id is not None:
        q = q.filter(Settlement.carrier_id == carrier_id)
    if date_from is not None:
        q = q.filter(Settlement.settlement_date >= date_from)
    if date_to is not None:
        q = q.filter(Settlement.settlement_date <= date_to)
    return (
        q.order_by(Settlement.settlement_date.desc(), Settlement.settlement_code.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def verify_settlement(settlement: Settlement) -> bool:
    """True when net_receivable still equals collected - fees - failed fees."""
    return settlement.net_receivable == Settlement.compute_net_receivable(
        settlement.total_cod_collected,
        settlement.total_carrier_fees,
        settlement.failed_attempt_fee,
    )


# =============================================================================
# PAYMENTS (accounting boundary)
# =============================================================================

def record_settlement_payment(
    *,
    store_id: int,
    settlement_id: int,
    amount: int,
    method: str | None = None,
    reference: str | None = None,
    notes: str | None = None,
    payment_date=None,
    actor_user_id: int | None = None,
) -> Settlement:
    """
    Record money received from the carrier against a settlement.

    Args:
        amount: Amount received (minor units, > 0)
        method: Transfer, cash... (free text)
        reference: Bank reference or receipt number
        payment_date: Defaults to today (UTC)

    Returns:
        Updated settlement (status partial or paid)

    Raises:
        SettlementNotFound, SettlementPaymentError, ValidationError
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Payment amount must be a positive integer", amount=amount)
    try:
        paid_on = parse_iso_date(payment_date) or utcnow().date()
    except ValueError as exc:
        raise ValidationError(str(exc), payment_date=str(payment_date)) from exc

    def _op() -> Settlement:
        settlement = _get_locked(store_id, settlement_id)
        if settlement.status in (SETTLEMENT_STATUS_PAID, SETTLEMENT_STATUS_CANCELLED):
            raise SettlementPaymentError(
                f"Cannot record a payment on a {settlement.status} settlement",
                settlement_id=settlement.id,
                status=settlement.status,
            )

        settlement.amount_paid = settlement.amount_paid + amount
        remaining = settlement.net_receivable - settlement.amount_paid
        if remaining <= 0:
            settlement.status = SETTLEMENT_STATUS_PAID
            settlement.balance_due = 0
        else:
            settlement.status = SETTLEMENT_STATUS_PARTIAL
            settlement.balance_due = remaining

        settlement.payment_date = paid_on
        if method:
            settlement.payment_method = method
        if reference:
            settlement.payment_reference = reference
        if notes:
            settlement.notes = notes

        db.session.flush()
        append_ledger_event(
            store_id=store_id,
            event_type="settlement.payment_recorded",
            entity_type="settlement",
            entity_id=settlement.id,
            actor_user_id=actor_user_id,
            note=notes,
            payload={
                "amount": amount,
                "amount_paid": settlement.amount_paid,
                "balance_due": settlement.balance_due,
                "status": settlement.status,
                "method": method,
                "reference": reference,
            },
        )
        db.session.commit()
        return settlement

    return _run(_op)


# =============================================================================
# AUDITED CORRECTION
# =============================================================================

def correct_settlement_collected(
    *,
    store_id: int,
    settlement_id: int,
    total_cod_collected: int,
    reason: str,
    actor_user_id: int | None = None,
) -> Settlement:
    """
    Correct the cash the courier handed over (operator typo, recount).

    Only allowed while the settlement is pending and unpaid. Recomputes
    net_receivable and balance_due from the stored fees.
    """
    if isinstance(total_cod_collected, bool) or not isinstance(total_cod_collected, int) or total_cod_collected < 0:
        raise ValidationError(
            "total_cod_collected must be a non-negative integer",
            total_cod_collected=total_cod_collected,
        )
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to correct a settlement")

    def _op() -> Settlement:
        settlement = _get_locked(store_id, settlement_id)
        if settlement.status != SETTLEMENT_STATUS_PENDING or settlement.amount_paid:
            raise SettlementPaymentError(
                "Only pending settlements without payments can be corrected",
                settlement_id=settlement.id,
                status=settlement.status,
                amount_paid=settlement.amount_paid,
            )

        before = {
            "total_cod_collected": settlement.total_cod_collected,
            "net_receivable": settlement.net_receivable,
        }
        net = Settlement.compute_net_receivable(
            total_cod_collected,
            settlement.total_carrier_fees,
            settlement.failed_attempt_fee,
        )

        corrections = db.session.info.setdefault(CORRECTION_SESSION_KEY, set())
        corrections.add(settlement.id)
        try:
            settlement.total_cod_collected = total_cod_collected
            settlement.net_receivable = net
            settlement.balance_due = net
            db.session.flush()
        finally:
            corrections.discard(settlement.id)

        append_ledger_event(
            store_id=store_id,
            event_type="settlement.corrected",
            entity_type="settlement",
            entity_id=settlement.id,
            actor_user_id=actor_user_id,
            note=reason.strip(),
            payload={
                "before": before,
                "after": {"total_cod_collected": total_cod_collected, "net_receivable": net},
            },
        )
        db.session.commit()
        return settlement

    return _run(_op)


# =============================================================================
# CANCELLATION
# =============================================================================

def cancel_settlement(
    *,
    store_id: int,
    settlement_id: int,
    reason: str | None = None,
    actor_user_id: int | None = None,
) -> Settlement:
    """
    Cancel a settlement that has not received any payment.

    The covered orders stay reconciled.
    """
    def _op() -> Settlement:
        settlement = _get_locked(store_id, settlement_id)
        if settlement.status == SETTLEMENT_STATUS_CANCELLED:
            raise SettlementPaymentError(
                "Settlement is already cancelled",
                settlement_id=settlement.id,
            )
        if settlement.amount_paid:
            raise SettlementPaymentError(
                "Cannot cancel a settlement with recorded payments",
                settlement_id=settlement.id,
                amount_paid=settlement.amount_paid,
            )

        settlement.status = SETTLEMENT_STATUS_CANCELLED
        if reason:
            settlement.notes = reason
        db.session.flush()

        append_ledger_event(
            store_id=store_id,
            event_type="settlement.cancelled",
            entity_type="settlement",
            entity_id=settlement.id,
            actor_user_id=actor_user_id,
            note=reason,
            payload={"settlement_code": settlement.settlement_code},
        )
        db.session.commit()
        return settlement

    return _run(_op)
