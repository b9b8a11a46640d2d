# Overview: Pytest coverage for settlement payments, corrections and cancellation.

import json

import pytest

from codledger.errors import (
    SettlementImmutable,
    SettlementNotFound,
    SettlementPaymentError,
    ValidationError,
)
from codledger.models import LedgerEvent, Order, Settlement
from codledger.services import reconciliation_service, settlement_service
from codledger.time_utils import utcnow


@pytest.fixture
def settlement(db_session, store, carrier, make_order):
    """Net receivable 75000: one delivered COD order, Asuncion fee 25000."""
    order = make_order(store, carrier, total_price=100000, status="delivered")
    return reconciliation_service.reconcile(
        store_id=store.id,
        user_id=1,
        carrier_id=carrier.id,
        delivery_date=utcnow().date(),
        total_cash_collected=100000,
        orders=[{"order_id": order.id, "delivered": True}],
    )


def _pay(store, settlement, amount, **kw):
    return settlement_service.record_settlement_payment(
        store_id=store.id, settlement_id=settlement.id, amount=amount, **kw
    )


class TestPayments:

    def test_partial_then_paid(self, db_session, store, settlement):
        s = _pay(store, settlement, 50000, method="transfer", reference="TX-1")
        assert (s.status, s.amount_paid, s.balance_due) == ("partial", 50000, 25000)
        assert s.payment_reference == "TX-1"

        s = _pay(store, settlement, 25000)
        assert (s.status, s.amount_paid, s.balance_due) == ("paid", 75000, 0)

    def test_overpayment_settles_with_zero_balance(self, db_session, store, settlement):
        s = _pay(store, settlement, 80000)
        assert s.status == "paid"
        assert s.balance_due == 0
        assert s.amount_paid == 80000

    def test_payment_never_touches_financial_totals(self, db_session, store, settlement):
        before = settlement.to_dict()
        s = _pay(store, settlement, 1000)
        for field in ("total_cod_expected", "total_cod_collected", "total_carrier_fees",
                      "failed_attempt_fee", "net_receivable"):
            assert getattr(s, field) == before[field]

    def test_paid_settlement_rejects_more_payments(self, db_session, store, settlement):
        _pay(store, settlement, 75000)
        with pytest.raises(SettlementPaymentError):
            _pay(store, settlement, 1)

    @pytest.mark.parametrize("amount", [0, -5, 10.5, True])
    def test_amount_must_be_positive_integer(self, db_session, store, settlement, amount):
        with pytest.raises(ValidationError):
            _pay(store, settlement, amount)

    def test_payment_date_parsed(self, db_session, store, settlement):
        s = _pay(store, settlement, 100, payment_date="2026-05-01")
        assert s.payment_date.isoformat() == "2026-05-01"

    def test_payment_is_audited(self, db_session, store, settlement):
        _pay(store, settlement, 100, actor_user_id=9)
        event = LedgerEvent.query.filter_by(event_type="settlement.payment_recorded").one()
        assert event.actor_user_id == 9
        assert json.loads(event.payload)["amount"] == 100

    def test_settlement_of_another_store_not_found(self, db_session, other_store, settlement):
        with pytest.raises(SettlementNotFound):
            _pay(other_store, settlement, 100)


class TestImmutability:

    def test_direct_edit_of_totals_is_blocked(self, db_session, settlement):
        s = db_session.get(Settlement, settlement.id)
        s.net_receivable = 1
        with pytest.raises(SettlementImmutable):
            db_session.flush()
        db_session.rollback()
        assert db_session.get(Settlement, settlement.id).net_receivable == 75000

    def test_status_edit_is_allowed(self, db_session, settlement):
        s = db_session.get(Settlement, settlement.id)
        s.notes = "llamar al courier"
        db_session.commit()
        assert db_session.get(Settlement, settlement.id).notes == "llamar al courier"


class TestCorrection:

    def test_correction_recomputes_net(self, db_session, store, settlement):
        s = settlement_service.correct_settlement_collected(
            store_id=store.id, settlement_id=settlement.id, total_cod_collected=90000,
            reason="recount", actor_user_id=3,
        )
        assert s.total_cod_collected == 90000
        assert s.net_receivable == 65000
        assert s.balance_due == 65000
        assert settlement_service.verify_settlement(s)

        event = LedgerEvent.query.filter_by(event_type="settlement.corrected").one()
        payload = json.loads(event.payload)
        assert payload["before"]["net_receivable"] == 75000
        assert payload["after"]["net_receivable"] == 65000
        assert event.note == "recount"

    def test_correction_needs_reason(self, db_session, store, settlement):
        with pytest.raises(ValidationError):
            settlement_service.correct_settlement_collected(
                store_id=store.id, settlement_id=settlement.id, total_cod_collected=1, reason="  ",
            )

    def test_correction_after_payment_is_rejected(self, db_session, store, settlement):
        _pay(store, settlement, 100)
        with pytest.raises(SettlementPaymentError):
            settlement_service.correct_settlement_collected(
                store_id=store.id, settlement_id=settlement.id, total_cod_collected=1, reason="late",
            )

    def test_correction_window_closes_after_flush(self, db_session, store, settlement):
        settlement_service.correct_settlement_collected(
            store_id=store.id, settlement_id=settlement.id, total_cod_collected=90000, reason="recount",
        )
        s = db_session.get(Settlement, settlement.id)
        s.total_cod_collected = 1
        with pytest.raises(SettlementImmutable):
            db_session.flush()
        db_session.rollback()


class TestCancellation:

    def test_cancel_keeps_orders_reconciled(self, db_session, store, settlement):
        s = settlement_service.cancel_settlement(
            store_id=store.id, settlement_id=settlement.id, reason="duplicado",
        )
        assert s.status == "cancelled"
        assert s.notes == "duplicado"
        assert all(o.reconciled_at is not None for o in Order.query.filter_by(settlement_id=s.id))

    def test_cancel_twice_fails(self, db_session, store, settlement):
        settlement_service.cancel_settlement(store_id=store.id, settlement_id=settlement.id)
        with pytest.raises(SettlementPaymentError):
            settlement_service.cancel_settlement(store_id=store.id, settlement_id=settlement.id)

    def test_cancel_with_payment_fails(self, db_session, store, settlement):
        _pay(store, settlement, 100)
        with pytest.raises(SettlementPaymentError):
            settlement_service.cancel_settlement(store_id=store.id, settlement_id=settlement.id)

    def test_cancelled_settlement_rejects_payments(self, db_session, store, settlement):
        settlement_service.cancel_settlement(store_id=store.id, settlement_id=settlement.id)
        with pytest.raises(SettlementPaymentError):
            _pay(store, settlement, 100)


class TestListing:

    def test_filters(self, db_session, store, settlement):
        assert [s.id for s in settlement_service.list_settlements(store.id)] == [settlement.id]
        assert settlement_service.list_settlements(store.id, status="paid") == []
        assert settlement_service.list_settlements(store.id, carrier_id=settlement.carrier_id)

    def test_unknown_status_filter(self, db_session, store, settlement):
        with pytest.raises(ValidationError):
            settlement_service.list_settlements(store.id, status="archived")

    def test_store_scope(self, db_session, other_store, settlement):
        assert settlement_service.list_settlements(other_store.id) == []
