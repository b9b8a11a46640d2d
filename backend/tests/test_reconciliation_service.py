# Overview: Pytest coverage for the reconciliation engine.

"""
Reconciliation Engine Tests

- Money math: carrier fees, COD expected, failed-attempt fees, net receivable
- No order is ever settled twice
- All-or-nothing: any failure leaves no settlement and no reconciled_at
- Pending-reconciliation queries
"""

import json
from datetime import date

import pytest

from codledger.errors import (
    AlreadyReconciled,
    CarrierMismatch,
    CarrierNotFound,
    InvalidStateTransition,
    OrderNotFound,
    ValidationError,
)
from codledger.models import LedgerEvent, Order, Settlement
from codledger.services import order_service, reconciliation_service, settlement_service
from codledger.time_utils import utcnow


def _reconcile(store, carrier, lines, cash, day=None, user_id=5, notes=None):
    return reconciliation_service.reconcile(
        store_id=store.id,
        user_id=user_id,
        carrier_id=carrier.id,
        delivery_date=day or utcnow().date(),
        total_cash_collected=cash,
        orders=[{"order_id": o.id, "delivered": d} for o, d in lines],
        discrepancy_notes=notes,
    )


class TestSettlementMath:

    def test_single_delivered_cod_order(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, total_price=100000, city="Asuncion", status="delivered")

        s = _reconcile(store, carrier, [(order, True)], cash=100000)

        assert s.total_carrier_fees == 25000
        assert s.total_cod_expected == 100000
        assert s.total_cod_collected == 100000
        assert s.failed_attempt_fee == 0
        assert s.net_receivable == 75000
        assert s.balance_due == 75000
        assert s.status == "pending"
        assert (s.total_dispatched, s.total_delivered, s.total_not_delivered) == (1, 1, 0)

        o = db_session.get(Order, order.id)
        assert o.reconciled_at is not None
        assert o.settlement_id == s.id

    def test_failed_attempt_is_billed_and_status_unchanged(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, city="San Lorenzo", status="not_delivered")

        s = _reconcile(store, carrier, [(order, False)], cash=0)

        assert s.failed_attempt_fee == 15000
        assert s.total_carrier_fees == 0
        assert s.total_cod_expected == 0
        assert s.net_receivable == -15000
        o = db_session.get(Order, order.id)
        assert o.reconciled_at is not None
        assert o.status == "not_delivered"

    def test_mixed_batch(self, db_session, store, carrier, make_order):
        cod = make_order(store, carrier, total_price=100000, city="Asuncion", status="delivered")
        prepaid = make_order(store, carrier, total_price=80000, payment_method="card", city="San Lorenzo", status="delivered")
        failed = make_order(store, carrier, total_price=50000, city="Luque", zone="Central", status="in_transit")

        s = _reconcile(store, carrier, [(cod, True), (prepaid, True), (failed, False)], cash=95000)

        assert s.total_carrier_fees == 25000 + 30000
        assert s.total_cod_expected == 100000
        assert s.failed_attempt_fee == 17500
        assert s.net_receivable == 95000 - 55000 - 17500
        assert (s.total_cod_delivered, s.total_prepaid_delivered) == (1, 1)
        assert (s.total_delivered, s.total_not_delivered) == (2, 1)

    def test_failed_fee_rounds_once_over_the_batch(self, db_session, store, make_carrier, make_order):
        c = make_carrier(store, name="Impar", failed_attempt_fee_percent=33, cities={"Asuncion": 1001})
        a = make_order(store, c, status="not_delivered")
        b = make_order(store, c, status="not_delivered")

        s = _reconcile(store, c, [(a, False), (b, False)], cash=0)
        # 2 * 1001 * 33 / 100 = 660.66
        assert s.failed_attempt_fee == 661

    def test_carrier_without_percent_uses_default(self, app, db_session, store, make_carrier, make_order):
        c = make_carrier(store, name="Sin porcentaje", failed_attempt_fee_percent=None, cities={"Asuncion": 20000})
        order = make_order(store, c, status="not_delivered")

        s = _reconcile(store, c, [(order, False)], cash=0)
        assert s.failed_attempt_fee == 20000 * app.config["DEFAULT_FAILED_ATTEMPT_FEE_PERCENT"] // 100

    def test_delivered_flag_confirms_in_transit_order(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, status="in_transit")
        _reconcile(store, carrier, [(order, True)], cash=100000)

        o = db_session.get(Order, order.id)
        assert o.status == "delivered"
        assert o.delivered_at is not None

    def test_delivered_flag_on_unshipped_order_aborts(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, status="confirmed")
        with pytest.raises(InvalidStateTransition):
            _reconcile(store, carrier, [(order, True)], cash=100000)
        assert Settlement.query.count() == 0

    @pytest.mark.parametrize("status", ["pending", "confirmed", "ready_to_ship"])
    def test_failed_attempt_on_undispatched_order_aborts(self, db_session, store, carrier, make_order, status):
        shipped = make_order(store, carrier, status="not_delivered")
        never_left = make_order(store, carrier, status=status)

        with pytest.raises(InvalidStateTransition) as exc:
            _reconcile(store, carrier, [(shipped, False), (never_left, False)], cash=0)

        assert exc.value.context["order_id"] == never_left.id
        assert Settlement.query.count() == 0
        for order_id in (shipped.id, never_left.id):
            assert db_session.get(Order, order_id).reconciled_at is None
        assert db_session.get(Order, never_left.id).status == status

    def test_failed_attempt_on_returned_order_is_billed(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, city="San Lorenzo", status="not_delivered")

        order_service.transition_order(order.id, "returned", store_id=store.id)
        s = _reconcile(store, carrier, [(order, False)], cash=0)
        assert s.failed_attempt_fee == 15000

    def test_net_receivable_is_pure(self, db_session, store, carrier, make_order):
        orders = [make_order(store, carrier, total_price=p, status="delivered") for p in (10000, 20000, 30000)]
        s = _reconcile(store, carrier, [(o, True) for o in orders], cash=55000)

        stored = db_session.get(Settlement, s.id)
        assert stored.net_receivable == stored.total_cod_collected - stored.total_carrier_fees - stored.failed_attempt_fee
        assert settlement_service.verify_settlement(stored)

    def test_processing_order_does_not_change_totals(self, db_session, store, carrier, make_order):
        batch_a = [
            make_order(store, carrier, city="Asuncion", status="delivered"),
            make_order(store, carrier, city="San Lorenzo", status="not_delivered"),
        ]
        batch_b = [
            make_order(store, carrier, city="Asuncion", status="delivered"),
            make_order(store, carrier, city="San Lorenzo", status="not_delivered"),
        ]

        s1 = _reconcile(store, carrier, [(batch_a[0], True), (batch_a[1], False)], cash=1000)
        s2 = _reconcile(store, carrier, [(batch_b[1], False), (batch_b[0], True)], cash=1000)

        for field in ("total_carrier_fees", "failed_attempt_fee", "total_cod_expected", "net_receivable"):
            assert getattr(s1, field) == getattr(s2, field)


class TestSettlementRecord:

    def test_code_and_audit_event(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, status="delivered")
        day = date(2026, 3, 14)

        s = _reconcile(store, carrier, [(order, True)], cash=100000, day=day, notes="faltan 5000")

        assert s.settlement_code == "LIQ-14032026-001"
        assert s.settlement_date == day
        assert s.discrepancy_notes == "faltan 5000"
        assert s.created_by_user_id == 5

        event = LedgerEvent.query.filter_by(event_type="settlement.created", entity_id=s.id).one()
        assert json.loads(event.payload)["order_ids"] == [order.id]

    def test_codes_increase_across_carriers_same_day(self, db_session, store, carrier, make_carrier, make_order):
        other = make_carrier(store, name="Otro", cities={"Asuncion": 20000})
        day = date(2026, 3, 14)
        s1 = _reconcile(store, carrier, [(make_order(store, carrier, status="delivered"), True)], cash=0, day=day)
        s2 = _reconcile(store, other, [(make_order(store, other, status="delivered"), True)], cash=0, day=day)
        assert (s1.settlement_code, s2.settlement_code) == ("LIQ-14032026-001", "LIQ-14032026-002")

    def test_settlement_orders_relationship(self, db_session, store, carrier, make_order):
        orders = [make_order(store, carrier, status="delivered") for _ in range(2)]
        s = _reconcile(store, carrier, [(o, True) for o in orders], cash=0)
        assert s.to_dict(include_orders=True)["order_ids"] == sorted(o.id for o in orders)


class TestNoDoubleSettlement:

    def test_resubmitting_reconciled_order_fails(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, status="delivered")
        _reconcile(store, carrier, [(order, True)], cash=100000)

        with pytest.raises(AlreadyReconciled) as exc:
            _reconcile(store, carrier, [(order, True)], cash=100000)

        assert exc.value.context["order_id"] == order.id
        assert Settlement.query.count() == 1

    def test_one_reconciled_order_aborts_whole_batch(self, db_session, store, carrier, make_order):
        done = make_order(store, carrier, status="delivered")
        _reconcile(store, carrier, [(done, True)], cash=0)
        fresh = make_order(store, carrier, status="delivered")

        with pytest.raises(AlreadyReconciled):
            _reconcile(store, carrier, [(fresh, True), (done, True)], cash=0)

        assert db_session.get(Order, fresh.id).reconciled_at is None
        assert Settlement.query.count() == 1

    def test_cancelled_settlement_does_not_release_orders(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, status="delivered")
        s = _reconcile(store, carrier, [(order, True)], cash=0)
        settlement_service.cancel_settlement(store_id=store.id, settlement_id=s.id)

        with pytest.raises(AlreadyReconciled):
            _reconcile(store, carrier, [(order, True)], cash=0)

    def test_reconciled_delivered_order_is_terminal(self, db_session, store, carrier, make_order):

        order = make_order(store, carrier, status="delivered")
        _reconcile(store, carrier, [(order, True)], cash=0)
        with pytest.raises(InvalidStateTransition):
            order_service.transition_order(order.id, "returned", store_id=store.id)


class TestAbortsAtomically:

    def test_unknown_carrier(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, status="delivered")
        with pytest.raises(CarrierNotFound):
            reconciliation_service.reconcile(
                store_id=store.id, user_id=1, carrier_id=987654, delivery_date=utcnow().date(),
                total_cash_collected=0, orders=[{"order_id": order.id, "delivered": True}],
            )

    def test_carrier_of_another_store(self, db_session, store, other_store, make_carrier, make_order):
        foreign = make_carrier(other_store, name="Ajeno")
        mine = make_carrier(store, name="Propio")
        order = make_order(store, mine, status="delivered")
        with pytest.raises(CarrierNotFound):
            _reconcile(store, foreign, [(order, True)], cash=0)

    def test_unknown_order(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, status="delivered")
        with pytest.raises(OrderNotFound):
            reconciliation_service.reconcile(
                store_id=store.id, user_id=1, carrier_id=carrier.id, delivery_date=utcnow().date(),
                total_cash_collected=0,
                orders=[{"order_id": order.id, "delivered": True}, {"order_id": 999999, "delivered": True}],
            )
        assert db_session.get(Order, order.id).reconciled_at is None

    def test_order_of_another_store(self, db_session, store, other_store, carrier, make_carrier, make_order):
        foreign_carrier = make_carrier(other_store, name="Ajeno")
        foreign_order = make_order(other_store, foreign_carrier, status="delivered")
        with pytest.raises(OrderNotFound):
            _reconcile(store, carrier, [(foreign_order, True)], cash=0)

    def test_order_of_another_carrier(self, db_session, store, carrier, make_carrier, make_order):
        other = make_carrier(store, name="Otro")
        order = make_order(store, other, status="delivered")
        with pytest.raises(CarrierMismatch):
            _reconcile(store, carrier, [(order, True)], cash=0)

    def test_self_pickup_order_cannot_be_settled(self, db_session, store, carrier, make_order):
        order = make_order(store, None, status="confirmed")
        with pytest.raises(CarrierMismatch):
            _reconcile(store, carrier, [(order, False)], cash=0)

    def test_failure_after_delivery_confirmation_rolls_back_status(self, db_session, store, carrier, make_carrier, make_order):
        other = make_carrier(store, name="Otro")
        in_transit = make_order(store, carrier, status="in_transit")
        wrong = make_order(store, other, status="delivered")

        with pytest.raises(CarrierMismatch):
            _reconcile(store, carrier, [(in_transit, True), (wrong, True)], cash=0)

        o = db_session.get(Order, in_transit.id)
        assert o.status == "in_transit"
        assert o.reconciled_at is None
        assert LedgerEvent.query.filter_by(event_type="settlement.created").count() == 0


class TestValidation:

    @pytest.mark.parametrize("cash", [-1, 1.5, "100", True, None])
    def test_bad_cash(self, db_session, store, carrier, make_order, cash):
        order = make_order(store, carrier, status="delivered")
        with pytest.raises(ValidationError):
            _reconcile(store, carrier, [(order, True)], cash=cash)

    def test_empty_orders(self, db_session, store, carrier):
        with pytest.raises(ValidationError):
            _reconcile(store, carrier, [], cash=0)

    def test_duplicate_order(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, status="delivered")
        with pytest.raises(ValidationError):
            _reconcile(store, carrier, [(order, True), (order, False)], cash=0)

    def test_delivered_must_be_boolean(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, status="delivered")
        with pytest.raises(ValidationError):
            reconciliation_service.reconcile(
                store_id=store.id, user_id=1, carrier_id=carrier.id, delivery_date="2026-03-14",
                total_cash_collected=0, orders=[{"order_id": order.id, "delivered": "yes"}],
            )

    @pytest.mark.parametrize("day", ["14/03/2026", "2026-03-14garbage", "2026-03-14T25:00:00"])
    def test_bad_date(self, db_session, store, carrier, make_order, day):
        order = make_order(store, carrier, status="delivered")
        with pytest.raises(ValidationError):
            reconciliation_service.reconcile(
                store_id=store.id, user_id=1, carrier_id=carrier.id, delivery_date=day,
                total_cash_collected=0, orders=[{"order_id": order.id, "delivered": True}],
            )

    def test_timestamp_date_uses_its_day(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, status="delivered")
        s = reconciliation_service.reconcile(
            store_id=store.id, user_id=1, carrier_id=carrier.id, delivery_date="2026-03-14T10:00:00Z",
            total_cash_collected=0, orders=[{"order_id": order.id, "delivered": True}],
        )
        assert s.settlement_date == date(2026, 3, 14)


class TestPendingReconciliation:

    def test_groups_by_day_and_carrier(self, db_session, store, carrier, make_carrier, make_order):
        other = make_carrier(store, name="Alfa")
        make_order(store, carrier, total_price=100000, status="delivered")
        make_order(store, carrier, total_price=50000, payment_method="card", status="delivered")
        make_order(store, other, total_price=70000, status="delivered")
        make_order(store, carrier, status="in_transit")
        make_order(store, None, status="confirmed")

        groups = reconciliation_service.get_pending_reconciliation(store.id)

        assert [g["carrier_name"] for g in groups] == ["Alfa", "Rapido"]
        rapido = groups[1]
        assert rapido["delivery_date"] == utcnow().date().isoformat()
        assert rapido["total_orders"] == 2
        assert rapido["total_cod_expected"] == 100000
        assert rapido["total_prepaid"] == 1

    def test_reconciled_orders_leave_the_queue(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, status="delivered")
        _reconcile(store, carrier, [(order, True)], cash=0)
        assert reconciliation_service.get_pending_reconciliation(store.id) == []

    def test_pending_orders_carry_resolved_fee(self, db_session, store, carrier, make_order):
        a = make_order(store, carrier, city="Asuncion", status="delivered")
        b = make_order(store, carrier, city="Luque", zone="Central", status="delivered")

        rows = reconciliation_service.get_pending_reconciliation_orders(store.id, carrier.id, utcnow().date())

        by_id = {r["id"]: r for r in rows}
        assert (by_id[a.id]["carrier_fee"], by_id[a.id]["fee_source"]) == (25000, "city")
        assert (by_id[b.id]["carrier_fee"], by_id[b.id]["fee_source"]) == (35000, "zone")

    def test_pending_orders_other_day_is_empty(self, db_session, store, carrier, make_order):
        make_order(store, carrier, status="delivered")
        assert reconciliation_service.get_pending_reconciliation_orders(store.id, carrier.id, "2001-01-01") == []
