from __future__ import annotations

from sqlalchemy import event, inspect
from sqlalchemy.orm import object_session

from ..extensions import db
from codledger.errors import SettlementImmutable
from codledger.time_utils import to_utc_z, to_iso_date


SETTLEMENT_STATUS_PENDING = "pending"
SETTLEMENT_STATUS_PARTIAL = "partial"
SETTLEMENT_STATUS_PAID = "paid"
SETTLEMENT_STATUS_CANCELLED = "cancelled"

VALID_SETTLEMENT_STATUSES = (
    SETTLEMENT_STATUS_PENDING,
    SETTLEMENT_STATUS_PARTIAL,
    SETTLEMENT_STATUS_PAID,
    SETTLEMENT_STATUS_CANCELLED,
)

# Columns frozen after creation; only settlement_service.correct_settlement_collected may touch them.
FINANCIAL_FIELDS = (
    "total_cod_expected",
    "total_cod_collected",
    "total_carrier_fees",
    "failed_attempt_fee",
    "net_receivable",
)

CORRECTION_SESSION_KEY = "settlement_corrections"


class Settlement(db.Model):
    """
    Financial result of reconciling one carrier's deliveries for one date.

    INVARIANTS:
    - net_receivable == total_cod_collected - total_carrier_fees - failed_attempt_fee,
      always. It is never written independently of its inputs.
    - settlement_code is unique per store (PREFIX-DDMMYYYY-NNN). The advisory
      lock in settlement_code_service is the primary guard; the unique
      constraint is the backstop.
    - The covered orders are exactly the orders whose settlement_id points
      here; an order can never belong to two settlements.

    LIFECYCLE:
    - Created once, atomically, by reconciliation_service.reconcile (status=pending).
    - Afterwards only status / amount_paid / balance_due / payment fields change
      (payment recording). Financial totals change only through the audited
      correction path.

    Amounts are integer minor currency units.
    """
    __tablename__ = "settlements"
    __table_args__ = (
        db.UniqueConstraint("store_id", "settlement_code", name="uq_settlements_store_code"),
        db.Index("ix_settlements_store_date", "store_id", "settlement_date"),
        db.Index("ix_settlements_store_carrier_date", "store_id", "carrier_id", "settlement_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    carrier_id = db.Column(db.Integer, db.ForeignKey("carriers.id"), nullable=False, index=True)

    settlement_code = db.Column(db.String(64), nullable=False)
    settlement_date = db.Column(db.Date, nullable=False)

    # Counts
    total_dispatched = db.Column(db.Integer, nullable=False, default=0)
    total_delivered = db.Column(db.Integer, nullable=False, default=0)
    total_not_delivered = db.Column(db.Integer, nullable=False, default=0)
    total_cod_delivered = db.Column(db.Integer, nullable=False, default=0)
    total_prepaid_delivered = db.Column(db.Integer, nullable=False, default=0)

    # Money (frozen after creation)
    total_cod_expected = db.Column(db.Integer, nullable=False, default=0)
    total_cod_collected = db.Column(db.Integer, nullable=False, default=0)
    total_carrier_fees = db.Column(db.Integer, nullable=False, default=0)
    failed_attempt_fee = db.Column(db.Integer, nullable=False, default=0)
    net_receivable = db.Column(db.Integer, nullable=False, default=0)

    # Payment tracking
    amount_paid = db.Column(db.Integer, nullable=False, default=0)
    balance_due = db.Column(db.Integer, nullable=False, default=0)
    payment_date = db.Column(db.Date, nullable=True)
    payment_method = db.Column(db.String(64), nullable=True)
    payment_reference = db.Column(db.String(128), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=SETTLEMENT_STATUS_PENDING, index=True)
    discrepancy_notes = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    carrier = db.relationship("Carrier", foreign_keys=[carrier_id])
    orders = db.relationship("Order", backref=db.backref("settlement", lazy=True), lazy=True)
    __mapper_args__ = {"version_id_col": version_id}

    @staticmethod
    def compute_net_receivable(total_cod_collected: int, total_carrier_fees: int, failed_attempt_fee: int) -> int:
        return total_cod_collected - total_carrier_fees - failed_attempt_fee

    def __repr__(self) -> str:
        return f"<Settlement id={self.id} code={self.settlement_code!r} status={self.status!r}>"

    def to_dict(self, include_orders: bool = False) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "carrier_id": self.carrier_id,
            "carrier_name": self.carrier.name if self.carrier else None,
            "settlement_code": self.settlement_code,
            "settlement_date": to_iso_date(self.settlement_date),
            "status": self.status,
            "total_dispatched": self.total_dispatched,
            "total_delivered": self.total_delivered,
            "total_not_delivered": self.total_not_delivered,
            "total_cod_delivered": self.total_cod_delivered,
            "total_prepaid_delivered": self.total_prepaid_delivered,
            "total_cod_expected": self.total_cod_expected,
            "total_cod_collected": self.total_cod_collected,
            "total_carrier_fees": self.total_carrier_fees,
            "failed_attempt_fee": self.failed_attempt_fee,
            "net_receivable": self.net_receivable,
            "amount_paid": self.amount_paid,
            "balance_due": self.balance_due,
            "payment_date": to_iso_date(self.payment_date),
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "discrepancy_notes": self.discrepancy_notes,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_orders:
            data["order_ids"] = sorted(o.id for o in self.orders)
        return data


@event.listens_for(Settlement, "before_update")
def _guard_financial_totals(mapper, connection, target):
    state = inspect(target)
    changed = [name for name in FINANCIAL_FIELDS if state.attrs[name].history.has_changes()]
    if not changed:
        return

    session = object_session(target)
    allowed = session.info.get(CORRECTION_SESSION_KEY, set()) if session is not None else set()
    if target.id not in allowed:
        raise SettlementImmutable(
            f"Settlement {target.settlement_code} financial totals are immutable",
            settlement_id=target.id,
            fields=changed,
        )


class AdvisoryLock(db.Model):
    """
    Lock rows used where the database has no native advisory locks (SQLite).

    Updating a row takes the database write lock until the surrounding
    transaction ends, giving the same transaction-scoped exclusion as
    pg_advisory_xact_lock. Postgres never touches this table.
    """
    __tablename__ = "advisory_locks"

    lock_key = db.Column(db.BigInteger, primary_key=True, autoincrement=False)
    acquired_count = db.Column(db.Integer, nullable=False, default=0)
    last_acquired_at = db.Column(db.DateTime(timezone=True), nullable=True)
