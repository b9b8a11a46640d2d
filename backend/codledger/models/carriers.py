from __future__ import annotations

from sqlalchemy.orm import validates

from ..extensions import db
from codledger.text_utils import normalize_location
from codledger.time_utils import to_utc_z


RATE_SCOPE_CITY = "CITY"
RATE_SCOPE_ZONE = "ZONE"
VALID_RATE_SCOPES = (RATE_SCOPE_CITY, RATE_SCOPE_ZONE)


class Carrier(db.Model):
    """
    Courier company (or individual courier) that delivers a store's orders.

    failed_attempt_fee_percent: share of the delivery fee the carrier bills
    for a trip that ended without delivery. NULL means "use the configured
    default" (DEFAULT_FAILED_ATTEMPT_FEE_PERCENT).
    """
    __tablename__ = "carriers"
    __table_args__ = (
        db.UniqueConstraint("store_id", "name", name="uq_carriers_store_name"),
        db.CheckConstraint(
            "failed_attempt_fee_percent IS NULL OR "
            "(failed_attempt_fee_percent >= 0 AND failed_attempt_fee_percent <= 100)",
            name="ck_carriers_failed_fee_percent",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    failed_attempt_fee_percent = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("carriers", lazy=True))

    def __repr__(self) -> str:
        return f"<Carrier id={self.id} name={self.name!r} store_id={self.store_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "failed_attempt_fee_percent": self.failed_attempt_fee_percent,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class CarrierRate(db.Model):
    """
    Fee a carrier charges to deliver into a city or a named zone.

    scope_key is the normalized form of scope_name (trimmed, case- and
    accent-insensitive) and is maintained automatically. At most one ACTIVE
    rate may exist per (carrier, scope, scope_key); the partial unique index
    below enforces it on both Postgres and SQLite.

    Amounts are integer minor currency units.

    Read-only to the reconciliation engine; edited by the admin CRUD layer.
    """
    __tablename__ = "carrier_rates"
    __table_args__ = (
        db.Index(
            "uq_carrier_rates_active_scope",
            "carrier_id",
            "scope",
            "scope_key",
            unique=True,
            postgresql_where=db.text("is_active"),
            sqlite_where=db.text("is_active = 1"),
        ),
        db.Index("ix_carrier_rates_carrier_scope", "carrier_id", "scope", "is_active"),
        db.CheckConstraint("rate >= 0", name="ck_carrier_rates_rate_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    carrier_id = db.Column(db.Integer, db.ForeignKey("carriers.id"), nullable=False, index=True)

    # CITY or ZONE
    scope = db.Column(db.String(8), nullable=False)
    scope_name = db.Column(db.String(255), nullable=False)
    scope_key = db.Column(db.String(255), nullable=False)

    rate = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    carrier = db.relationship("Carrier", backref=db.backref("rates", lazy=True))

    @validates("scope")
    def _validate_scope(self, key, value):
        if value not in VALID_RATE_SCOPES:
            raise ValueError(f"scope must be one of {VALID_RATE_SCOPES}")
        return value

    @validates("scope_name")
    def _sync_scope_key(self, key, value):
        self.scope_key = normalize_location(value)
        return value

    def __repr__(self) -> str:
        return f"<CarrierRate id={self.id} carrier_id={self.carrier_id} {self.scope}:{self.scope_name!r}={self.rate}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "carrier_id": self.carrier_id,
            "scope": self.scope,
            "scope_name": self.scope_name,
            "rate": self.rate,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
