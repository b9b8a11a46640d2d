from __future__ import annotations

from ..extensions import db
from codledger.time_utils import to_utc_z


class Store(db.Model):
    """
    Store that owns orders, carriers, products and settlements.

    Every query in the ledger is scoped by store_id; nothing crosses stores.
    settlement_code_prefix overrides the configured default ("LIQ").
    """
    __tablename__ = "stores"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)

    settlement_code_prefix = db.Column(db.String(16), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Store id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "settlement_code_prefix": self.settlement_code_prefix,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
