# Overview: Service-layer operations for settlement codes; allocates PREFIX-DDMMYYYY-NNN per store and day.

"""
Settlement Code Invariants (authoritative)

- Format: PREFIX-DDMMYYYY-NNN, NNN zero-padded, scoped to (store, settlement date).
- PREFIX is the store's settlement_code_prefix, else SETTLEMENT_CODE_PREFIX.
- NNN = max(existing NNN for store+date, parsed from the codes) + 1, capped
  at SETTLEMENT_SEQUENCE_MAX; beyond the cap SequenceExhausted is raised.
- Allocation runs under a transaction-scoped advisory lock keyed by
  (store, date) with the same derivation as the reconciliation lock, so codes
  are strictly increasing per (store, date) even across carriers.
- The (store_id, settlement_code) unique constraint is only a backstop.
"""

from __future__ import annotations

import re
from datetime import date

from flask import current_app

from ..extensions import db
from ..errors import SequenceExhausted
from ..models import Settlement, Store
from .concurrency import acquire_xact_lock, advisory_lock_key


SEQUENCE_PAD = 3
CODE_PATTERN = re.compile(r"-(\d{8})-(\d+)$")


def settlement_lock_key(store_id: int, carrier_id: int | None, settlement_date: date) -> int:
    """Lock key shared by reconciliation (per carrier) and code allocation (carrier=None)."""
    return advisory_lock_key("settlement", store_id, carrier_id, settlement_date)


def resolve_prefix(store_id: int) -> str:
    store = db.session.get(Store, store_id)
    if store is not None and store.settlement_code_prefix:
        return store.settlement_code_prefix
    return current_app.config.get("SETTLEMENT_CODE_PREFIX", "LIQ")


def parse_sequence(code: str | None, settlement_date: date) -> int | None:
    """Return NNN from a code for `settlement_date`, or None if it does not parse."""
    if not code:
        return None
    match = CODE_PATTERN.search(code)
    if match is None or match.group(1) != settlement_date.strftime("%d%m%Y"):
        return None
    return int(match.group(2))


def format_settlement_code(prefix: str, settlement_date: date, sequence: int) -> str:
    return f"{prefix}-{settlement_date.strftime('%d%m%Y')}-{sequence:0{SEQUENCE_PAD}d}"


def next_settlement_code(store_id: int, settlement_date: date, *, prefix: str | None = None) -> str:
    """
    Allocate the next settlement code for a store/day.

    Must run inside the caller's transaction: the lock it takes is released
    only when that transaction commits or rolls back, so the code stays
    reserved until the settlement row carrying it is inserted.
    """
    acquire_xact_lock(settlement_lock_key(store_id, None, settlement_date))

    existing = (
        db.session.query(Settlement.settlement_code)
        .filter(
            Settlement.store_id == store_id,
            Settlement.settlement_date == settlement_date,
        )
        .all()
    )
    sequences = [parse_sequence(code, settlement_date) for (code,) in existing]
    current_max = max((s for s in sequences if s is not None), default=0)

    next_seq = current_max + 1
    cap = current_app.config.get("SETTLEMENT_SEQUENCE_MAX", 999)
    if next_seq > cap:
        raise SequenceExhausted(
            f"No settlement codes left for {settlement_date.isoformat()} (max {cap})",
            store_id=store_id,
            settlement_date=settlement_date.isoformat(),
        )

    return format_settlement_code(prefix or resolve_prefix(store_id), settlement_date, next_seq)
