# Overview: Service-layer operations for concurrency; locking primitives and transaction helpers.

"""
Locking model (authoritative)

Two independent layers, always acquired in this order to avoid deadlock:

1. Transaction-scoped advisory locks keyed by business identifiers
   (store/carrier/date). Postgres: pg_advisory_xact_lock. SQLite: an UPDATE on
   an advisory_locks row, which holds the database write lock until the
   transaction ends.
2. Row locks (SELECT ... FOR UPDATE) on orders, products and settlements.
   Order and product locks inside the settlement core are NOWAIT: contention
   surfaces as ConcurrentModification instead of queuing.

Both layers are released only by COMMIT or ROLLBACK.

NOTE: SQLite ignores SELECT ... FOR UPDATE; its single-writer lock provides
the serialization there.
"""

from __future__ import annotations

import hashlib
import time
from datetime import date

from sqlalchemy import text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import ConcurrentModification
from ..models import AdvisoryLock
from codledger.time_utils import utcnow


LOCK_NOT_AVAILABLE_PGCODE = "55P03"


def _dialect_name() -> str:
    return db.session.get_bind().dialect.name


def lock_for_update(query, *, nowait: bool = False):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update(nowait=nowait)


def is_lock_not_available(exc: OperationalError) -> bool:
    """True when the error means "another transaction holds the lock"."""
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == LOCK_NOT_AVAILABLE_PGCODE:
        return True
    message = str(orig or exc).lower()
    return "could not obtain lock" in message or "database is locked" in message


def first_locked_nowait(query, *, entity: str, **context):
    """
    Fetch the first row of `query` under a non-blocking exclusive lock.

    Raises ConcurrentModification when another transaction already holds it.
    """
    try:
        return lock_for_update(query, nowait=True).first()
    except OperationalError as exc:
        if is_lock_not_available(exc):
            raise ConcurrentModification(
                f"{entity} is being modified by another operation; retry shortly",
                entity=entity,
                **context,
            ) from exc
        raise


def advisory_lock_key(*parts) -> int:
    """
    Derive a stable signed 63-bit lock key from business identifiers.

    Python's hash() is salted per process, so a digest is used instead:
    every worker process derives the same key for the same parts.
    """
    raw = "|".join("" if p is None else (p.isoformat() if isinstance(p, date) else str(p)) for p in parts)
    digest = hashlib.sha256(raw.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True) >> 1


def acquire_xact_lock(key: int) -> None:
    """
    Acquire a transaction-scoped exclusive lock on `key`.

    Blocks until the lock is free. Released automatically at COMMIT/ROLLBACK.
    A lock wait that gives up (SQLite busy timeout) raises ConcurrentModification.
    """
    try:
        _take_xact_lock(key)
    except OperationalError as exc:
        if is_lock_not_available(exc):
            raise ConcurrentModification(
                "Another settlement operation holds this lock; retry shortly",
                lock_key=key,
            ) from exc
        raise


def _take_xact_lock(key: int) -> None:
    dialect = _dialect_name()

    if dialect == "postgresql":
        db.session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})
        return

    if dialect == "sqlite":
        stmt = sqlite_insert(AdvisoryLock).values(lock_key=key, acquired_count=0)
        db.session.execute(stmt.on_conflict_do_nothing(index_elements=["lock_key"]))
    elif db.session.get(AdvisoryLock, key) is None:
        db.session.add(AdvisoryLock(lock_key=key, acquired_count=0))
        db.session.flush()

    db.session.execute(
        update(AdvisoryLock)
        .where(AdvisoryLock.lock_key == key)
        .values(acquired_count=AdvisoryLock.acquired_count + 1, last_acquired_at=utcnow())
    )


def set_statement_timeout(milliseconds: int | None) -> None:
    """Bound every statement of the current transaction (Postgres only)."""
    if not milliseconds or _dialect_name() != "postgresql":
        return
    db.session.execute(text(f"SET LOCAL statement_timeout = {int(milliseconds)}"))


def run_in_transaction(func, *, commit: bool = True):
    """
    Run `func` as one unit of work.

    Commits on success (or only flushes when commit=False so a caller can
    compose it into a larger transaction); rolls back and re-raises on any
    error. No retry: callers decide whether a failure is retryable.
    """
    try:
        result = func()
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return result
    except Exception:
        if commit:
            db.session.rollback()
        raise


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
