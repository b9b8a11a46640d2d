# Overview: Typed error hierarchy shared by services, routes and the CLI.

"""
Error taxonomy

- ValidationError (400): bad input, rejected before any lock is taken.
- ConflictError (409) / not-found kinds (404): the transaction aborts cleanly;
  the caller retries with corrected input or after a delay.
- BusinessRuleError (422): real-world inconsistency (oversold stock, stale UI
  state). Surfaced verbatim to the operator.

Every error carries a stable machine-readable `code` and a `context` dict
(order id, carrier id, quantities...) so the operator can act on it.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base class for every domain error raised by the ledger."""

    code = "ledger_error"
    http_status = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "context": self.context}


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationError(LedgerError, ValueError):
    """400-level input problem."""

    code = "validation_error"
    http_status = 400


# =============================================================================
# CONFLICTS
# =============================================================================

class ConflictError(LedgerError):
    """409-level conflict with the current state of the data."""

    code = "conflict"
    http_status = 409


class AlreadyReconciled(ConflictError):
    code = "already_reconciled"


class ConcurrentModification(ConflictError):
    """Another transaction holds a lock on a row this operation needs."""

    code = "concurrent_modification"


class CarrierMismatch(ConflictError):
    code = "carrier_mismatch"


class NotFoundError(ConflictError):
    code = "not_found"
    http_status = 404


class CarrierNotFound(NotFoundError):
    code = "carrier_not_found"


class OrderNotFound(NotFoundError):
    code = "order_not_found"


class SettlementNotFound(NotFoundError):
    code = "settlement_not_found"


class ProductNotFound(NotFoundError):
    code = "product_not_found"


# =============================================================================
# BUSINESS RULES
# =============================================================================

class BusinessRuleError(LedgerError):
    code = "business_rule"
    http_status = 422


class InsufficientStock(BusinessRuleError):
    code = "insufficient_stock"


class InvalidStateTransition(BusinessRuleError):
    code = "invalid_state_transition"


class SequenceExhausted(BusinessRuleError):
    code = "sequence_exhausted"


class OrderDeletionBlocked(BusinessRuleError):
    code = "order_deletion_blocked"


class SettlementPaymentError(BusinessRuleError):
    code = "settlement_payment_error"


class SettlementImmutable(BusinessRuleError):
    """Financial totals of a settlement changed outside the correction path."""

    code = "settlement_immutable"
