# Overview: Flask API routes for settlements and reconciliation; parses input and returns JSON responses.

# backend/codledger/routes/settlements.py
"""
Settlement & Reconciliation API Routes

DESIGN:
- Submit a courier's delivery day for reconciliation (one settlement per call)
- Browse pending (delivered, unreconciled) work grouped by day and carrier
- List / inspect settlements
- Record carrier payments, correct the collected amount, cancel

Store and user come from the X-Store-Id / X-User-Id headers
(require_store_context). Typed errors are returned as
{"error", "code", "context"} with their own HTTP status.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError
from ..services import reconciliation_service, settlement_service
from ..decorators import require_store_context
from ..validation import (
    coerce_date,
    coerce_int,
    optional_text,
    parse_correction_payload,
    parse_payment_payload,
    parse_reconciliation_payload,
)


settlements_bp = Blueprint("settlements", __name__, url_prefix="/api/settlements")
reconciliation_bp = Blueprint("reconciliation", __name__, url_prefix="/api/reconciliation")


# =============================================================================
# RECONCILIATION
# =============================================================================

@settlements_bp.post("/reconcile")
@require_store_context
def reconcile_route():
    """
    Reconcile a carrier's deliveries for one date.

    Request body:
    {
        "carrier_id": 3,
        "delivery_date": "2026-03-14",
        "total_cash_collected": 250000,
        "discrepancy_notes": "short 5000, courier to return tomorrow",  (optional)
        "orders": [{"order_id": 10, "delivered": true}, {"order_id": 11, "delivered": false}]
    }

    Returns:
        201: Settlement created
        400: Invalid input
        404: Carrier or order not found
        409: Already reconciled / concurrent modification / wrong carrier
        422: Invalid state transition / sequence exhausted
    """
    try:
        params = parse_reconciliation_payload(request.get_json(silent=True))
        settlement = reconciliation_service.reconcile(
            store_id=g.store_id,
            user_id=g.user_id,
            **params,
        )
        return jsonify({"settlement": settlement.to_dict(include_orders=True)}), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to reconcile settlement")
        return jsonify({"error": "Internal server error"}), 500


@reconciliation_bp.get("/pending")
@require_store_context
def pending_reconciliation_route():
    """Delivered orders awaiting reconciliation, grouped by delivery date and carrier."""
    try:
        groups = reconciliation_service.get_pending_reconciliation(g.store_id)
        return jsonify({"pending": groups}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load pending reconciliation")
        return jsonify({"error": "Internal server error"}), 500


@reconciliation_bp.get("/pending/orders")
@require_store_context
def pending_reconciliation_orders_route():
    """
    Orders of one pending group with their resolved carrier fee.

    Query params: carrier_id (required), date (YYYY-MM-DD, required)
    """
    try:
        carrier_id = coerce_int(request.args.get("carrier_id"), "carrier_id", minimum=1)
        day = coerce_date(request.args.get("date"), "date")
        orders = reconciliation_service.get_pending_reconciliation_orders(g.store_id, carrier_id, day)
        return jsonify({"orders": orders}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load pending reconciliation orders")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SETTLEMENT QUERIES
# =============================================================================

@settlements_bp.get("")
@require_store_context
def list_settlements_route():
    """
    List settlements, newest first.

    Query params: status, carrier_id, date_from, date_to, limit (default 100), offset
    """
    try:
        settlements = settlement_service.list_settlements(
            g.store_id,
            status=request.args.get("status") or None,
            carrier_id=coerce_int(request.args.get("carrier_id"), "carrier_id", minimum=1, required=False),
            date_from=coerce_date(request.args.get("date_from"), "date_from", required=False),
            date_to=coerce_date(request.args.get("date_to"), "date_to", required=False),
            limit=min(coerce_int(request.args.get("limit"), "limit", minimum=1, required=False) or 100, 500),
            offset=coerce_int(request.args.get("offset"), "offset", minimum=0, required=False) or 0,
        )
        return jsonify({"settlements": [s.to_dict() for s in settlements]}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list settlements")
        return jsonify({"error": "Internal server error"}), 500


@settlements_bp.get("/<int:settlement_id>")
@require_store_context
def get_settlement_route(settlement_id: int):
    try:
        settlement = settlement_service.get_settlement(g.store_id, settlement_id)
        return jsonify({"settlement": settlement.to_dict(include_orders=True)}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load settlement")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SETTLEMENT LIFECYCLE
# =============================================================================

@settlements_bp.post("/<int:settlement_id>/payments")
@require_store_context
def record_payment_route(settlement_id: int):
    """
    Record a payment received from the carrier.

    Request body:
    {
        "amount": 75000,
        "method": "transfer",  (optional)
        "reference": "TRX-9912",  (optional)
        "payment_date": "2026-03-16",  (optional, default today)
        "notes": "..."  (optional)
    }
    """
    try:
        params = parse_payment_payload(request.get_json(silent=True))
        settlement = settlement_service.record_settlement_payment(
            store_id=g.store_id,
            settlement_id=settlement_id,
            actor_user_id=g.user_id,
            **params,
        )
        return jsonify({"settlement": settlement.to_dict()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to record settlement payment")
        return jsonify({"error": "Internal server error"}), 500


@settlements_bp.post("/<int:settlement_id>/correction")
@require_store_context
def correct_settlement_route(settlement_id: int):
    """
    Correct the collected cash of an unpaid settlement.

    Request body: {"total_cod_collected": 95000, "reason": "recount"}
    """
    try:
        params = parse_correction_payload(request.get_json(silent=True))
        settlement = settlement_service.correct_settlement_collected(
            store_id=g.store_id,
            settlement_id=settlement_id,
            actor_user_id=g.user_id,
            **params,
        )
        return jsonify({"settlement": settlement.to_dict()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to correct settlement")
        return jsonify({"error": "Internal server error"}), 500


@settlements_bp.post("/<int:settlement_id>/cancel")
@require_store_context
def cancel_settlement_route(settlement_id: int):
    try:
        data = request.get_json(silent=True) or {}
        settlement = settlement_service.cancel_settlement(
            store_id=g.store_id,
            settlement_id=settlement_id,
            reason=optional_text(data.get("reason"), "reason", max_length=255),
            actor_user_id=g.user_id,
        )
        return jsonify({"settlement": settlement.to_dict()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel settlement")
        return jsonify({"error": "Internal server error"}), 500
