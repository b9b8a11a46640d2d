# Overview: Flask API routes for orders; status transitions, lookup and guarded deletion.

# backend/codledger/routes/orders.py
"""
Order API Routes

- GET    /api/orders/<id>         order with line items
- GET    /api/orders/<id>/history audit events of the order
- POST   /api/orders/<id>/status  state machine transition (stock side effects)
- DELETE /api/orders/<id>         only for orders that never touched stock
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError
from ..services import order_service
from ..services.ledger_service import list_ledger_events
from ..decorators import require_store_context
from ..validation import parse_status_payload


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("/<int:order_id>")
@require_store_context
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(g.store_id, order_id)
        return jsonify({"order": order.to_dict()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/history")
@require_store_context
def order_history_route(order_id: int):
    """Audit events of an order (status changes), oldest first."""
    try:
        order = order_service.get_order(g.store_id, order_id)
        events = list_ledger_events(store_id=g.store_id, entity_type="order", entity_id=order.id)
        return jsonify({"events": [e.to_dict() for e in events]}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load order history")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/status")
@require_store_context
def transition_order_route(order_id: int):
    """
    Move an order to a new status.

    Request body:
    {
        "status": "ready_to_ship",
        "expected_status": "in_preparation",  (optional, rejects stale requests)
        "rejected_line_item_ids": [5],  (optional, returns only)
        "note": "..."  (optional)
    }

    Returns:
        200: Order updated
        404: Order not found
        409: Order locked by another operation
        422: Transition not allowed / insufficient stock
    """
    try:
        params = parse_status_payload(request.get_json(silent=True))
        order = order_service.transition_order(
            order_id,
            store_id=g.store_id,
            actor_user_id=g.user_id,
            **params,
        )
        return jsonify({"order": order.to_dict()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to transition order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>")
@require_store_context
def delete_order_route(order_id: int):
    try:
        order_service.delete_order(store_id=g.store_id, order_id=order_id, actor_user_id=g.user_id)
        return jsonify({"deleted": True, "order_id": order_id}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete order")
        return jsonify({"error": "Internal server error"}), 500
