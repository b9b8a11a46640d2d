# Overview: Flask API routes for carriers; delivery fee preview.

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..errors import CarrierNotFound, LedgerError
from ..models import Carrier
from ..services import rate_service
from ..decorators import require_store_context


carriers_bp = Blueprint("carriers", __name__, url_prefix="/api/carriers")


@carriers_bp.get("/<int:carrier_id>/fee")
@require_store_context
def resolve_fee_route(carrier_id: int):
    """
    Preview the fee a carrier charges for a destination.

    Query params: city, zone (both optional)

    Returns: {"carrier_id", "fee", "source", "rate_id"}; source is one of
    city, zone, fallback, none.
    """
    try:
        carrier = db.session.query(Carrier).filter_by(id=carrier_id, store_id=g.store_id).first()
        if carrier is None:
            raise CarrierNotFound(f"Carrier not found: {carrier_id}", carrier_id=carrier_id)

        resolution = rate_service.resolve_fee_with_source(
            carrier.id,
            request.args.get("city"),
            request.args.get("zone"),
            store_id=g.store_id,
        )
        return jsonify({
            "carrier_id": carrier.id,
            "fee": resolution.fee,
            "source": resolution.source,
            "rate_id": resolution.rate_id,
        }), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to resolve carrier fee")
        return jsonify({"error": "Internal server error"}), 500
