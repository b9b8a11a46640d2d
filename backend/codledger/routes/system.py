# backend/codledger/routes/system.py
"""
System health endpoint.

Checks database connectivity and reports ledger counters useful when
debugging a deployment.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Order, Settlement, Store
from codledger.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        store_count = db.session.query(Store).count()
        settlement_count = db.session.query(Settlement).count()
        pending_count = (
            db.session.query(Order)
            .filter(Order.status == "delivered", Order.reconciled_at.is_(None))
            .count()
        )

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "dialect": db.session.get_bind().dialect.name,
                "stores": store_count,
                "settlements": settlement_count,
                "orders_pending_reconciliation": pending_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/api/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: database reachable
    - 503: database unhealthy
    """
    database_health = check_database_health()
    http_status = 503 if database_health["status"] == "unhealthy" else 200

    response = {
        "status": database_health["status"],
        "timestamp": utcnow().isoformat() + "Z",
        "checks": {
            "database": database_health,
        }
    }

    return response, http_status
