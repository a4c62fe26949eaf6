# backend/orderpay/routes/system.py
"""
System health endpoint.

Probes the database so deployments can tell a live process from a
process that cannot reach its store.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Order, Payment
from ..responses import envelope
from orderpay.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        order_count = db.session.query(Order).count()
        payment_count = db.session.query(Payment).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "orders": order_count,
                "payments": payment_count,
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
    finally:
        db.session.rollback()


@system_bp.get("/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    data = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database},
    }
    return envelope(data, "OK" if healthy else "Unhealthy", 200 if healthy else 503)
