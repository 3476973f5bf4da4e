# backend/backoffice/routes/system.py
"""
System health endpoint.

Reports database reachability plus a few counters useful when checking a
deployment (open purchase orders, orders awaiting a sale).
"""

import time
from flask import Blueprint, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Order, PurchaseOrder, Sale
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity with a few cheap counts.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        open_purchase_orders = db.session.query(PurchaseOrder).filter(
            PurchaseOrder.status.in_(("sent", "confirmed", "partial_received"))
        ).count()

        # Delivered orders still missing their sale (see `flask orders convert-delivered`)
        unconverted = (
            db.session.query(Order.id)
            .outerjoin(Sale, Sale.order_number == Order.order_number)
            .filter(Order.status == "delivered", Sale.id.is_(None))
            .count()
        )

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy" if unconverted == 0 else "degraded",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "open_purchase_orders": open_purchase_orders,
                "delivered_orders_without_sale": unconverted,
            }
        }
    except SQLAlchemyError:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (delivered orders waiting for conversion)
    - 503: database unreachable
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
