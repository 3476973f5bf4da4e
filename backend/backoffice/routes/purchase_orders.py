# Overview: Flask API routes for purchase orders and receiving; parses input and returns JSON responses.

"""
Purchase Order Routes

Mutating routes require the X-Actor-Id header (see decorators.require_actor).
Receiving is all-or-nothing: a 409/400 response means nothing was applied.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor
from ..errors import BackofficeError
from ..services import purchase_order_service
from ..services.purchase_order_service import parse_receiving_lines
from ..validation import optional_datetime, optional_str, require_int


purchase_orders_bp = Blueprint("purchase_orders", __name__, url_prefix="/api/purchase-orders")


def _page_args() -> tuple[int, int]:
    limit = request.args.get("limit", 50, type=int)
    offset = request.args.get("offset", 0, type=int)
    return max(1, min(limit, 500)), max(0, offset)


@purchase_orders_bp.get("")
def list_purchase_orders_route():
    """
    List purchase orders.

    Query parameters:
    - status: draft, sent, confirmed, partial_received, fully_received, cancelled
    - supplier_id: Filter by supplier
    - search: Order number or supplier name/code
    - limit / offset: Pagination (limit clamped to 1..500)

    Returns:
        {items: PurchaseOrder[], count: int, limit: int, offset: int}
    """
    limit, offset = _page_args()
    try:
        rows, total = purchase_order_service.list_purchase_orders(
            status=request.args.get("status"),
            supplier_id=request.args.get("supplier_id", type=int),
            search=request.args.get("search"),
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "items": [po.to_dict(include_items=False) for po in rows],
            "count": total,
            "limit": limit,
            "offset": offset,
        }), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list purchase orders")
        return jsonify({"error": "Internal server error"}), 500


@purchase_orders_bp.get("/<int:purchase_order_id>")
def get_purchase_order_route(purchase_order_id: int):
    try:
        po = purchase_order_service.get_purchase_order(purchase_order_id)
        return jsonify({"purchase_order": po.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code


@purchase_orders_bp.post("")
@require_actor
def create_purchase_order_route():
    """
    Create a draft purchase order.

    Request body:
    {
        "supplier_id": 1,
        "items": [{"product_id": 5, "quantity": 20, "unit_cost_cents": 200, "notes": "..."}],
        "expected_delivery_date": "2026-03-10",   // optional
        "tax_amount_cents": 0, "shipping_cost_cents": 0, "discount_amount_cents": 0,
        "payment_terms": "net_30",                 // optional, defaults to supplier's
        "notes": "...", "internal_notes": "..."
    }
    """
    try:
        data = request.get_json() or {}
        po = purchase_order_service.create_purchase_order(
            supplier_id=require_int(data, "supplier_id", minimum=1),
            items=data.get("items"),
            created_by=g.actor_id,
            expected_delivery_date=optional_datetime(data.get("expected_delivery_date"), "expected_delivery_date"),
            tax_amount_cents=data.get("tax_amount_cents", 0),
            shipping_cost_cents=data.get("shipping_cost_cents", 0),
            discount_amount_cents=data.get("discount_amount_cents", 0),
            payment_terms=data.get("payment_terms"),
            currency=optional_str(data, "currency", max_length=3),
            notes=optional_str(data, "notes"),
            internal_notes=optional_str(data, "internal_notes"),
        )
        return jsonify({"purchase_order": po.to_dict()}), 201

    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create purchase order")
        return jsonify({"error": "Internal server error"}), 500


@purchase_orders_bp.put("/<int:purchase_order_id>")
@require_actor
def update_purchase_order_route(purchase_order_id: int):
    """Edit a draft purchase order. "items", when present, replaces all lines."""
    try:
        data = request.get_json() or {}
        changes = dict(data)
        if "expected_delivery_date" in changes:
            changes["expected_delivery_date"] = optional_datetime(
                changes["expected_delivery_date"], "expected_delivery_date"
            )

        po = purchase_order_service.update_purchase_order(
            purchase_order_id, actor_id=g.actor_id, changes=changes
        )
        return jsonify({"purchase_order": po.to_dict()}), 200

    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update purchase order")
        return jsonify({"error": "Internal server error"}), 500


@purchase_orders_bp.delete("/<int:purchase_order_id>")
@require_actor
def delete_purchase_order_route(purchase_order_id: int):
    try:
        order_number = purchase_order_service.delete_purchase_order(purchase_order_id, actor_id=g.actor_id)
        return jsonify({"deleted": order_number}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete purchase order")
        return jsonify({"error": "Internal server error"}), 500


@purchase_orders_bp.post("/<int:purchase_order_id>/send")
@require_actor
def send_purchase_order_route(purchase_order_id: int):
    try:
        po = purchase_order_service.send_purchase_order(purchase_order_id, actor_id=g.actor_id)
        return jsonify({"purchase_order": po.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to send purchase order")
        return jsonify({"error": "Internal server error"}), 500


@purchase_orders_bp.post("/<int:purchase_order_id>/confirm")
@require_actor
def confirm_purchase_order_route(purchase_order_id: int):
    try:
        po = purchase_order_service.confirm_purchase_order(purchase_order_id, actor_id=g.actor_id)
        return jsonify({"purchase_order": po.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to confirm purchase order")
        return jsonify({"error": "Internal server error"}), 500


@purchase_orders_bp.post("/<int:purchase_order_id>/cancel")
@require_actor
def cancel_purchase_order_route(purchase_order_id: int):
    """
    Cancel a purchase order.

    Request body: {"reason": "..."}  (optional)
    """
    try:
        data = request.get_json(silent=True) or {}
        po = purchase_order_service.cancel_purchase_order(
            purchase_order_id, actor_id=g.actor_id, reason=optional_str(data, "reason", max_length=255)
        )
        return jsonify({"purchase_order": po.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel purchase order")
        return jsonify({"error": "Internal server error"}), 500


@purchase_orders_bp.post("/<int:purchase_order_id>/receive")
@require_actor
def receive_purchase_order_route(purchase_order_id: int):
    """
    Receive goods against a purchase order.

    Request body:
    {
        "items": [{"product_id": 5, "quantity": 15, "notes": "2 boxes dented"}],
        "receiving_notes": "...",                 // optional
        "actual_delivery_date": "2026-03-05"       // optional
    }

    Returns:
        {purchase_order: PurchaseOrder, stock_movements: StockMovement[]}
    """
    try:
        data = request.get_json() or {}
        lines = parse_receiving_lines(data.get("items"))

        po, movements = purchase_order_service.receive_purchase_order(
            purchase_order_id,
            lines,
            received_by=g.actor_id,
            receiving_notes=optional_str(data, "receiving_notes"),
            actual_delivery_date=optional_datetime(data.get("actual_delivery_date"), "actual_delivery_date"),
        )
        return jsonify({
            "purchase_order": po.to_dict(),
            "stock_movements": [m.to_dict() for m in movements],
        }), 200

    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to receive purchase order")
        return jsonify({"error": "Internal server error"}), 500
