# Overview: Flask API routes for sales orders and their fulfillment status; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor
from ..errors import BackofficeError
from ..services import order_service, order_sale_service
from ..validation import optional_datetime, optional_int, optional_str


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("")
def list_orders_route():
    """
    List orders, newest first.

    Query parameters: status, source, search, limit (1..500), offset
    """
    limit = max(1, min(request.args.get("limit", 50, type=int), 500))
    offset = max(0, request.args.get("offset", 0, type=int))
    try:
        rows, total = order_service.list_orders(
            status=request.args.get("status"),
            source=request.args.get("source"),
            search=request.args.get("search"),
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "items": [order.to_dict(include_history=False) for order in rows],
            "count": total,
            "limit": limit,
            "offset": offset,
        }), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        sale = order_sale_service.find_sale_for_order(order.order_number)
        return jsonify({
            "order": order.to_dict(),
            "sale": sale.to_dict() if sale else None,
        }), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.post("")
@require_actor
def create_order_route():
    """
    Create a pending order.

    Request body:
    {
        "customer_info": {"first_name", "last_name", "email", "phone"?},
        "customer_id": 12,                                   // optional
        "items": [{"product_id": 5, "quantity": 2, "unit_price_cents": 1500?}],
        "shipping_address": {"full_name", "address", "city", "state"?, "zip_code"?, "country"?, "phone"?},
        "shipping_method": "standard",
        "shipping_cost_cents": 0, "tax_amount_cents": 0, "discount_amount_cents": 0,
        "payment_info": {"method", "reference"?, "amount_cents"?, "currency"?, "status"?, "gateway"?, "transaction_id"?},
        "priority": "normal", "source": "ecommerce", "notes": "..."
    }
    """
    try:
        data = request.get_json() or {}
        order = order_service.create_order(
            customer_info=data.get("customer_info"),
            items=data.get("items"),
            actor_id=g.actor_id,
            customer_id=optional_int(data, "customer_id", minimum=1),
            shipping_address=data.get("shipping_address"),
            shipping_method=data.get("shipping_method") or "standard",
            shipping_cost_cents=data.get("shipping_cost_cents", 0),
            tax_amount_cents=data.get("tax_amount_cents", 0),
            discount_amount_cents=data.get("discount_amount_cents", 0),
            payment_info=data.get("payment_info"),
            priority=data.get("priority") or "normal",
            source=data.get("source") or "ecommerce",
            notes=optional_str(data, "notes"),
        )
        return jsonify({"order": order.to_dict()}), 201

    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>")
@require_actor
def update_order_route(order_id: int):
    """
    Update order status and fulfillment details.

    Request body (all optional, at least one required):
    {
        "status": "shipped",
        "notes": "...",
        "tracking_number": "1Z...",
        "estimated_delivery": "2026-03-12",
        "assigned_to": 4
    }

    A 503 with details.retryable means the order is delivered but its sale
    was not recorded; POST /api/orders/<id>/convert to retry.
    """
    try:
        data = request.get_json() or {}
        order = order_service.update_order_status(
            order_id,
            actor_id=g.actor_id,
            status=data.get("status"),
            notes=optional_str(data, "notes"),
            tracking_number=optional_str(data, "tracking_number", max_length=128),
            estimated_delivery=optional_datetime(data.get("estimated_delivery"), "estimated_delivery"),
            assigned_to=optional_int(data, "assigned_to", minimum=1),
        )
        return jsonify({"order": order.to_dict()}), 200

    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>")
@require_actor
def edit_pending_order_route(order_id: int):
    """Edit items, amounts, shipping or notes of a pending order."""
    try:
        data = request.get_json() or {}
        order = order_service.update_pending_order(order_id, actor_id=g.actor_id, changes=data)
        return jsonify({"order": order.to_dict()}), 200

    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to edit order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_actor
def cancel_order_route(order_id: int):
    """Request body: {"reason": "..."} (optional, defaults to "Order cancelled")."""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.cancel_order(order_id, actor_id=g.actor_id, reason=optional_str(data, "reason"))
        return jsonify({"order": order.to_dict()}), 200

    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/convert")
@require_actor
def convert_order_route(order_id: int):
    """
    Create the sale for a delivered order. Safe to repeat.

    Returns 201 when a sale was created, 200 when it already existed.
    """
    try:
        sale, created = order_sale_service.convert_order_to_sale(order_id, g.actor_id)
        return jsonify({"sale": sale.to_dict(), "created": created}), 201 if created else 200

    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to convert order to sale")
        return jsonify({"error": "Internal server error"}), 500
