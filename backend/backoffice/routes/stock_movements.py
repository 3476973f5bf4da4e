# Overview: Flask API routes for the stock movement ledger; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor
from ..errors import BackofficeError
from ..models import MOVEMENT_TYPES
from ..services import stock_ledger_service
from ..validation import optional_int, optional_str, require_choice, require_int


stock_movements_bp = Blueprint("stock_movements", __name__, url_prefix="/api/stock-movements")


@stock_movements_bp.get("")
def list_stock_movements_route():
    """
    List stock movements, newest first.

    Query parameters:
    - product_id: Filter by product
    - reference: Filter by reference (e.g. a purchase order number)
    - type: Filter by movement type
    - limit / offset: Pagination (limit clamped to 1..500)
    """
    limit = max(1, min(request.args.get("limit", 50, type=int), 500))
    offset = max(0, request.args.get("offset", 0, type=int))
    movement_type = request.args.get("type")
    try:
        if movement_type:
            require_choice(movement_type, "type", MOVEMENT_TYPES)
        rows, total = stock_ledger_service.list_movements(
            product_id=request.args.get("product_id", type=int),
            reference=request.args.get("reference"),
            movement_type=movement_type,
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "items": [m.to_dict() for m in rows],
            "count": total,
            "limit": limit,
            "offset": offset,
        }), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list stock movements")
        return jsonify({"error": "Internal server error"}), 500


@stock_movements_bp.post("")
@require_actor
def create_stock_movement_route():
    """
    Record a manual stock movement.

    Request body:
    {
        "product_id": 5,
        "type": "damage",            // purchase, sale, adjustment, return, transfer, damage, expired
        "quantity": 3,               // sign only matters for adjustment
        "unit_cost_cents": 200,      // optional, defaults to product cost price
        "reference": "COUNT-0412",   // optional
        "notes": "..."               // optional
    }
    """
    try:
        data = request.get_json() or {}
        movement = stock_ledger_service.record_manual_movement(
            product_id=require_int(data, "product_id", minimum=1),
            movement_type=require_choice(data.get("type"), "type", MOVEMENT_TYPES),
            quantity=require_int(data, "quantity"),
            user_id=g.actor_id,
            unit_cost_cents=optional_int(data, "unit_cost_cents", minimum=0),
            reference=optional_str(data, "reference", max_length=64),
            notes=optional_str(data, "notes", max_length=500),
        )
        return jsonify({"stock_movement": movement.to_dict()}), 201

    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record stock movement")
        return jsonify({"error": "Internal server error"}), 500
