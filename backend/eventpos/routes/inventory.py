# Overview: Flask API routes for the stock ledger; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..errors import error_response
from ..services import count_service, inventory_service
from ..services.errors import OrderCoreError
from ..time_utils import parse_iso_datetime


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("/movements")
@require_actor
def list_movements_route():
    """
    Stock journal of a sales context, newest first.

    Query params: sales_context_id (required), product_id, movement_type,
    from_date, to_date, page, limit
    """
    try:
        sales_context_id = request.args.get("sales_context_id", type=int)
        if sales_context_id is None:
            return jsonify({"error": "sales_context_id required", "details": {}}), 400
        try:
            start = parse_iso_datetime(request.args.get("from_date"))
            end = parse_iso_datetime(request.args.get("to_date"))
        except ValueError:
            return jsonify({"error": "Invalid date filter", "details": {}}), 400

        result = inventory_service.list_movements(
            g.actor,
            sales_context_id,
            product_id=request.args.get("product_id", type=int),
            movement_type=request.args.get("movement_type"),
            start=start,
            end=end,
            page=max(request.args.get("page", 1, type=int), 1),
            limit=min(max(request.args.get("limit", 50, type=int), 1), 200),
        )
        return jsonify({
            "movements": [m.to_dict() for m in result["data"]],
            "total": result["total"],
            "page": result["page"],
            "limit": result["limit"],
        })

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list stock movements")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/movements/<int:movement_id>")
@require_actor
def get_movement_route(movement_id: int):
    try:
        movement = inventory_service.get_movement(g.actor, movement_id)
        return jsonify({"movement": movement.to_dict()})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load stock movement")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/products/<int:product_id>/adjust")
@require_actor
def adjust_stock_route(product_id: int):
    """
    Manual stock correction.

    Request body:
    {
        "delta": -2,
        "reason": "Broken bottles",
        "movement_type": "waste",  (optional: initial, adjustment_plus,
                                    adjustment_minus, waste, transfer_in, transfer_out)
        "notes": "..."  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        delta = data.get("delta")
        reason = data.get("reason")
        if delta is None or not reason:
            return jsonify({"error": "delta and reason required", "details": {}}), 400

        movement = inventory_service.adjust_stock(
            g.actor,
            product_id,
            delta,
            reason=reason,
            movement_type=data.get("movement_type"),
            notes=data.get("notes"),
        )
        return jsonify({"movement": movement.to_dict()}), 201

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/products/<int:product_id>/count")
@require_actor
def count_stock_route(product_id: int):
    """Request body: {"counted_quantity": 17, "reason": "Evening count"}"""
    try:
        data = request.get_json(silent=True) or {}
        counted = data.get("counted_quantity")
        if not isinstance(counted, int) or isinstance(counted, bool):
            return jsonify({"error": "counted_quantity must be an integer", "details": {}}), 400

        movement = inventory_service.count_stock(g.actor, product_id, counted, reason=data.get("reason"))
        return jsonify({"movement": movement.to_dict() if movement else None})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record stock count")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/products/<int:product_id>/verify")
@require_actor
def verify_product_route(product_id: int):
    try:
        return jsonify(inventory_service.verify_product(g.actor, product_id))

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to verify stock ledger")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# INVENTORY COUNTS
# =============================================================================

@inventory_bp.get("/counts")
@require_actor
def list_counts_route():
    """Query params: sales_context_id (required), status, page, limit"""
    try:
        sales_context_id = request.args.get("sales_context_id", type=int)
        if sales_context_id is None:
            return jsonify({"error": "sales_context_id required", "details": {}}), 400

        result = count_service.list_counts(
            g.actor,
            sales_context_id,
            status=request.args.get("status"),
            page=max(request.args.get("page", 1, type=int), 1),
            limit=min(max(request.args.get("limit", 20, type=int), 1), 100),
        )
        return jsonify({
            "counts": [c.to_dict() for c in result["data"]],
            "total": result["total"],
            "page": result["page"],
            "limit": result["limit"],
        })

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list inventory counts")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/counts")
@require_actor
def create_count_route():
    """Request body: {"sales_context_id": 1, "name": "Closing count", "notes": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        sales_context_id = data.get("sales_context_id")
        if not isinstance(sales_context_id, int) or not data.get("name"):
            return jsonify({"error": "sales_context_id and name required", "details": {}}), 400

        count = count_service.create_count(g.actor, sales_context_id, data["name"], notes=data.get("notes"))
        return jsonify({"count": count.to_dict(include_items=True)}), 201

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create inventory count")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/counts/<int:count_id>")
@require_actor
def get_count_route(count_id: int):
    try:
        count = count_service.get_count(g.actor, count_id)
        return jsonify({"count": count.to_dict(include_items=True)})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load inventory count")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.patch("/counts/<int:count_id>")
@require_actor
def update_count_route(count_id: int):
    try:
        data = request.get_json(silent=True) or {}
        count = count_service.update_count(g.actor, count_id, name=data.get("name"), notes=data.get("notes"))
        return jsonify({"count": count.to_dict(include_items=True)})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update inventory count")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.delete("/counts/<int:count_id>")
@require_actor
def delete_count_route(count_id: int):
    try:
        count_service.delete_count(g.actor, count_id)
        return jsonify({"deleted": True})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete inventory count")
        return jsonify({"error": "Internal server error"}), 500


_COUNT_TRANSITIONS = {
    "start": count_service.start_count,
    "complete": count_service.complete_count,
    "cancel": count_service.cancel_count,
}


@inventory_bp.post("/counts/<int:count_id>/<string:action>")
@require_actor
def transition_count_route(count_id: int, action: str):
    """POST /counts/<id>/start | /complete | /cancel"""
    transition = _COUNT_TRANSITIONS.get(action)
    if transition is None:
        return jsonify({"error": f"Unknown count action: {action}", "details": {}}), 404
    try:
        count = transition(g.actor, count_id)
        return jsonify({"count": count.to_dict(include_items=True)})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to %s inventory count", action)
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/counts/<int:count_id>/items")
@require_actor
def add_count_items_route(count_id: int):
    """
    Put products on a draft count.

    Request body, one of:
    {"product_id": 7, "notes": "..."}      single product
    {"category_id": 2}                     every tracked product of a category
    {"product_ids": [7, 8]}                a selection
    {}                                     every tracked product of the sales context
    """
    try:
        data = request.get_json(silent=True) or {}
        if "product_id" in data:
            item = count_service.add_count_item(g.actor, count_id, data["product_id"], notes=data.get("notes"))
            return jsonify({"items": [item.to_dict()]}), 201

        items = count_service.bulk_add_count_items(
            g.actor,
            count_id,
            category_id=data.get("category_id"),
            product_ids=data.get("product_ids"),
        )
        return jsonify({"items": [item.to_dict() for item in items]}), 201

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add products to inventory count")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.patch("/counts/<int:count_id>/items/<int:item_id>")
@require_actor
def update_count_item_route(count_id: int, item_id: int):
    """Request body: {"counted_quantity": 12, "notes": "two crates behind the bar"}"""
    try:
        data = request.get_json(silent=True) or {}
        item = count_service.update_count_item(
            g.actor,
            count_id,
            item_id,
            data.get("counted_quantity"),
            notes=data.get("notes"),
        )
        return jsonify({"item": item.to_dict()})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record counted quantity")
        return jsonify({"error": "Internal server error"}), 500
