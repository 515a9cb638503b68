# Overview: Flask API routes for orders; parses input and returns JSON responses.

# backend/eventpos/routes/orders.py
"""
Order API Routes

DESIGN:
- Counter/device order submission (online sessions submit through /api/online)
- Item edits, kitchen status updates, cancellation
- Order-level edits (discount, tip, notes), completion, soft delete

SECURITY:
- Actor comes from upstream identity headers (require_actor)
- Every operation asks the capability gate exactly once, inside the service
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..errors import error_response
from ..services import ingestion_service, order_service
from ..services.errors import OrderCoreError
from ..time_utils import parse_iso_datetime


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _date_arg(name: str):
    raw = request.args.get(name)
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}") from None


# =============================================================================
# ORDER CREATION / QUERIES
# =============================================================================

@orders_bp.post("")
@require_actor
def create_order_route():
    """
    Submit a counter order.

    Request body:
    {
        "sales_context_id": 3,
        "items": [
            {"product_id": 12, "quantity": 2,
             "selected_options": [{"group": "Size", "option": "Large"}],
             "notes": "no ice", "kitchen_notes": null}
        ],
        "table_number": "7",  (optional)
        "customer_name": "Sam",  (optional)
        "notes": "...",  (optional)
        "priority": "normal"  (optional: normal, high, rush)
    }

    Returns:
        201: Order created
        400: Invalid input, unavailable product, insufficient stock
        403: Capability denied
        404: Sales context or product not found
        409: Concurrent modification, retry
    """
    try:
        data = request.get_json(silent=True) or {}
        order = ingestion_service.submit_counter_order(g.actor, data)
        return jsonify({"order": order.to_dict()}), 201

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_actor
def list_orders_route():
    """
    List orders of the caller's organization.

    Query params: sales_context_id, status, payment_status, source,
    from_date, to_date, include_items (default false), page, limit
    """
    try:
        include_items = request.args.get("include_items", "false").lower() == "true"
        try:
            start = _date_arg("from_date")
            end = _date_arg("to_date")
        except ValueError as e:
            return jsonify({"error": str(e), "details": {}}), 400

        result = order_service.list_orders(
            g.actor,
            sales_context_id=request.args.get("sales_context_id", type=int),
            status=request.args.get("status"),
            payment_status=request.args.get("payment_status"),
            source=request.args.get("source"),
            start=start,
            end=end,
            page=request.args.get("page", 1, type=int),
            limit=min(request.args.get("limit", 20, type=int), 100),
        )
        return jsonify({
            "orders": [o.to_dict(include_items=include_items) for o in result["data"]],
            "total": result["total"],
            "page": result["page"],
            "limit": result["limit"],
        })

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_actor
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(g.actor, order_id)
        return jsonify({"order": order.to_dict()})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ORDER MUTATIONS
# =============================================================================

_UPDATABLE_ORDER_FIELDS = (
    "discount_cents",
    "discount_reason",
    "tip_cents",
    "notes",
    "priority",
    "table_number",
    "customer_name",
)


@orders_bp.patch("/<int:order_id>")
@require_actor
def update_order_route(order_id: int):
    """
    Edit order-level fields.

    Request body: any of discount_cents, discount_reason, tip_cents, notes,
    priority, table_number, customer_name
    """
    try:
        data = request.get_json(silent=True) or {}
        fields = {k: data[k] for k in _UPDATABLE_ORDER_FIELDS if k in data}
        if not fields:
            return jsonify({"error": "No updatable fields given", "details": {}}), 400

        order = order_service.update_order(g.actor, order_id, **fields)
        return jsonify({"order": order.to_dict()})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/complete")
@require_actor
def complete_order_route(order_id: int):
    try:
        order = order_service.complete_order(g.actor, order_id)
        return jsonify({"order": order.to_dict()})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to complete order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_actor
def cancel_order_route(order_id: int):
    """
    Cancel an order and return its reserved stock.

    Request body: {"reason": "Customer left"}  (optional)
    """
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.cancel_order(g.actor, order_id, reason=data.get("reason"))
        return jsonify({"order": order.to_dict()})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>")
@require_actor
def delete_order_route(order_id: int):
    try:
        order_service.delete_order(g.actor, order_id)
        return "", 204

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ITEMS
# =============================================================================

@orders_bp.post("/<int:order_id>/items")
@require_actor
def add_item_route(order_id: int):
    """
    Add an item to an order.

    Request body:
    {
        "product_id": 12,
        "quantity": 1,
        "selected_options": [{"group": "Size", "option": "Large"}],  (optional)
        "notes": "...",  (optional)
        "kitchen_notes": "..."  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        product_id = data.get("product_id")
        if product_id is None:
            return jsonify({"error": "product_id required", "details": {}}), 400

        item = order_service.add_item(
            g.actor,
            order_id,
            product_id,
            data.get("quantity", 1),
            selected_options=data.get("selected_options"),
            notes=data.get("notes"),
            kitchen_notes=data.get("kitchen_notes"),
        )
        order = order_service.get_order(g.actor, order_id)
        return jsonify({"item": item.to_dict(), "order": order.to_dict()}), 201

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add order item")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>/items/<int:item_id>")
@require_actor
def update_item_route(order_id: int, item_id: int):
    """
    Change an item's quantity (pending items only) or notes.

    Request body: {"quantity": 3, "notes": "...", "kitchen_notes": "..."}
    """
    try:
        data = request.get_json(silent=True) or {}
        item = order_service.update_item(
            g.actor,
            order_id,
            item_id,
            quantity=data.get("quantity"),
            notes=data.get("notes"),
            kitchen_notes=data.get("kitchen_notes"),
        )
        return jsonify({"item": item.to_dict()})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order item")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>/items/<int:item_id>")
@require_actor
def remove_item_route(order_id: int, item_id: int):
    try:
        order = order_service.remove_item(g.actor, order_id, item_id)
        return jsonify({"order": order.to_dict()})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to remove order item")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/items/<int:item_id>/cancel")
@require_actor
def cancel_item_route(order_id: int, item_id: int):
    try:
        data = request.get_json(silent=True) or {}
        item = order_service.cancel_item(g.actor, order_id, item_id, reason=data.get("reason"))
        return jsonify({"item": item.to_dict()})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order item")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>/items/<int:item_id>/status")
@require_actor
def set_item_status_route(order_id: int, item_id: int):
    """
    Kitchen status update.

    Request body: {"status": "preparing" | "ready" | "delivered"}
    """
    try:
        data = request.get_json(silent=True) or {}
        status = data.get("status")
        if not status:
            return jsonify({"error": "status required", "details": {}}), 400

        item = order_service.set_item_status(g.actor, order_id, item_id, status)
        return jsonify({"item": item.to_dict()})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update item status")
        return jsonify({"error": "Internal server error"}), 500
