# Overview: Flask API routes for guest ordering sessions; parses input and returns JSON responses.

"""
Online Ordering Routes

Public endpoints used by the table-QR / online shop frontend. There is no
staff actor here: the session token is the guest's credential, and the
gateway authorizes the checkout on the session's behalf.
"""

from flask import Blueprint, current_app, jsonify, request

from ..errors import error_response
from ..services import online_order_service
from ..services.errors import OrderCoreError


online_bp = Blueprint("online", __name__, url_prefix="/api/online")


def _session_payload(session) -> dict:
    data = session.to_dict()
    items = data["cart"].get("items") or []
    data["cart_total_cents"] = sum(
        (entry.get("unit_price_cents", 0) + entry.get("options_price_cents", 0)) * entry.get("quantity", 0)
        for entry in items
    )
    return data


@online_bp.post("/sessions")
def start_session_route():
    """
    Request body:
    {
        "organization_id": 1,
        "sales_context_id": 3,
        "table_number": "12",  (optional)
        "qr_code": "T12-AB",  (optional; marks orders as qr_order)
        "customer_name": "Sam"  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        organization_id = data.get("organization_id")
        sales_context_id = data.get("sales_context_id")
        if organization_id is None or sales_context_id is None:
            return jsonify({"error": "organization_id and sales_context_id required", "details": {}}), 400

        session = online_order_service.start_session(
            organization_id,
            sales_context_id,
            table_number=data.get("table_number"),
            qr_code=data.get("qr_code"),
            customer_name=data.get("customer_name"),
        )
        return jsonify({"session": _session_payload(session)}), 201

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to start online session")
        return jsonify({"error": "Internal server error"}), 500


@online_bp.get("/sessions/<token>")
def get_session_route(token: str):
    try:
        session = online_order_service.get_session(token)
        return jsonify({"session": _session_payload(session)})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load online session")
        return jsonify({"error": "Internal server error"}), 500


@online_bp.get("/sessions/<token>/menu")
def get_menu_route(token: str):
    try:
        menu = online_order_service.get_menu(token)
        return jsonify({
            "categories": [c.to_dict() for c in menu["categories"]],
            "products": [p.to_dict() for p in menu["products"]],
        })

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load menu")
        return jsonify({"error": "Internal server error"}), 500


@online_bp.post("/sessions/<token>/cart")
def add_to_cart_route(token: str):
    """Request body: {"product_id": 12, "quantity": 1, "selected_options": [...], "notes": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        product_id = data.get("product_id")
        if product_id is None:
            return jsonify({"error": "product_id required", "details": {}}), 400

        session = online_order_service.add_to_cart(
            token,
            product_id,
            data.get("quantity", 1),
            selected_options=data.get("selected_options"),
            notes=data.get("notes"),
        )
        return jsonify({"session": _session_payload(session)}), 201

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add to cart")
        return jsonify({"error": "Internal server error"}), 500


@online_bp.patch("/sessions/<token>/cart/<cart_item_id>")
def update_cart_item_route(token: str, cart_item_id: str):
    """Request body: {"quantity": 2, "notes": "..."}; quantity 0 removes the line."""
    try:
        data = request.get_json(silent=True) or {}
        session = online_order_service.update_cart_item(
            token,
            cart_item_id,
            quantity=data.get("quantity"),
            notes=data.get("notes"),
        )
        return jsonify({"session": _session_payload(session)})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update cart item")
        return jsonify({"error": "Internal server error"}), 500


@online_bp.delete("/sessions/<token>/cart")
def clear_cart_route(token: str):
    try:
        session = online_order_service.clear_cart(token)
        return jsonify({"session": _session_payload(session)})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to clear cart")
        return jsonify({"error": "Internal server error"}), 500


@online_bp.post("/sessions/<token>/submit")
def submit_order_route(token: str):
    """
    Turn the cart into an order.

    Request body: {"customer_name": "Sam", "notes": "..."}  (both optional)

    Returns:
        201: Order created, cart emptied
        400: Empty cart, session closed/expired, unavailable product, insufficient stock
    """
    try:
        data = request.get_json(silent=True) or {}
        order = online_order_service.submit_session_order(
            token,
            customer_name=data.get("customer_name"),
            notes=data.get("notes"),
        )
        return jsonify({"order": order.to_dict()}), 201

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to submit online order")
        return jsonify({"error": "Internal server error"}), 500


@online_bp.get("/sessions/<token>/orders")
def list_session_orders_route(token: str):
    try:
        orders = online_order_service.list_session_orders(token)
        return jsonify({"orders": [o.to_dict() for o in orders]})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list session orders")
        return jsonify({"error": "Internal server error"}), 500


@online_bp.post("/sessions/<token>/close")
def close_session_route(token: str):
    try:
        session = online_order_service.close_session(token)
        return jsonify({"session": _session_payload(session)})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to close online session")
        return jsonify({"error": "Internal server error"}), 500
