# Overview: Flask API routes for payments; parses input and returns JSON responses.

# backend/eventpos/routes/payments.py
"""
Payment API Routes

DESIGN:
- Full payments against the order total
- Split payments allocated to specific items/quantities
- Payment lists and per-order summary

SECURITY:
- TAKE_PAYMENT capability for creating payments
- VIEW_PAYMENTS capability for queries
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..errors import error_response
from ..services import payment_service
from ..services.errors import OrderCoreError
from ..time_utils import parse_iso_datetime


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


# =============================================================================
# PAYMENT CREATION
# =============================================================================

@payments_bp.post("")
@require_actor
def create_payment_route():
    """
    Pay (part of) an order's remaining balance.

    Request body:
    {
        "order_id": 123,
        "amount_cents": 1000,
        "method": "cash",  (cash, card, sumup_terminal, sumup_online)
        "provider_transaction_id": "...",  (optional)
        "metadata": {}  (optional)
    }

    Returns:
        201: Payment captured, with the order's payment summary
        400: Invalid input, amount above remaining balance, order not payable
        403: Capability denied
        404: Order not found
    """
    try:
        data = request.get_json(silent=True) or {}
        order_id = data.get("order_id")
        amount_cents = data.get("amount_cents")
        method = data.get("method")

        if order_id is None or amount_cents is None or not method:
            return jsonify({"error": "order_id, amount_cents, and method required", "details": {}}), 400

        payment = payment_service.create_payment(
            g.actor,
            order_id,
            amount_cents,
            method,
            provider_transaction_id=data.get("provider_transaction_id"),
            metadata=data.get("metadata"),
        )
        summary = payment_service.get_payment_summary(g.actor, order_id)
        return jsonify({"payment": payment.to_dict(), "summary": summary}), 201

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/split")
@require_actor
def create_split_payment_route():
    """
    Pay for selected items of an order.

    Request body:
    {
        "order_id": 123,
        "amount_cents": 500,
        "method": "card",
        "items": [{"order_item_id": 9, "quantity": 1}]
    }

    The amount must equal the price of the selected quantities exactly.
    """
    try:
        data = request.get_json(silent=True) or {}
        order_id = data.get("order_id")
        amount_cents = data.get("amount_cents")
        method = data.get("method")
        items = data.get("items")

        if order_id is None or amount_cents is None or not method or not items:
            return jsonify({"error": "order_id, amount_cents, method, and items required", "details": {}}), 400

        payment = payment_service.create_split_payment(
            g.actor,
            order_id,
            amount_cents,
            method,
            items,
            provider_transaction_id=data.get("provider_transaction_id"),
            metadata=data.get("metadata"),
        )
        summary = payment_service.get_payment_summary(g.actor, order_id)
        return jsonify({"payment": payment.to_dict(), "summary": summary}), 201

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create split payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

@payments_bp.get("")
@require_actor
def list_payments_route():
    """
    Query params: sales_context_id, method, status, from_date, to_date, page, limit
    """
    try:
        try:
            start = parse_iso_datetime(request.args.get("from_date"))
            end = parse_iso_datetime(request.args.get("to_date"))
        except ValueError:
            return jsonify({"error": "Invalid date filter", "details": {}}), 400

        result = payment_service.list_payments(
            g.actor,
            sales_context_id=request.args.get("sales_context_id", type=int),
            method=request.args.get("method"),
            status=request.args.get("status"),
            start=start,
            end=end,
            page=request.args.get("page", 1, type=int),
            limit=min(request.args.get("limit", 20, type=int), 100),
        )
        return jsonify({
            "payments": [p.to_dict(include_allocations=False) for p in result["data"]],
            "total": result["total"],
            "page": result["page"],
            "limit": result["limit"],
        })

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/<int:payment_id>")
@require_actor
def get_payment_route(payment_id: int):
    try:
        payment = payment_service.get_payment(g.actor, payment_id)
        return jsonify({"payment": payment.to_dict()})

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/orders/<int:order_id>")
@require_actor
def get_order_payments_route(order_id: int):
    """All payments of one order plus its payment summary."""
    try:
        payments = payment_service.list_order_payments(g.actor, order_id)
        summary = payment_service.get_payment_summary(g.actor, order_id)
        return jsonify({
            "payments": [p.to_dict() for p in payments],
            "summary": summary,
        })

    except OrderCoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get order payments")
        return jsonify({"error": "Internal server error"}), 500
