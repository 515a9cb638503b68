# Overview: Guest ordering sessions (table QR / online shop); cart handling and checkout through the gateway.

"""
Online Ordering Sessions

A guest opens a session, fills a cart and submits it. The cart lives as JSON
on the session and is only a wish list: products are checked when they are
added, but stock is reserved at submit time, when the ingestion gateway prices
and reserves every line in one transaction.

Session status:
    active    -> no order submitted yet
    ordering  -> at least one order submitted, more may follow
    completed -> closed by the guest or staff
    expired   -> past expires_at; read-only
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import Category, OnlineOrderSession, Order, Product
from ..models.online import SESSION_ACTIVE, SESSION_COMPLETED, SESSION_EXPIRED, SESSION_ORDERING
from ..models.orders import ORDER_SOURCE_ONLINE, ORDER_SOURCE_QR_ORDER
from ..permissions import CREATE_ORDER
from ..time_utils import utcnow
from . import catalog_service
from .capability_service import authorize, session_actor
from .concurrency import begin_write, lock_for_update, run_with_retry
from .errors import NotFoundError, ValidationError
from .ingestion_service import OrderLine, OrderSubmission, _ingest_locked
from .notification_service import Outbox
from .sales_context_service import require_active_sales_context


logger = logging.getLogger(__name__)

OPEN_SESSION_STATUSES = (SESSION_ACTIVE, SESSION_ORDERING)


def _new_token() -> str:
    return f"sess_{secrets.token_hex(16)}"


def _cart_document(items: list[dict]) -> dict:
    # Always a fresh dict: JSON columns only persist on reassignment
    return {"items": items, "updated_at": utcnow().isoformat()}


def _find_session(token: str, *, lock: bool = False) -> OnlineOrderSession:
    query = db.session.query(OnlineOrderSession).filter_by(session_token=token)
    if lock:
        query = lock_for_update(query)
    session = query.first()
    if session is None:
        raise NotFoundError("Session not found")
    return session


def _ensure_open(session: OnlineOrderSession) -> None:
    if session.status not in OPEN_SESSION_STATUSES or session.is_expired():
        raise ValidationError(
            "Session is no longer open",
            details={"status": session.status},
        )


def start_session(
    organization_id: int,
    sales_context_id: int,
    *,
    table_number: str | None = None,
    qr_code: str | None = None,
    customer_name: str | None = None,
) -> OnlineOrderSession:
    """Open a guest session against an active sales context."""
    require_active_sales_context(sales_context_id, organization_id)

    ttl = current_app.config.get("ONLINE_SESSION_TTL_MINUTES", 120)
    session = OnlineOrderSession(
        organization_id=organization_id,
        sales_context_id=sales_context_id,
        session_token=_new_token(),
        qr_code=qr_code,
        table_number=table_number,
        customer_name=customer_name,
        status=SESSION_ACTIVE,
        cart={"items": [], "updated_at": None},
        expires_at=utcnow() + timedelta(minutes=ttl),
    )
    db.session.add(session)
    db.session.commit()
    logger.info("Online session %s started for sales context %s", session.id, sales_context_id)
    return session


def get_session(token: str) -> OnlineOrderSession:
    """
    Load a session by token.

    A session past its expiry is flipped to expired (committed) and rejected.
    """
    session = _find_session(token)
    if session.status == SESSION_EXPIRED:
        raise ValidationError("Session expired", details={"status": session.status})
    if session.is_expired():
        session.status = SESSION_EXPIRED
        db.session.commit()
        raise ValidationError("Session expired", details={"status": SESSION_EXPIRED})
    return session


def get_menu(token: str) -> dict:
    """Active categories and orderable products of the session's sales context."""
    session = get_session(token)
    categories = (
        db.session.query(Category)
        .filter(Category.sales_context_id == session.sales_context_id, Category.is_active.is_(True))
        .order_by(Category.sort_order, Category.name)
        .all()
    )
    products = (
        db.session.query(Product)
        .filter(
            Product.sales_context_id == session.sales_context_id,
            Product.is_active.is_(True),
            Product.is_available.is_(True),
        )
        .order_by(Product.name, Product.id)
        .all()
    )
    return {"categories": categories, "products": products}


def _mutate_cart(token: str, mutate) -> OnlineOrderSession:
    get_session(token)

    def _op():
        begin_write()
        session = _find_session(token, lock=True)
        _ensure_open(session)
        session.cart = _cart_document(mutate(session, session.cart_items()))
        db.session.commit()
        return session

    return run_with_retry(_op)


def add_to_cart(
    token: str,
    product_id: int,
    quantity: int = 1,
    *,
    selected_options: list[dict] | None = None,
    notes: str | None = None,
) -> OnlineOrderSession:
    """Put a product in the cart. Availability and options are checked now; nothing is reserved."""
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("Quantity must be a positive integer", details={"quantity": quantity})

    def _add(session, items):
        snapshot = catalog_service.get_product(product_id, session.sales_context_id)
        if not snapshot.is_orderable:
            raise ValidationError(f"{snapshot.name} is not available", details={"product_id": product_id})
        options_price_cents, priced = catalog_service.price_selected_options(snapshot, selected_options)

        items.append(
            {
                "cart_item_id": secrets.token_hex(6),
                "product_id": snapshot.product_id,
                "product_name": snapshot.name,
                "quantity": quantity,
                "selected_options": [{"group": p["group"], "option": p["option"]} for p in priced],
                "unit_price_cents": snapshot.price_cents,
                "options_price_cents": options_price_cents,
                "notes": notes,
            }
        )
        return items

    return _mutate_cart(token, _add)


def update_cart_item(
    token: str,
    cart_item_id: str,
    *,
    quantity: int | None = None,
    notes: str | None = None,
) -> OnlineOrderSession:
    """Change a cart line; quantity 0 removes it."""
    if quantity is not None and (not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 0):
        raise ValidationError("Quantity must be a non-negative integer", details={"quantity": quantity})

    def _update(session, items):
        for index, entry in enumerate(items):
            if entry.get("cart_item_id") != cart_item_id:
                continue
            if quantity == 0:
                del items[index]
                return items
            entry = dict(entry)
            if quantity is not None:
                entry["quantity"] = quantity
            if notes is not None:
                entry["notes"] = notes
            items[index] = entry
            return items
        raise NotFoundError("Cart item not found", details={"cart_item_id": cart_item_id})

    return _mutate_cart(token, _update)


def clear_cart(token: str) -> OnlineOrderSession:
    return _mutate_cart(token, lambda session, items: [])


def submit_session_order(
    token: str,
    *,
    customer_name: str | None = None,
    notes: str | None = None,
) -> Order:
    """
    Check out the cart: the gateway prices and reserves every line, all-or-nothing.

    On success the cart is emptied in the same transaction. On failure the cart
    is left untouched so the guest can fix it.
    """
    session = get_session(token)
    organization_id = session.organization_id
    actor = session_actor(organization_id, CREATE_ORDER)
    authorize(actor, organization_id, CREATE_ORDER)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        session = _find_session(token, lock=True)
        _ensure_open(session)

        cart = session.cart_items()
        if not cart:
            raise ValidationError("Cart is empty")

        submission = OrderSubmission(
            organization_id=session.organization_id,
            sales_context_id=session.sales_context_id,
            lines=[
                OrderLine(
                    product_id=entry["product_id"],
                    quantity=entry["quantity"],
                    selected_options=entry.get("selected_options") or [],
                    notes=entry.get("notes"),
                )
                for entry in cart
            ],
            source=ORDER_SOURCE_QR_ORDER if session.qr_code else ORDER_SOURCE_ONLINE,
            table_number=session.table_number,
            customer_name=customer_name or session.customer_name,
            notes=notes,
            online_session_id=session.id,
        )
        order = _ingest_locked(submission, outbox)

        session.cart = _cart_document([])
        session.status = SESSION_ORDERING
        if customer_name:
            session.customer_name = customer_name

        db.session.commit()
        logger.info("Online session %s submitted order %s", session.id, order.order_number)
        return order

    order = run_with_retry(_op)
    outbox.publish()
    return order


def close_session(token: str) -> OnlineOrderSession:
    session = _find_session(token)
    if session.status == SESSION_COMPLETED:
        return session
    session.status = SESSION_COMPLETED
    db.session.commit()
    return session


def list_session_orders(token: str) -> list[Order]:
    session = _find_session(token)
    return (
        db.session.query(Order)
        .filter(Order.online_session_id == session.id, Order.deleted_at.is_(None))
        .order_by(Order.id)
        .all()
    )
