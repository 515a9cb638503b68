# Overview: Staff-facing stock operations; capability checks and transactions around the stock ledger.

from __future__ import annotations

from ..extensions import db
from ..models import Product, SalesContext, StockMovement
from ..permissions import ADJUST_INVENTORY, VIEW_INVENTORY
from . import stock_ledger
from .capability_service import authorize_actor
from .concurrency import begin_write, run_with_retry
from .errors import NotFoundError
from .notification_service import Outbox, note_low_stock
from .sales_context_service import resolve_sales_context


def _require_product_in_org(product_id: int, organization_id: int) -> Product:
    product = (
        db.session.query(Product)
        .join(SalesContext, Product.sales_context_id == SalesContext.id)
        .filter(Product.id == product_id, SalesContext.organization_id == organization_id)
        .first()
    )
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return product


def adjust_stock(actor, product_id: int, delta: int, *, reason: str, movement_type: str | None = None, notes: str | None = None):
    organization_id = authorize_actor(actor, ADJUST_INVENTORY)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        _require_product_in_org(product_id, organization_id)
        movement = stock_ledger.adjust(
            product_id,
            delta,
            reason=reason,
            user_id=actor.user_id,
            movement_type=movement_type,
            notes=notes,
        )
        note_low_stock(outbox, movement)
        db.session.commit()
        return movement

    movement = run_with_retry(_op)
    outbox.publish()
    return movement


def count_stock(actor, product_id: int, counted_quantity: int, *, reason: str | None = None):
    """Book a physical count; returns None when nothing changed."""
    organization_id = authorize_actor(actor, ADJUST_INVENTORY)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        _require_product_in_org(product_id, organization_id)
        movement = stock_ledger.record_count(
            product_id,
            counted_quantity,
            user_id=actor.user_id,
            reason=reason or "Inventory count",
        )
        note_low_stock(outbox, movement)
        db.session.commit()
        return movement

    movement = run_with_retry(_op)
    outbox.publish()
    return movement


def list_movements(actor, sales_context_id: int, **filters) -> dict:
    organization_id = authorize_actor(actor, VIEW_INVENTORY)
    resolve_sales_context(sales_context_id, organization_id)
    return stock_ledger.list_movements(sales_context_id, **filters)


def get_movement(actor, movement_id: int) -> StockMovement:
    organization_id = authorize_actor(actor, VIEW_INVENTORY)
    movement = (
        db.session.query(StockMovement)
        .join(SalesContext, StockMovement.sales_context_id == SalesContext.id)
        .filter(StockMovement.id == movement_id, SalesContext.organization_id == organization_id)
        .first()
    )
    if movement is None:
        raise NotFoundError("Stock movement not found", details={"movement_id": movement_id})
    return movement


def verify_product(actor, product_id: int) -> dict:
    organization_id = authorize_actor(actor, VIEW_INVENTORY)
    _require_product_in_org(product_id, organization_id)
    return stock_ledger.verify_product_ledger(product_id)
