# Overview: Physical inventory counts of a sales context; snapshot, count, then book the differences.

"""
Inventory Count Service

WHY: Staff count the shelves of an event once in a while. The count snapshots
expected quantities, collects counted quantities, and on completion books every
difference through the stock ledger as an inventory_count movement.

LIFECYCLE:
1. draft: products are added (expected = stock at that moment)
2. in_progress: counted quantities are entered
3. completed: differences booked; the count is frozen
4. cancelled: abandoned, nothing booked

At most one count per sales context is in_progress. Differences are applied
on top of the live stock, so sales made while counting stay on the books.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import InventoryCount, InventoryCountItem, Product, SalesContext
from ..models.inventory import (
    COUNT_CANCELLED,
    COUNT_COMPLETED,
    COUNT_DRAFT,
    COUNT_IN_PROGRESS,
    VALID_COUNT_STATUSES,
)
from ..permissions import ADJUST_INVENTORY, VIEW_INVENTORY
from ..time_utils import utcnow
from . import stock_ledger
from .capability_service import authorize_actor
from .concurrency import begin_write, lock_for_update, run_with_retry
from .errors import NotFoundError, ValidationError
from .notification_service import Outbox, note_low_stock
from .sales_context_service import resolve_sales_context


logger = logging.getLogger(__name__)

STOCK_REFERENCE_COUNT = "inventory_count"


# =============================================================================
# LOADING / GUARDS
# =============================================================================

def _count_query(organization_id: int):
    return (
        db.session.query(InventoryCount)
        .join(SalesContext, InventoryCount.sales_context_id == SalesContext.id)
        .filter(SalesContext.organization_id == organization_id)
    )


def _get_count(count_id: int, organization_id: int, *, lock: bool = False) -> InventoryCount:
    query = _count_query(organization_id).filter(InventoryCount.id == count_id)
    if lock:
        query = lock_for_update(query)
    count = query.first()
    if count is None:
        raise NotFoundError("Inventory count not found", details={"count_id": count_id})
    return count


def _ensure_status(count: InventoryCount, *allowed: str, action: str) -> None:
    if count.status not in allowed:
        raise ValidationError(
            f"Cannot {action} a count that is {count.status}",
            details={"count_id": count.id, "status": count.status},
        )


def _ensure_nothing_in_progress(sales_context_id: int, exclude_id: int | None = None) -> None:
    query = db.session.query(InventoryCount.id).filter(
        InventoryCount.sales_context_id == sales_context_id,
        InventoryCount.status == COUNT_IN_PROGRESS,
    )
    if exclude_id is not None:
        query = query.filter(InventoryCount.id != exclude_id)
    running = query.first()
    if running is not None:
        raise ValidationError(
            "Another count is already in progress for this sales context",
            details={"sales_context_id": sales_context_id, "count_id": running[0]},
        )


def _countable_products(sales_context_id: int):
    return db.session.query(Product).filter(
        Product.sales_context_id == sales_context_id,
        Product.track_inventory.is_(True),
    )


def _snapshot(count: InventoryCount, product: Product) -> InventoryCountItem:
    item = InventoryCountItem(
        inventory_count_id=count.id,
        product_id=product.id,
        expected_quantity=product.stock_quantity,
    )
    db.session.add(item)
    return item


# =============================================================================
# COUNT DOCUMENT
# =============================================================================

def create_count(actor, sales_context_id: int, name: str, *, notes: str | None = None) -> InventoryCount:
    organization_id = authorize_actor(actor, ADJUST_INVENTORY)
    if not name or not str(name).strip():
        raise ValidationError("name is required")

    def _op():
        begin_write()
        resolve_sales_context(sales_context_id, organization_id)
        _ensure_nothing_in_progress(sales_context_id)
        count = InventoryCount(
            sales_context_id=sales_context_id,
            name=str(name).strip(),
            notes=notes,
            status=COUNT_DRAFT,
            created_by_user_id=actor.user_id,
        )
        db.session.add(count)
        db.session.commit()
        return count

    return run_with_retry(_op)


def update_count(actor, count_id: int, *, name: str | None = None, notes: str | None = None) -> InventoryCount:
    organization_id = authorize_actor(actor, ADJUST_INVENTORY)

    def _op():
        begin_write()
        count = _get_count(count_id, organization_id, lock=True)
        _ensure_status(count, COUNT_DRAFT, COUNT_IN_PROGRESS, COUNT_CANCELLED, action="edit")
        if name is not None:
            if not str(name).strip():
                raise ValidationError("name cannot be empty")
            count.name = str(name).strip()
        if notes is not None:
            count.notes = notes
        db.session.commit()
        return count

    return run_with_retry(_op)


def delete_count(actor, count_id: int) -> None:
    organization_id = authorize_actor(actor, ADJUST_INVENTORY)

    def _op():
        begin_write()
        count = _get_count(count_id, organization_id, lock=True)
        _ensure_status(count, COUNT_DRAFT, COUNT_IN_PROGRESS, COUNT_CANCELLED, action="delete")
        db.session.delete(count)
        db.session.commit()

    run_with_retry(_op)


def start_count(actor, count_id: int) -> InventoryCount:
    organization_id = authorize_actor(actor, ADJUST_INVENTORY)

    def _op():
        begin_write()
        count = _get_count(count_id, organization_id, lock=True)
        _ensure_status(count, COUNT_DRAFT, action="start")
        if not count.items:
            raise ValidationError("Add at least one product before starting the count", details={"count_id": count.id})
        _ensure_nothing_in_progress(count.sales_context_id, exclude_id=count.id)
        count.status = COUNT_IN_PROGRESS
        count.started_at = utcnow()
        db.session.commit()
        return count

    return run_with_retry(_op)


def complete_count(actor, count_id: int) -> InventoryCount:
    """
    Book every non-zero difference and freeze the count.

    Raises:
        ValidationError: count is not in_progress or a product is still uncounted
    """
    organization_id = authorize_actor(actor, ADJUST_INVENTORY)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        count = _get_count(count_id, organization_id, lock=True)
        _ensure_status(count, COUNT_IN_PROGRESS, action="complete")

        uncounted = [item.product_id for item in count.items if item.counted_quantity is None]
        if uncounted:
            raise ValidationError(
                "Every product must be counted before completing",
                details={"count_id": count.id, "uncounted_product_ids": uncounted},
            )

        for item in count.items:
            movement = stock_ledger.book_count_difference(
                item.product_id,
                item.difference,
                user_id=actor.user_id,
                reference_type=STOCK_REFERENCE_COUNT,
                reference_id=count.id,
                reason=f"Inventory count: {count.name}",
            )
            note_low_stock(outbox, movement)

        count.status = COUNT_COMPLETED
        count.completed_at = utcnow()
        count.completed_by_user_id = actor.user_id
        db.session.commit()
        return count

    count = run_with_retry(_op)
    logger.info("Inventory count %s completed with %s products", count.id, len(count.items))
    outbox.publish()
    return count


def cancel_count(actor, count_id: int) -> InventoryCount:
    organization_id = authorize_actor(actor, ADJUST_INVENTORY)

    def _op():
        begin_write()
        count = _get_count(count_id, organization_id, lock=True)
        _ensure_status(count, COUNT_DRAFT, COUNT_IN_PROGRESS, action="cancel")
        count.status = COUNT_CANCELLED
        db.session.commit()
        return count

    return run_with_retry(_op)


# =============================================================================
# COUNT ITEMS
# =============================================================================

def add_count_item(actor, count_id: int, product_id: int, *, notes: str | None = None) -> InventoryCountItem:
    """Put one tracked product of the count's sales context on a draft count."""
    organization_id = authorize_actor(actor, ADJUST_INVENTORY)

    def _op():
        begin_write()
        count = _get_count(count_id, organization_id, lock=True)
        _ensure_status(count, COUNT_DRAFT, action="add products to")

        product = _countable_products(count.sales_context_id).filter(Product.id == product_id).first()
        if product is None:
            raise NotFoundError(
                "Product not found or not tracked in this sales context",
                details={"product_id": product_id},
            )
        if any(item.product_id == product_id for item in count.items):
            raise ValidationError("Product is already on this count", details={"product_id": product_id})

        item = _snapshot(count, product)
        item.notes = notes
        db.session.commit()
        return item

    return run_with_retry(_op)


def bulk_add_count_items(
    actor,
    count_id: int,
    *,
    category_id: int | None = None,
    product_ids: list[int] | None = None,
) -> list[InventoryCountItem]:
    """
    Add many tracked products at once: a category, an explicit list, or
    (with neither) every tracked product of the sales context.

    Products already on the count are skipped; ids from elsewhere are ignored.
    """
    organization_id = authorize_actor(actor, ADJUST_INVENTORY)
    if product_ids is not None and not isinstance(product_ids, list):
        raise ValidationError("product_ids must be a list")

    def _op():
        begin_write()
        count = _get_count(count_id, organization_id, lock=True)
        _ensure_status(count, COUNT_DRAFT, action="add products to")

        query = _countable_products(count.sales_context_id)
        if category_id is not None:
            query = query.filter(Product.category_id == category_id)
        if product_ids is not None:
            query = query.filter(Product.id.in_(product_ids))

        present = {item.product_id for item in count.items}
        added = [_snapshot(count, product) for product in query.order_by(Product.id).all() if product.id not in present]
        db.session.commit()
        return added

    return run_with_retry(_op)


def update_count_item(
    actor,
    count_id: int,
    item_id: int,
    counted_quantity: int,
    *,
    notes: str | None = None,
) -> InventoryCountItem:
    """Record the counted quantity of one product on a running count."""
    organization_id = authorize_actor(actor, ADJUST_INVENTORY)
    if not isinstance(counted_quantity, int) or isinstance(counted_quantity, bool) or counted_quantity < 0:
        raise ValidationError(
            "counted_quantity must be a non-negative integer",
            details={"counted_quantity": counted_quantity},
        )

    def _op():
        begin_write()
        count = _get_count(count_id, organization_id, lock=True)
        _ensure_status(count, COUNT_IN_PROGRESS, action="record quantities on")

        item = next((i for i in count.items if i.id == item_id), None)
        if item is None:
            raise NotFoundError("Count item not found", details={"count_id": count.id, "item_id": item_id})

        item.counted_quantity = counted_quantity
        item.difference = counted_quantity - item.expected_quantity
        item.counted_by_user_id = actor.user_id
        item.counted_at = utcnow()
        if notes is not None:
            item.notes = notes
        db.session.commit()
        return item

    return run_with_retry(_op)


# =============================================================================
# READS
# =============================================================================

def get_count(actor, count_id: int) -> InventoryCount:
    organization_id = authorize_actor(actor, VIEW_INVENTORY)
    return _get_count(count_id, organization_id)


def list_counts(
    actor,
    sales_context_id: int,
    *,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """Counts of a sales context, newest first, paginated."""
    organization_id = authorize_actor(actor, VIEW_INVENTORY)
    resolve_sales_context(sales_context_id, organization_id)
    if status is not None and status not in VALID_COUNT_STATUSES:
        raise ValidationError(f"Invalid status: {status}", details={"allowed": list(VALID_COUNT_STATUSES)})

    query = db.session.query(InventoryCount).filter(InventoryCount.sales_context_id == sales_context_id)
    if status:
        query = query.filter(InventoryCount.status == status)

    total = query.count()
    rows = (
        query.order_by(InventoryCount.created_at.desc(), InventoryCount.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"data": rows, "total": total, "page": page, "limit": limit}
