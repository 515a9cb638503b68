# Overview: Order aggregate; item and order state machines, totals, and the stock effects of edits.

"""
Order Aggregate

WHY: Orders and their items are created by the ingestion gateway and from then
on only change through the operations below (or the payment allocator). Every
operation:

1. asks the capability gate once,
2. opens one write transaction and re-reads the order FOR UPDATE,
3. applies the change (stock goes through the stock ledger, never direct),
4. recomputes totals, payment status and order status from scratch,
5. commits, and only then publishes events.

A racing writer on the same order loses on the version_id check and is either
retried or surfaced as ConflictError.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func

from ..extensions import db
from ..models import Order, OrderItem, Payment
from ..models.orders import (
    ITEM_STATUS_CANCELLED,
    ITEM_STATUS_DELIVERED,
    ITEM_STATUS_FLOW,
    ITEM_STATUS_PENDING,
    ITEM_STATUS_PREPARING,
    ITEM_STATUS_READY,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_IN_PROGRESS,
    ORDER_STATUS_OPEN,
    ORDER_STATUS_READY,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_PARTLY_PAID,
    PAYMENT_STATUS_UNPAID,
    TERMINAL_ORDER_STATUSES,
    VALID_ORDER_SOURCES,
    VALID_PRIORITIES,
)
from ..models.payments import PAYMENT_CAPTURED
from ..permissions import (
    CANCEL_ORDER,
    COMPLETE_ORDER,
    DELETE_ORDER,
    EDIT_ORDER,
    UPDATE_ITEM_STATUS,
    VIEW_ORDERS,
)
from ..signals import TRIGGER_ORDER_COMPLETED
from ..time_utils import utcnow
from . import catalog_service, stock_ledger
from .capability_service import authorize_actor
from .concurrency import begin_write, lock_for_update, run_with_retry
from .errors import NotFoundError, ValidationError
from .notification_service import Outbox, note_low_stock


logger = logging.getLogger(__name__)

STOCK_REFERENCE_ORDER = "order"

# Timestamp stamped when an item enters each kitchen state
_ITEM_STATUS_TIMESTAMPS = {
    ITEM_STATUS_PREPARING: "prepared_at",
    ITEM_STATUS_READY: "ready_at",
    ITEM_STATUS_DELIVERED: "delivered_at",
}


# =============================================================================
# LOADING / GUARDS
# =============================================================================

def _order_query(organization_id: int):
    return db.session.query(Order).filter(
        Order.organization_id == organization_id,
        Order.deleted_at.is_(None),
    )


def _get_order_locked(order_id: int, organization_id: int) -> Order:
    order = lock_for_update(_order_query(organization_id).filter(Order.id == order_id)).first()
    if order is None:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def _get_item(order: Order, item_id: int) -> OrderItem:
    for item in order.items:
        if item.id == item_id:
            return item
    raise NotFoundError("Order item not found", details={"order_id": order.id, "item_id": item_id})


def _ensure_not_terminal(order: Order) -> None:
    if order.status in TERMINAL_ORDER_STATUSES:
        raise ValidationError(
            f"Order is {order.status}",
            details={"order_id": order.id, "status": order.status},
        )


def _validate_quantity(quantity) -> int:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("Quantity must be a positive integer", details={"quantity": quantity})
    return quantity


def _touch(order: Order) -> None:
    # Always write the order row so the version check sees every mutation
    order.updated_at = utcnow()


def _reserve_for_item(order: Order, item: OrderItem, quantity: int, outbox: Outbox, user_id: int | None):
    if item.product_id is None:
        return None
    movement = stock_ledger.reserve(
        item.product_id,
        quantity,
        sales_context_id=order.sales_context_id,
        reference_type=STOCK_REFERENCE_ORDER,
        reference_id=order.id,
        reason=f"Order {order.order_number}",
        user_id=user_id,
    )
    note_low_stock(outbox, movement)
    return movement


def _release_for_item(order: Order, item: OrderItem, quantity: int, reason: str, user_id: int | None):
    if item.product_id is None:
        return None
    return stock_ledger.release(
        item.product_id,
        quantity,
        sales_context_id=order.sales_context_id,
        reference_type=STOCK_REFERENCE_ORDER,
        reference_id=order.id,
        reason=reason,
        user_id=user_id,
    )


# =============================================================================
# DERIVED FIELDS
# =============================================================================

def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def recalculate_totals(order: Order) -> Order:
    """
    Recompute subtotal, tax and total from the non-cancelled items.

    Idempotent and always from scratch:
        subtotal = SUM(total_price_cents)
        tax      = round_half_up(SUM(total_price_cents * tax_rate_bps) / 10000)
        total    = subtotal - discount + tip

    Prices are gross; tax is the share contained in them and is not added to
    the total.
    """
    active = order.active_items()
    subtotal = sum(item.total_price_cents for item in active)
    tax_basis = sum(item.total_price_cents * item.tax_rate_bps for item in active)

    order.subtotal_cents = subtotal
    order.tax_total_cents = _round_half_up(Decimal(tax_basis) / Decimal(10000))
    order.total_cents = subtotal - (order.discount_cents or 0) + (order.tip_cents or 0)
    return order


def captured_amount(order: Order) -> int:
    return int(
        db.session.query(func.coalesce(func.sum(Payment.amount_cents), 0))
        .filter(Payment.order_id == order.id, Payment.status == PAYMENT_CAPTURED)
        .scalar()
        or 0
    )


def refresh_payment_status(order: Order) -> str:
    """
    paid_amount = SUM(captured payments); status follows from it:

        unpaid       paid_amount == 0
        partly_paid  0 < paid_amount < total
        paid         paid_amount >= total
    """
    paid = captured_amount(order)
    order.paid_amount_cents = paid
    if paid <= 0:
        order.payment_status = PAYMENT_STATUS_UNPAID
    elif paid < order.total_cents:
        order.payment_status = PAYMENT_STATUS_PARTLY_PAID
    else:
        order.payment_status = PAYMENT_STATUS_PAID
    return order.payment_status


def derive_order_status(order: Order) -> bool:
    """
    Move a live order along open -> in_progress -> ready from its items.

    Completed and cancelled orders are left alone. Returns True if the status
    changed.
    """
    if order.status in TERMINAL_ORDER_STATUSES:
        return False

    active = order.active_items()
    if not active:
        status = ORDER_STATUS_OPEN
    elif all(item.status == ITEM_STATUS_DELIVERED for item in active):
        status = ORDER_STATUS_READY
    elif any(item.status != ITEM_STATUS_PENDING for item in active):
        status = ORDER_STATUS_IN_PROGRESS
    else:
        status = ORDER_STATUS_OPEN

    if status == order.status:
        return False

    order.status = status
    if status == ORDER_STATUS_READY and order.ready_at is None:
        order.ready_at = utcnow()
    return True


def _refresh(order: Order) -> None:
    recalculate_totals(order)
    refresh_payment_status(order)
    derive_order_status(order)
    _touch(order)


def _complete(order: Order, outbox: Outbox) -> None:
    order.status = ORDER_STATUS_COMPLETED
    order.completed_at = utcnow()
    outbox.trigger(
        TRIGGER_ORDER_COMPLETED,
        {"order_id": order.id, "order_number": order.order_number, "total_cents": order.total_cents},
    )


def _changes(order: Order, **extra) -> dict:
    changes = {
        "status": order.status,
        "payment_status": order.payment_status,
        "total_cents": order.total_cents,
    }
    changes.update(extra)
    return changes


# =============================================================================
# ITEM CREATION (shared with the ingestion gateway)
# =============================================================================

def add_line(
    order: Order,
    product_id: int,
    quantity: int,
    *,
    outbox: Outbox,
    selected_options: list[dict] | None = None,
    notes: str | None = None,
    kitchen_notes: str | None = None,
    user_id: int | None = None,
) -> OrderItem:
    """
    Price one line from the catalog, reserve its stock and append it to a locked order.

    Does not recompute totals; the caller does that once per unit of work.

    Raises:
        NotFoundError: product missing from the order's sales context
        ValidationError: product inactive/unavailable, unknown option, bad quantity
        InsufficientStockError: not enough tracked stock
    """
    quantity = _validate_quantity(quantity)
    snapshot = catalog_service.get_product(product_id, order.sales_context_id)
    if not snapshot.is_orderable:
        raise ValidationError(
            f"{snapshot.name} is not available",
            details={"product_id": product_id},
        )

    options_price_cents, priced_options = catalog_service.price_selected_options(snapshot, selected_options)

    item = OrderItem(
        product_id=snapshot.product_id,
        category_id=snapshot.category_id,
        product_name=snapshot.name,
        category_name=snapshot.category_name,
        quantity=quantity,
        unit_price_cents=snapshot.price_cents,
        options_price_cents=options_price_cents,
        tax_rate_bps=snapshot.tax_rate_bps,
        total_price_cents=(snapshot.price_cents + options_price_cents) * quantity,
        options=priced_options,
        status=ITEM_STATUS_PENDING,
        paid_quantity=0,
        notes=notes,
        kitchen_notes=kitchen_notes,
        sort_order=len(order.items),
    )
    order.items.append(item)
    db.session.flush()

    _reserve_for_item(order, item, quantity, outbox, user_id)
    return item


# =============================================================================
# READS
# =============================================================================

def get_order(actor, order_id: int) -> Order:
    organization_id = authorize_actor(actor, VIEW_ORDERS)
    order = _order_query(organization_id).filter(Order.id == order_id).first()
    if order is None:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def list_orders(
    actor,
    *,
    sales_context_id: int | None = None,
    status: str | None = None,
    payment_status: str | None = None,
    source: str | None = None,
    start=None,
    end=None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """Orders of the actor's organization, newest first, paginated."""
    organization_id = authorize_actor(actor, VIEW_ORDERS)
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive", details={"page": page, "limit": limit})
    if source is not None and source not in VALID_ORDER_SOURCES:
        raise ValidationError(f"Invalid source: {source}", details={"allowed": list(VALID_ORDER_SOURCES)})

    query = _order_query(organization_id)
    if sales_context_id is not None:
        query = query.filter(Order.sales_context_id == sales_context_id)
    if status:
        query = query.filter(Order.status == status)
    if payment_status:
        query = query.filter(Order.payment_status == payment_status)
    if source:
        query = query.filter(Order.source == source)
    if start is not None:
        query = query.filter(Order.created_at >= start)
    if end is not None:
        query = query.filter(Order.created_at <= end)

    total = query.count()
    rows = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"data": rows, "total": total, "page": page, "limit": limit}


# =============================================================================
# ITEM MUTATIONS
# =============================================================================

def add_item(
    actor,
    order_id: int,
    product_id: int,
    quantity: int,
    *,
    selected_options: list[dict] | None = None,
    notes: str | None = None,
    kitchen_notes: str | None = None,
) -> OrderItem:
    """Add a priced line to a live order and reserve its stock."""
    organization_id = authorize_actor(actor, EDIT_ORDER)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        order = _get_order_locked(order_id, organization_id)
        _ensure_not_terminal(order)

        item = add_line(
            order,
            product_id,
            quantity,
            outbox=outbox,
            selected_options=selected_options,
            notes=notes,
            kitchen_notes=kitchen_notes,
            user_id=actor.user_id,
        )
        _refresh(order)
        outbox.add("order.updated", order_id=order.id, changes=_changes(order, item_added=item.id))

        db.session.commit()
        return item

    item = run_with_retry(_op)
    outbox.publish()
    return item


def update_item(
    actor,
    order_id: int,
    item_id: int,
    *,
    quantity: int | None = None,
    notes: str | None = None,
    kitchen_notes: str | None = None,
) -> OrderItem:
    """
    Change quantity and/or notes of one item.

    Quantity can only change while the item is pending and never below what
    has been paid. An increase reserves the delta, a decrease releases it.
    """
    organization_id = authorize_actor(actor, EDIT_ORDER)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        order = _get_order_locked(order_id, organization_id)
        _ensure_not_terminal(order)
        item = _get_item(order, item_id)
        if item.status == ITEM_STATUS_CANCELLED:
            raise ValidationError("Item is cancelled", details={"item_id": item.id})

        if quantity is not None and quantity != item.quantity:
            new_quantity = _validate_quantity(quantity)
            if item.status != ITEM_STATUS_PENDING:
                raise ValidationError(
                    "Quantity can only be changed while the item is pending",
                    details={"item_id": item.id, "status": item.status},
                )
            if new_quantity < item.paid_quantity:
                raise ValidationError(
                    "Quantity cannot drop below the paid quantity",
                    details={"item_id": item.id, "paid_quantity": item.paid_quantity},
                )

            delta = new_quantity - item.quantity
            if delta > 0:
                _reserve_for_item(order, item, delta, outbox, actor.user_id)
            else:
                _release_for_item(
                    order, item, -delta, f"Quantity reduced on order {order.order_number}", actor.user_id
                )
            item.quantity = new_quantity
            item.total_price_cents = item.unit_gross_cents * new_quantity

        if notes is not None:
            item.notes = notes
        if kitchen_notes is not None:
            item.kitchen_notes = kitchen_notes

        _refresh(order)
        outbox.add("order.updated", order_id=order.id, changes=_changes(order, item_updated=item.id))

        db.session.commit()
        return item

    item = run_with_retry(_op)
    outbox.publish()
    return item


def remove_item(actor, order_id: int, item_id: int) -> Order:
    """Delete an unpaid item from a live order and return its stock."""
    organization_id = authorize_actor(actor, EDIT_ORDER)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        order = _get_order_locked(order_id, organization_id)
        _ensure_not_terminal(order)
        item = _get_item(order, item_id)
        if item.paid_quantity > 0:
            raise ValidationError(
                "Cannot remove an item that has been paid",
                details={"item_id": item.id, "paid_quantity": item.paid_quantity},
            )

        if item.status != ITEM_STATUS_CANCELLED:
            _release_for_item(
                order, item, item.quantity, f"Item removed from order {order.order_number}", actor.user_id
            )
        order.items.remove(item)
        db.session.flush()

        _refresh(order)
        outbox.add("order.updated", order_id=order.id, changes=_changes(order, item_removed=item_id))

        db.session.commit()
        return order

    order = run_with_retry(_op)
    outbox.publish()
    return order


def cancel_item(actor, order_id: int, item_id: int, reason: str | None = None) -> OrderItem:
    """Cancel one unpaid, not yet delivered item and return its stock."""
    organization_id = authorize_actor(actor, EDIT_ORDER)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        order = _get_order_locked(order_id, organization_id)
        _ensure_not_terminal(order)
        item = _get_item(order, item_id)
        if item.status in (ITEM_STATUS_CANCELLED, ITEM_STATUS_DELIVERED):
            raise ValidationError(
                f"Item is already {item.status}",
                details={"item_id": item.id, "status": item.status},
            )
        if item.paid_quantity > 0:
            raise ValidationError(
                "Cannot cancel an item that has been paid",
                details={"item_id": item.id, "paid_quantity": item.paid_quantity},
            )

        _release_for_item(
            order, item, item.quantity, reason or f"Item cancelled on order {order.order_number}", actor.user_id
        )
        item.status = ITEM_STATUS_CANCELLED
        item.cancelled_at = utcnow()

        _refresh(order)
        outbox.add(
            "order.item.status_changed",
            order_id=order.id,
            item_id=item.id,
            status=ITEM_STATUS_CANCELLED,
        )
        outbox.add("order.updated", order_id=order.id, changes=_changes(order, item_cancelled=item.id))

        db.session.commit()
        return item

    item = run_with_retry(_op)
    outbox.publish()
    return item


def set_item_status(actor, order_id: int, item_id: int, status: str) -> OrderItem:
    """
    Move an item forward through the kitchen flow (pending -> preparing -> ready -> delivered).

    Skipping forward is allowed, going back is not. Use cancel_item() to cancel.
    Items of completed (prepaid) orders may still be worked on; cancelled
    orders are frozen.
    """
    organization_id = authorize_actor(actor, UPDATE_ITEM_STATUS)
    if status not in ITEM_STATUS_FLOW:
        raise ValidationError(
            f"Invalid item status: {status}",
            details={"allowed": list(ITEM_STATUS_FLOW)},
        )
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        order = _get_order_locked(order_id, organization_id)
        if order.status == ORDER_STATUS_CANCELLED:
            raise ValidationError("Order is cancelled", details={"order_id": order.id})

        item = _get_item(order, item_id)
        if item.status == ITEM_STATUS_CANCELLED:
            raise ValidationError("Item is cancelled", details={"item_id": item.id})

        current = ITEM_STATUS_FLOW.index(item.status)
        target = ITEM_STATUS_FLOW.index(status)
        if target <= current:
            raise ValidationError(
                f"Invalid item status transition {item.status} -> {status}",
                details={"item_id": item.id, "from": item.status, "to": status},
            )

        now = utcnow()
        for passed in ITEM_STATUS_FLOW[current + 1:target + 1]:
            column = _ITEM_STATUS_TIMESTAMPS[passed]
            if getattr(item, column) is None:
                setattr(item, column, now)
        item.status = status

        previous_order_status = order.status
        derive_order_status(order)
        _touch(order)

        outbox.add("order.item.status_changed", order_id=order.id, item_id=item.id, status=status)
        if order.status != previous_order_status:
            outbox.add("order.updated", order_id=order.id, changes=_changes(order))

        db.session.commit()
        return item

    item = run_with_retry(_op)
    outbox.publish()
    return item


# =============================================================================
# ORDER MUTATIONS
# =============================================================================

_UNSET = object()


def update_order(
    actor,
    order_id: int,
    *,
    discount_cents=_UNSET,
    discount_reason=_UNSET,
    tip_cents=_UNSET,
    notes=_UNSET,
    priority=_UNSET,
    table_number=_UNSET,
    customer_name=_UNSET,
) -> Order:
    """Edit order-level fields of a live order; totals and payment status follow."""
    organization_id = authorize_actor(actor, EDIT_ORDER)

    for name, value in (("discount_cents", discount_cents), ("tip_cents", tip_cents)):
        if value is _UNSET:
            continue
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ValidationError(f"{name} must be a non-negative integer", details={name: value})
    if priority is not _UNSET and priority not in VALID_PRIORITIES:
        raise ValidationError(f"Invalid priority: {priority}", details={"allowed": list(VALID_PRIORITIES)})

    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        order = _get_order_locked(order_id, organization_id)
        _ensure_not_terminal(order)

        changed = {}
        for name, value in (
            ("discount_cents", discount_cents),
            ("discount_reason", discount_reason),
            ("tip_cents", tip_cents),
            ("notes", notes),
            ("priority", priority),
            ("table_number", table_number),
            ("customer_name", customer_name),
        ):
            if value is not _UNSET and getattr(order, name) != value:
                setattr(order, name, value)
                changed[name] = value

        _refresh(order)
        if order.total_cents < 0:
            raise ValidationError(
                "Discount exceeds order value",
                details={"subtotal_cents": order.subtotal_cents, "discount_cents": order.discount_cents},
            )

        outbox.add("order.updated", order_id=order.id, changes=_changes(order, **changed))
        db.session.commit()
        return order

    order = run_with_retry(_op)
    outbox.publish()
    return order


def complete_order(actor, order_id: int) -> Order:
    """Close a fully paid order."""
    organization_id = authorize_actor(actor, COMPLETE_ORDER)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        order = _get_order_locked(order_id, organization_id)
        _ensure_not_terminal(order)

        recalculate_totals(order)
        refresh_payment_status(order)
        if order.payment_status != PAYMENT_STATUS_PAID:
            raise ValidationError(
                "Order must be fully paid before completion",
                details={
                    "payment_status": order.payment_status,
                    "remaining_cents": order.remaining_cents,
                },
            )

        _complete(order, outbox)
        _touch(order)
        outbox.add("order.updated", order_id=order.id, changes=_changes(order))

        db.session.commit()
        logger.info("Order %s completed", order.order_number)
        return order

    order = run_with_retry(_op)
    outbox.publish()
    return order


def _cancel_items(order: Order, reason: str, user_id: int | None) -> None:
    now = utcnow()
    for item in order.items:
        if item.status == ITEM_STATUS_CANCELLED:
            continue
        _release_for_item(order, item, item.quantity, reason, user_id)
        item.status = ITEM_STATUS_CANCELLED
        item.cancelled_at = now


def cancel_order(actor, order_id: int, reason: str | None = None) -> Order:
    """
    Cancel a live order.

    Every non-cancelled item returns its stock (one compensating movement per
    item) and is cancelled. Releases never fail, so cancellation always
    completes once the order lock is held.
    """
    organization_id = authorize_actor(actor, CANCEL_ORDER)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        order = _get_order_locked(order_id, organization_id)
        _ensure_not_terminal(order)

        _cancel_items(order, reason or f"Order {order.order_number} cancelled", actor.user_id)
        order.status = ORDER_STATUS_CANCELLED
        order.cancelled_at = utcnow()
        order.cancellation_reason = reason

        recalculate_totals(order)
        refresh_payment_status(order)
        _touch(order)
        outbox.add("order.updated", order_id=order.id, changes=_changes(order, cancellation_reason=reason))

        db.session.commit()
        logger.info("Order %s cancelled", order.order_number)
        return order

    order = run_with_retry(_op)
    outbox.publish()
    return order


def delete_order(actor, order_id: int) -> None:
    """
    Soft-delete an order that never received a payment.

    Remaining stock is released and the order disappears from every read.
    """
    organization_id = authorize_actor(actor, DELETE_ORDER)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        order = _get_order_locked(order_id, organization_id)

        payments = db.session.query(Payment.id).filter(Payment.order_id == order.id).count()
        if payments:
            raise ValidationError(
                "Orders with payments cannot be deleted",
                details={"order_id": order.id, "payments": payments},
            )

        _cancel_items(order, f"Order {order.order_number} deleted", actor.user_id)
        if order.status not in TERMINAL_ORDER_STATUSES:
            order.status = ORDER_STATUS_CANCELLED
            order.cancelled_at = utcnow()
            order.cancellation_reason = "deleted"
        recalculate_totals(order)
        order.deleted_at = utcnow()
        _touch(order)
        outbox.add("order.updated", order_id=order.id, changes=_changes(order, deleted=True))

        db.session.commit()
        logger.info("Order %s deleted", order.order_number)

    run_with_retry(_op)
    outbox.publish()
