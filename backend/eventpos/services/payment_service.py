# Overview: Payment allocator; full and split payments against an order, with item-level allocation.

"""
Payment Allocator

WHY: Orders are paid either in one go (full payment) or piece by piece by
assigning a payment to specific items and quantities (split payment, "who pays
what" at the table).

DESIGN PRINCIPLES:
- Payments are captured immediately and never updated afterwards
- Order.paid_amount_cents is always SUM(captured payments), never patched
- Every paid unit has an OrderItemPayment row:
  SUM(OrderItemPayment.quantity) == OrderItem.paid_quantity per item
- SUM(OrderItemPayment.amount_cents) of a payment never exceeds its amount;
  only tip money stays unattributed once the order is paid
- SUM(captured payments) never exceeds Order.total_cents
- An order that becomes fully paid is completed in the same transaction
- Amounts are integer cents and must match exactly; there is no rounding slack
"""

from __future__ import annotations

import logging

from sqlalchemy import func

from ..extensions import db
from ..models import Order, OrderItem, OrderItemPayment, Payment
from ..models.orders import (
    ITEM_STATUS_CANCELLED,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_COMPLETED,
    PAYMENT_STATUS_PAID,
)
from ..models.payments import PAYMENT_CAPTURED, PROVIDER_BY_METHOD, VALID_PAYMENT_METHODS
from ..permissions import TAKE_PAYMENT, VIEW_PAYMENTS
from ..signals import TRIGGER_PAYMENT_RECEIVED
from .capability_service import authorize_actor
from .concurrency import begin_write, run_with_retry
from .errors import NotFoundError, ValidationError
from .notification_service import Outbox
from .order_service import (
    _complete,
    _get_order_locked,
    _touch,
    recalculate_totals,
    refresh_payment_status,
)


logger = logging.getLogger(__name__)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

def _validate_amount(amount_cents) -> int:
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
        raise ValidationError("amount_cents must be a positive integer", details={"amount_cents": amount_cents})
    return amount_cents


def _validate_method(method: str) -> str:
    if method not in VALID_PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method: {method}",
            details={"allowed": list(VALID_PAYMENT_METHODS)},
        )
    return method


def _ensure_payable(order: Order) -> None:
    if order.status in (ORDER_STATUS_CANCELLED, ORDER_STATUS_COMPLETED):
        raise ValidationError(
            f"Cannot take payment for a {order.status} order",
            details={"order_id": order.id, "status": order.status},
        )
    if order.payment_status == PAYMENT_STATUS_PAID:
        raise ValidationError("Order is already fully paid", details={"order_id": order.id})


def _normalize_allocations(order: Order, items: list[dict]) -> list[tuple[OrderItem, int]]:
    if not items:
        raise ValidationError("Split payment needs at least one item allocation")

    by_id = {item.id: item for item in order.items}
    seen = set()
    allocations = []
    for entry in items:
        item_id = entry.get("order_item_id")
        quantity = entry.get("quantity")

        item = by_id.get(item_id)
        if item is None:
            raise ValidationError(
                "Item does not belong to this order",
                details={"order_id": order.id, "order_item_id": item_id},
            )
        if item_id in seen:
            raise ValidationError("Item allocated twice", details={"order_item_id": item_id})
        seen.add(item_id)

        if item.status == ITEM_STATUS_CANCELLED:
            raise ValidationError("Item is cancelled", details={"order_item_id": item_id})
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError(
                "Allocated quantity must be a positive integer",
                details={"order_item_id": item_id, "quantity": quantity},
            )
        if quantity > item.unpaid_quantity:
            raise ValidationError(
                "Allocated quantity exceeds the unpaid quantity",
                details={
                    "order_item_id": item_id,
                    "quantity": quantity,
                    "unpaid_quantity": item.unpaid_quantity,
                },
            )
        allocations.append((item, quantity))
    return allocations


# =============================================================================
# CORE MECHANICS
# =============================================================================

def _record_payment(order: Order, amount_cents: int, method: str, actor, provider_transaction_id, metadata) -> Payment:
    payment = Payment(
        order_id=order.id,
        amount_cents=amount_cents,
        method=method,
        provider=PROVIDER_BY_METHOD[method],
        provider_transaction_id=provider_transaction_id,
        status=PAYMENT_CAPTURED,
        payment_metadata=metadata or {},
        processed_by_user_id=actor.user_id,
        processed_by_device_id=actor.device_id,
    )
    db.session.add(payment)
    db.session.flush()
    return payment


def _allocation_rows(order: Order) -> dict:
    """Existing allocations of the order keyed by (payment_id, order_item_id)."""
    rows = (
        db.session.query(OrderItemPayment)
        .join(Payment, OrderItemPayment.payment_id == Payment.id)
        .filter(Payment.order_id == order.id)
        .all()
    )
    return {(row.payment_id, row.order_item_id): row for row in rows}


def _allocate(payment: Payment, item: OrderItem, quantity: int, amount_cents: int, rows: dict) -> None:
    allocation = rows.get((payment.id, item.id))
    if allocation is None:
        allocation = OrderItemPayment(payment_id=payment.id, order_item_id=item.id, quantity=0, amount_cents=0)
        db.session.add(allocation)
        rows[(payment.id, item.id)] = allocation
    allocation.quantity += quantity
    allocation.amount_cents += amount_cents
    item.paid_quantity += quantity


def _unattributed_amounts(order: Order) -> list[list]:
    """[payment, cents] for captured payments whose amount is not yet tied to items, oldest first."""
    attributed = dict(
        db.session.query(OrderItemPayment.payment_id, func.sum(OrderItemPayment.amount_cents))
        .join(Payment, OrderItemPayment.payment_id == Payment.id)
        .filter(Payment.order_id == order.id)
        .group_by(OrderItemPayment.payment_id)
        .all()
    )
    payments = (
        db.session.query(Payment)
        .filter(Payment.order_id == order.id, Payment.status == PAYMENT_CAPTURED)
        .order_by(Payment.id)
        .all()
    )
    budgets = []
    for payment in payments:
        left = payment.amount_cents - int(attributed.get(payment.id) or 0)
        if left > 0:
            budgets.append([payment, left])
    return budgets


def _settle_if_paid(order: Order, payment: Payment) -> bool:
    """
    Recompute paid amount/status; on full payment mark every remaining unit paid.

    Units still open at that point are paid out of the captured money not yet
    tied to items, oldest payment first and unit by unit at its gross price.
    A unit belongs to the payment that covers its first cent; a payment that
    only tops up a unit gets an amount-only row (quantity 0). Units left
    without money (discount) go to the settling payment at 0 cents; money left
    after the last unit (tip) stays unattributed.

    Returns True if the order is now fully paid.
    """
    db.session.flush()
    refresh_payment_status(order)
    if order.payment_status != PAYMENT_STATUS_PAID:
        return False

    rows = _allocation_rows(order)
    budgets = _unattributed_amounts(order)
    cursor = 0
    for item in order.active_items():
        for _ in range(item.unpaid_quantity):
            owner = None
            cost = item.unit_gross_cents
            while cost > 0 and cursor < len(budgets):
                payer, left = budgets[cursor]
                take = min(cost, left)
                if owner is None:
                    owner = payer
                    _allocate(payer, item, 1, take, rows)
                else:
                    _allocate(payer, item, 0, take, rows)
                cost -= take
                budgets[cursor][1] -= take
                if budgets[cursor][1] == 0:
                    cursor += 1
            if owner is None:
                _allocate(payment, item, 1, 0, rows)
    return True


def _after_payment(order: Order, payment: Payment, outbox: Outbox, completed: bool) -> None:
    """Queue payment events; a settled order is completed in the same unit of work."""
    outbox.add(
        "payment.received",
        order_id=order.id,
        payment_id=payment.id,
        amount_cents=payment.amount_cents,
    )
    outbox.trigger(
        TRIGGER_PAYMENT_RECEIVED,
        {
            "order_id": order.id,
            "payment_id": payment.id,
            "amount_cents": payment.amount_cents,
            "method": payment.method,
        },
    )
    if completed:
        _complete(order, outbox)
    _touch(order)
    outbox.add(
        "order.updated",
        order_id=order.id,
        changes={
            "status": order.status,
            "payment_status": order.payment_status,
            "paid_amount_cents": order.paid_amount_cents,
            "completed": completed,
        },
    )


# =============================================================================
# PAYMENT CREATION
# =============================================================================

def create_payment(
    actor,
    order_id: int,
    amount_cents: int,
    method: str,
    *,
    provider_transaction_id: str | None = None,
    metadata: dict | None = None,
) -> Payment:
    """
    Take a payment against the order total.

    Args:
        order_id: Order being paid
        amount_cents: Amount received; may be less than the remaining balance
        method: cash, card, sumup_terminal, sumup_online

    Returns:
        The captured Payment

    Raises:
        ValidationError: order cancelled/completed/already paid, amount above
            the remaining balance, bad method
    """
    organization_id = authorize_actor(actor, TAKE_PAYMENT)
    amount_cents = _validate_amount(amount_cents)
    method = _validate_method(method)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        order = _get_order_locked(order_id, organization_id)
        recalculate_totals(order)
        refresh_payment_status(order)
        _ensure_payable(order)

        if amount_cents > order.remaining_cents:
            raise ValidationError(
                "Payment exceeds the remaining balance",
                details={"amount_cents": amount_cents, "remaining_cents": order.remaining_cents},
            )

        payment = _record_payment(order, amount_cents, method, actor, provider_transaction_id, metadata)
        completed = _settle_if_paid(order, payment)
        _after_payment(order, payment, outbox, completed)

        db.session.commit()
        logger.info(
            "Payment %s of %s cents on order %s (%s)",
            payment.id, amount_cents, order.order_number, order.payment_status,
        )
        return payment

    payment = run_with_retry(_op)
    outbox.publish()
    return payment


def create_split_payment(
    actor,
    order_id: int,
    amount_cents: int,
    method: str,
    items: list[dict],
    *,
    provider_transaction_id: str | None = None,
    metadata: dict | None = None,
) -> Payment:
    """
    Pay for specific items/quantities of an order.

    items: [{"order_item_id": 12, "quantity": 1}, ...]. The amount must equal
    SUM((unit_price + options_price) * quantity) over the allocations exactly,
    so a split can neither under- nor over-collect, and it may not exceed the
    remaining balance (money already taken by full payments counts against it).
    """
    organization_id = authorize_actor(actor, TAKE_PAYMENT)
    amount_cents = _validate_amount(amount_cents)
    method = _validate_method(method)
    outbox = Outbox(organization_id)

    def _op():
        outbox.clear()
        begin_write()
        order = _get_order_locked(order_id, organization_id)
        recalculate_totals(order)
        refresh_payment_status(order)
        _ensure_payable(order)

        allocations = _normalize_allocations(order, items)
        expected = sum(item.unit_gross_cents * quantity for item, quantity in allocations)
        if amount_cents != expected:
            raise ValidationError(
                "Payment amount does not match the selected items",
                details={"amount_cents": amount_cents, "expected_amount_cents": expected},
            )
        if amount_cents > order.remaining_cents:
            raise ValidationError(
                "Selected items exceed the remaining balance",
                details={"amount_cents": amount_cents, "remaining_cents": order.remaining_cents},
            )

        payment = _record_payment(order, amount_cents, method, actor, provider_transaction_id, metadata)
        rows: dict = {}
        for item, quantity in allocations:
            _allocate(payment, item, quantity, item.unit_gross_cents * quantity, rows)

        completed = _settle_if_paid(order, payment)
        _after_payment(order, payment, outbox, completed)

        db.session.commit()
        logger.info(
            "Split payment %s of %s cents on order %s (%s)",
            payment.id, amount_cents, order.order_number, order.payment_status,
        )
        return payment

    payment = run_with_retry(_op)
    outbox.publish()
    return payment


# =============================================================================
# READS
# =============================================================================

def _payment_query(organization_id: int):
    return (
        db.session.query(Payment)
        .join(Order, Payment.order_id == Order.id)
        .filter(Order.organization_id == organization_id, Order.deleted_at.is_(None))
    )


def _get_order(order_id: int, organization_id: int) -> Order:
    order = (
        db.session.query(Order)
        .filter(Order.id == order_id, Order.organization_id == organization_id, Order.deleted_at.is_(None))
        .first()
    )
    if order is None:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def get_payment(actor, payment_id: int) -> Payment:
    organization_id = authorize_actor(actor, VIEW_PAYMENTS)
    payment = _payment_query(organization_id).filter(Payment.id == payment_id).first()
    if payment is None:
        raise NotFoundError("Payment not found", details={"payment_id": payment_id})
    return payment


def list_order_payments(actor, order_id: int) -> list[Payment]:
    organization_id = authorize_actor(actor, VIEW_PAYMENTS)
    order = _get_order(order_id, organization_id)
    return db.session.query(Payment).filter(Payment.order_id == order.id).order_by(Payment.id).all()


def list_payments(
    actor,
    *,
    sales_context_id: int | None = None,
    method: str | None = None,
    status: str | None = None,
    start=None,
    end=None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """Payments of the actor's organization, newest first, paginated."""
    organization_id = authorize_actor(actor, VIEW_PAYMENTS)
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive", details={"page": page, "limit": limit})

    query = _payment_query(organization_id)
    if sales_context_id is not None:
        query = query.filter(Order.sales_context_id == sales_context_id)
    if method:
        query = query.filter(Payment.method == _validate_method(method))
    if status:
        query = query.filter(Payment.status == status)
    if start is not None:
        query = query.filter(Payment.created_at >= start)
    if end is not None:
        query = query.filter(Payment.created_at <= end)

    total = query.count()
    rows = (
        query.order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"data": rows, "total": total, "page": page, "limit": limit}


def get_payment_summary(actor, order_id: int) -> dict:
    """
    Payment picture of one order: amounts, per-method totals and what is still open per item.
    """
    organization_id = authorize_actor(actor, VIEW_PAYMENTS)
    order = _get_order(order_id, organization_id)

    by_method = dict(
        db.session.query(Payment.method, func.sum(Payment.amount_cents))
        .filter(Payment.order_id == order.id, Payment.status == PAYMENT_CAPTURED)
        .group_by(Payment.method)
        .all()
    )
    payments_count = (
        db.session.query(Payment.id)
        .filter(Payment.order_id == order.id, Payment.status == PAYMENT_CAPTURED)
        .count()
    )

    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "total_cents": order.total_cents,
        "paid_amount_cents": order.paid_amount_cents,
        "remaining_cents": max(order.remaining_cents, 0),
        "payment_status": order.payment_status,
        "payments_count": payments_count,
        "by_method": {method: int(amount) for method, amount in by_method.items()},
        "items": [
            {
                "order_item_id": item.id,
                "product_name": item.product_name,
                "quantity": item.quantity,
                "paid_quantity": item.paid_quantity,
                "unpaid_quantity": item.unpaid_quantity,
                "unit_gross_cents": item.unit_gross_cents,
                "unpaid_amount_cents": item.unit_gross_cents * item.unpaid_quantity,
            }
            for item in order.active_items()
        ],
    }
