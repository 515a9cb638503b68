# Overview: Order ingestion gateway; the one place orders are created, for counter and online producers.

"""
Order Ingestion Gateway

WHY: Counter devices and online sessions both create orders. Pricing,
numbering and stock reservation must exist exactly once, so both producers
hand an OrderSubmission to ingest_order().

All-or-nothing per order:
1. resolve the sales context (exists, same organization, active)
2. allocate order number + daily number
3. create the order shell (open, unpaid)
4. add every line through the order aggregate (pricing + reservation)
5. recompute totals once

Everything happens in one transaction. If any line fails, the rollback undoes
the reservations already made for earlier lines, their stock movements and the
allocated numbers together; nothing partial is ever committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..extensions import db
from ..models import Order, Organization
from ..models.orders import (
    ORDER_SOURCE_COUNTER,
    ORDER_STATUS_OPEN,
    PAYMENT_STATUS_UNPAID,
    PRIORITY_NORMAL,
    VALID_ORDER_SOURCES,
    VALID_PRIORITIES,
)
from ..permissions import CREATE_ORDER
from ..signals import TRIGGER_ORDER_CREATED
from . import sequence_service
from .capability_service import authorize
from .concurrency import begin_write, run_with_retry
from .errors import ForbiddenError, NotFoundError, OrderCoreError, ValidationError
from .notification_service import Outbox
from .order_service import add_line, recalculate_totals, refresh_payment_status
from .sales_context_service import require_active_sales_context


logger = logging.getLogger(__name__)


@dataclass
class OrderLine:
    product_id: int
    quantity: int
    selected_options: list[dict] = field(default_factory=list)
    notes: str | None = None
    kitchen_notes: str | None = None


@dataclass
class OrderSubmission:
    """Everything a producer knows about a new order; prices are never part of it."""

    organization_id: int
    sales_context_id: int
    lines: list[OrderLine]
    source: str = ORDER_SOURCE_COUNTER
    priority: str = PRIORITY_NORMAL
    table_number: str | None = None
    customer_name: str | None = None
    notes: str | None = None
    user_id: int | None = None
    device_id: int | None = None
    online_session_id: int | None = None


def _parse_lines(raw_lines) -> list[OrderLine]:
    if not isinstance(raw_lines, list) or not raw_lines:
        raise ValidationError("Order needs at least one item")

    lines = []
    for index, raw in enumerate(raw_lines):
        if not isinstance(raw, dict) or raw.get("product_id") is None:
            raise ValidationError("Each item needs a product_id", details={"line": index})
        lines.append(
            OrderLine(
                product_id=raw["product_id"],
                quantity=raw.get("quantity", 1),
                selected_options=raw.get("selected_options") or [],
                notes=raw.get("notes"),
                kitchen_notes=raw.get("kitchen_notes"),
            )
        )
    return lines


def _ingest_locked(submission: OrderSubmission, outbox: Outbox) -> Order:
    """
    Create the order inside the caller's open transaction. Never commits.
    """
    if not submission.lines:
        raise ValidationError("Order needs at least one item")
    if submission.source not in VALID_ORDER_SOURCES:
        raise ValidationError(
            f"Invalid order source: {submission.source}",
            details={"allowed": list(VALID_ORDER_SOURCES)},
        )
    if submission.priority not in VALID_PRIORITIES:
        raise ValidationError(
            f"Invalid priority: {submission.priority}",
            details={"allowed": list(VALID_PRIORITIES)},
        )

    # 1. Sales context
    context = require_active_sales_context(submission.sales_context_id, submission.organization_id)
    organization = db.session.get(Organization, submission.organization_id)
    if organization is None:
        raise NotFoundError("Organization not found", details={"organization_id": submission.organization_id})

    # 2. Numbers
    business_date = sequence_service.business_date_for(organization)
    order_number = sequence_service.next_order_number(organization.id, business_date)
    daily_number = sequence_service.next_daily_number(organization.id, context.id, business_date)

    # 3. Shell
    order = Order(
        organization_id=organization.id,
        sales_context_id=context.id,
        online_session_id=submission.online_session_id,
        order_number=order_number,
        daily_number=daily_number,
        business_date=business_date,
        status=ORDER_STATUS_OPEN,
        payment_status=PAYMENT_STATUS_UNPAID,
        source=submission.source,
        priority=submission.priority,
        table_number=submission.table_number,
        customer_name=submission.customer_name,
        notes=submission.notes,
        created_by_user_id=submission.user_id,
        created_by_device_id=submission.device_id,
    )
    db.session.add(order)
    db.session.flush()

    # 4. Lines
    for index, line in enumerate(submission.lines):
        try:
            add_line(
                order,
                line.product_id,
                line.quantity,
                outbox=outbox,
                selected_options=line.selected_options,
                notes=line.notes,
                kitchen_notes=line.kitchen_notes,
                user_id=submission.user_id,
            )
        except OrderCoreError as exc:
            exc.details.setdefault("line", index)
            raise

    # 5. Totals, once
    recalculate_totals(order)
    refresh_payment_status(order)
    db.session.flush()

    outbox.add("order.created", order=order.to_dict())
    outbox.trigger(
        TRIGGER_ORDER_CREATED,
        {
            "order_id": order.id,
            "order_number": order.order_number,
            "daily_number": order.daily_number,
            "source": order.source,
            "total_cents": order.total_cents,
        },
    )
    return order


def ingest_order(actor, submission: OrderSubmission) -> Order:
    """
    Create an order from a submission, all-or-nothing.

    Raises:
        ForbiddenError: capability gate rejected the actor
        NotFoundError: sales context or product missing
        ValidationError: inactive context, unavailable product, unknown option,
            insufficient stock (details carry the failing line index)
        ConflictError: lost a race too many times
    """
    authorize(actor, submission.organization_id, CREATE_ORDER)
    outbox = Outbox(submission.organization_id)

    def _op():
        outbox.clear()
        begin_write()
        order = _ingest_locked(submission, outbox)
        db.session.commit()
        logger.info(
            "Order %s created (%s, %d items, %s cents)",
            order.order_number, order.source, len(order.items), order.total_cents,
        )
        return order

    order = run_with_retry(_op)
    outbox.publish()
    return order


def submit_counter_order(actor, payload: dict) -> Order:
    """
    Counter/device producer: build a submission from a request payload.

    payload: {"sales_context_id", "items": [{"product_id", "quantity",
    "selected_options", "notes", "kitchen_notes"}], "table_number",
    "customer_name", "notes", "priority"}
    """
    if actor is None:
        raise ForbiddenError("Authentication required", details={"capability": CREATE_ORDER})
    if payload.get("sales_context_id") is None:
        raise ValidationError("sales_context_id is required")

    submission = OrderSubmission(
        organization_id=actor.organization_id,
        sales_context_id=payload["sales_context_id"],
        lines=_parse_lines(payload.get("items")),
        source=ORDER_SOURCE_COUNTER,
        priority=payload.get("priority") or PRIORITY_NORMAL,
        table_number=payload.get("table_number"),
        customer_name=payload.get("customer_name"),
        notes=payload.get("notes"),
        user_id=actor.user_id,
        device_id=actor.device_id,
    )
    return ingest_order(actor, submission)
