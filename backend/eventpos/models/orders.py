from __future__ import annotations

from ..extensions import db
from eventpos.time_utils import to_utc_z


# =============================================================================
# ORDER STATUS (CONSTANTS)
# =============================================================================

ORDER_STATUS_OPEN = "open"
ORDER_STATUS_IN_PROGRESS = "in_progress"
ORDER_STATUS_READY = "ready"
ORDER_STATUS_COMPLETED = "completed"
ORDER_STATUS_CANCELLED = "cancelled"

TERMINAL_ORDER_STATUSES = (ORDER_STATUS_COMPLETED, ORDER_STATUS_CANCELLED)

PAYMENT_STATUS_UNPAID = "unpaid"
PAYMENT_STATUS_PARTLY_PAID = "partly_paid"
PAYMENT_STATUS_PAID = "paid"

ORDER_SOURCE_COUNTER = "counter"
ORDER_SOURCE_ONLINE = "online"
ORDER_SOURCE_QR_ORDER = "qr_order"

VALID_ORDER_SOURCES = (ORDER_SOURCE_COUNTER, ORDER_SOURCE_ONLINE, ORDER_SOURCE_QR_ORDER)

PRIORITY_NORMAL = "normal"
PRIORITY_HIGH = "high"
PRIORITY_RUSH = "rush"

VALID_PRIORITIES = (PRIORITY_NORMAL, PRIORITY_HIGH, PRIORITY_RUSH)


# =============================================================================
# ORDER ITEM STATUS (CONSTANTS)
# =============================================================================

ITEM_STATUS_PENDING = "pending"
ITEM_STATUS_PREPARING = "preparing"
ITEM_STATUS_READY = "ready"
ITEM_STATUS_DELIVERED = "delivered"
ITEM_STATUS_CANCELLED = "cancelled"

# Kitchen flow, in order. Items only ever move forward along this list.
ITEM_STATUS_FLOW = (
    ITEM_STATUS_PENDING,
    ITEM_STATUS_PREPARING,
    ITEM_STATUS_READY,
    ITEM_STATUS_DELIVERED,
)


class Order(db.Model):
    """
    Customer order (organization-scoped).

    Totals, paid amount and payment status are derived fields. They are
    recomputed from the items and captured payments on every mutation and are
    never patched incrementally.

    CONCURRENCY: version_id is the optimistic lock. Every mutating service
    re-reads the row FOR UPDATE inside its own transaction; a racing writer
    that loses gets StaleDataError and is retried or surfaced as a conflict.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "order_number", name="uq_orders_org_order_number"),
        db.Index("ix_orders_org_created", "organization_id", "created_at"),
        db.Index("ix_orders_context_daily", "sales_context_id", "business_date", "daily_number"),
        db.Index("ix_orders_status_payment", "status", "payment_status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    sales_context_id = db.Column(db.Integer, db.ForeignKey("sales_contexts.id"), nullable=False, index=True)
    online_session_id = db.Column(db.Integer, db.ForeignKey("online_order_sessions.id"), nullable=True, index=True)

    # Human-facing identifiers ("20261019-0007", daily #7)
    order_number = db.Column(db.String(32), nullable=False)
    daily_number = db.Column(db.Integer, nullable=False)
    business_date = db.Column(db.Date, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_OPEN, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_UNPAID, index=True)
    source = db.Column(db.String(16), nullable=False, default=ORDER_SOURCE_COUNTER)
    priority = db.Column(db.String(16), nullable=False, default=PRIORITY_NORMAL)

    # Money (all amounts in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_total_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    tip_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_reason = db.Column(db.String(255), nullable=True)

    table_number = db.Column(db.String(20), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Lifecycle timestamps
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    ready_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Originating actor: a user, a registered device, or neither (online session)
    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_by_device_id = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.sort_order",
        cascade="all, delete-orphan",
        lazy=True,
    )
    sales_context = db.relationship("SalesContext")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def remaining_cents(self) -> int:
        return self.total_cents - self.paid_amount_cents

    def active_items(self) -> list["OrderItem"]:
        return [item for item in self.items if item.status != ITEM_STATUS_CANCELLED]

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "organization_id": self.organization_id,
            "sales_context_id": self.sales_context_id,
            "online_session_id": self.online_session_id,
            "order_number": self.order_number,
            "daily_number": self.daily_number,
            "business_date": self.business_date.isoformat() if self.business_date else None,
            "status": self.status,
            "payment_status": self.payment_status,
            "source": self.source,
            "priority": self.priority,
            "subtotal_cents": self.subtotal_cents,
            "tax_total_cents": self.tax_total_cents,
            "total_cents": self.total_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "remaining_cents": self.remaining_cents,
            "tip_cents": self.tip_cents,
            "discount_cents": self.discount_cents,
            "discount_reason": self.discount_reason,
            "table_number": self.table_number,
            "customer_name": self.customer_name,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "ready_at": to_utc_z(self.ready_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "created_by_user_id": self.created_by_user_id,
            "created_by_device_id": self.created_by_device_id,
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """
    One priced line of an order.

    SNAPSHOT: product_name, category_name, unit_price_cents, options_price_cents
    and tax_rate_bps are copied from the catalog when the line is created.
    Later catalog edits never reach historical orders.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.Index("ix_order_items_order_status", "order_id", "status"),
        db.CheckConstraint("paid_quantity <= quantity", name="ck_order_items_paid_le_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    category_id = db.Column(db.Integer, nullable=True)

    product_name = db.Column(db.String(255), nullable=False)
    category_name = db.Column(db.String(255), nullable=False, default="")

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    options_price_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False)
    total_price_cents = db.Column(db.Integer, nullable=False)

    # Selected modifiers as priced at creation: [{"group", "option", "price_modifier_cents"}]
    options = db.Column(db.JSON, nullable=False, default=list)

    status = db.Column(db.String(16), nullable=False, default=ITEM_STATUS_PENDING)
    paid_quantity = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)
    kitchen_notes = db.Column(db.Text, nullable=True)

    prepared_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ready_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", back_populates="items")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def unit_gross_cents(self) -> int:
        return self.unit_price_cents + self.options_price_cents

    @property
    def unpaid_quantity(self) -> int:
        return self.quantity - self.paid_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "category_id": self.category_id,
            "product_name": self.product_name,
            "category_name": self.category_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "options_price_cents": self.options_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "total_price_cents": self.total_price_cents,
            "options": self.options or [],
            "status": self.status,
            "paid_quantity": self.paid_quantity,
            "notes": self.notes,
            "kitchen_notes": self.kitchen_notes,
            "prepared_at": to_utc_z(self.prepared_at),
            "ready_at": to_utc_z(self.ready_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "sort_order": self.sort_order,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
