from __future__ import annotations

from ..extensions import db
from eventpos.time_utils import to_utc_z


# =============================================================================
# PAYMENT METHODS / PROVIDERS (CONSTANTS)
# =============================================================================

METHOD_CASH = "cash"
METHOD_CARD = "card"
METHOD_SUMUP_TERMINAL = "sumup_terminal"
METHOD_SUMUP_ONLINE = "sumup_online"

VALID_PAYMENT_METHODS = (METHOD_CASH, METHOD_CARD, METHOD_SUMUP_TERMINAL, METHOD_SUMUP_ONLINE)

PROVIDER_CASH = "CASH"
PROVIDER_CARD = "CARD"
PROVIDER_SUMUP = "SUMUP"

PROVIDER_BY_METHOD = {
    METHOD_CASH: PROVIDER_CASH,
    METHOD_CARD: PROVIDER_CARD,
    METHOD_SUMUP_TERMINAL: PROVIDER_SUMUP,
    METHOD_SUMUP_ONLINE: PROVIDER_SUMUP,
}

# =============================================================================
# PAYMENT TRANSACTION STATUS (CONSTANTS)
# =============================================================================

PAYMENT_PENDING = "pending"
PAYMENT_AUTHORIZED = "authorized"
PAYMENT_CAPTURED = "captured"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"


class Payment(db.Model):
    """
    Money received against one order.

    IMMUTABLE once captured: a correction is a new compensating payment with a
    negative amount (and matching OrderItemPayment rows), never an update.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(32), nullable=False, index=True)
    provider = db.Column(db.String(32), nullable=False)
    provider_transaction_id = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING, index=True)

    # "metadata" is reserved on declarative classes
    payment_metadata = db.Column("metadata", db.JSON, nullable=False, default=dict)

    processed_by_user_id = db.Column(db.Integer, nullable=True)
    processed_by_device_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    order = db.relationship("Order", backref=db.backref("payments", lazy=True, order_by="Payment.id"))
    item_payments = db.relationship("OrderItemPayment", back_populates="payment", lazy=True)

    def to_dict(self, include_allocations: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_id": self.order_id,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "provider": self.provider,
            "provider_transaction_id": self.provider_transaction_id,
            "status": self.status,
            "metadata": self.payment_metadata or {},
            "processed_by_user_id": self.processed_by_user_id,
            "processed_by_device_id": self.processed_by_device_id,
            "created_at": to_utc_z(self.created_at),
        }
        if include_allocations:
            data["allocations"] = [ip.to_dict() for ip in self.item_payments]
        return data


class OrderItemPayment(db.Model):
    """
    Allocation of part of a payment to an order item.

    INVARIANT: for every item, SUM(quantity) over its rows == item.paid_quantity.
    """
    __tablename__ = "order_item_payments"
    __table_args__ = (
        db.UniqueConstraint("payment_id", "order_item_id", name="uq_order_item_payments_payment_item"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    payment = db.relationship("Payment", back_populates="item_payments")
    order_item = db.relationship("OrderItem", backref=db.backref("item_payments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "order_item_id": self.order_item_id,
            "quantity": self.quantity,
            "amount_cents": self.amount_cents,
            "created_at": to_utc_z(self.created_at),
        }
