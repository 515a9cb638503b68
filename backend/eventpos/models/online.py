from __future__ import annotations

from ..extensions import db
from eventpos.time_utils import to_utc_z, utcnow


SESSION_ACTIVE = "active"
SESSION_ORDERING = "ordering"
SESSION_COMPLETED = "completed"
SESSION_EXPIRED = "expired"


class OnlineOrderSession(db.Model):
    """
    Guest ordering session started from a table QR code or the online shop.

    The cart is a plain JSON document: {"items": [...], "updated_at": "..."}.
    Nothing in the cart is priced or reserved; the order gateway does both
    when the session is submitted.
    """
    __tablename__ = "online_order_sessions"
    __table_args__ = (
        db.Index("ix_online_sessions_org_status", "organization_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    sales_context_id = db.Column(db.Integer, db.ForeignKey("sales_contexts.id"), nullable=False, index=True)

    session_token = db.Column(db.String(255), nullable=False, unique=True)
    qr_code = db.Column(db.String(64), nullable=True)
    table_number = db.Column(db.String(20), nullable=True)
    customer_name = db.Column(db.String(100), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=SESSION_ACTIVE)
    cart = db.Column(db.JSON, nullable=False, default=lambda: {"items": [], "updated_at": None})

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    orders = db.relationship("Order", backref=db.backref("online_session", lazy=True), lazy=True)
    __mapper_args__ = {"version_id_col": version_id}

    def is_expired(self) -> bool:
        return self.expires_at < utcnow()

    def cart_items(self) -> list[dict]:
        return list((self.cart or {}).get("items") or [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "sales_context_id": self.sales_context_id,
            "session_token": self.session_token,
            "qr_code": self.qr_code,
            "table_number": self.table_number,
            "customer_name": self.customer_name,
            "status": self.status,
            "cart": self.cart or {"items": [], "updated_at": None},
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
        }
