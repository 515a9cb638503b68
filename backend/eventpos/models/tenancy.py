from __future__ import annotations

from ..extensions import db
from eventpos.time_utils import to_utc_z


SALES_CONTEXT_DRAFT = "draft"
SALES_CONTEXT_ACTIVE = "active"
SALES_CONTEXT_COMPLETED = "completed"
SALES_CONTEXT_CANCELLED = "cancelled"


class Organization(db.Model):
    """
    Tenant root. Every order, sequence and sales context hangs off one organization.

    Membership and roles are owned by the identity service; this row only carries
    what the order core needs (timezone for business-day numbering).
    """
    __tablename__ = "organizations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)

    # IANA timezone used to decide which calendar day an order belongs to
    timezone = db.Column(db.String(64), nullable=False, default="UTC")

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Organization id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "timezone": self.timezone,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class SalesContext(db.Model):
    """
    Event / session scope that orders, products and stock movements belong to.

    STATUS: draft -> active -> completed | cancelled
    Orders may only be created against an active context.
    """
    __tablename__ = "sales_contexts"
    __table_args__ = (
        db.Index("ix_sales_contexts_org_status", "organization_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=SALES_CONTEXT_DRAFT)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("sales_contexts", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "status": self.status,
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "created_at": to_utc_z(self.created_at),
        }
