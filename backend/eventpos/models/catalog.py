from __future__ import annotations

from ..extensions import db
from eventpos.time_utils import to_utc_z


class Category(db.Model):
    __tablename__ = "categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sales_context_id = db.Column(db.Integer, db.ForeignKey("sales_contexts.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sales_context_id": self.sales_context_id,
            "name": self.name,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
        }


class Product(db.Model):
    """
    Product master data, scoped to one sales context.

    STOCK: stock_quantity is a cached projection of the product's StockMovement
    rows. It is only ever written through the stock ledger's conditional updates,
    never read-modify-written by application code.

    OPTION GROUPS (JSON):
        [{"name": "Size", "options": [{"name": "Large", "price_modifier_cents": 50}]}]
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_context_active", "sales_context_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sales_context_id = db.Column(db.Integer, db.ForeignKey("sales_contexts.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in cents (frontend may only format for display)
    price_cents = db.Column(db.Integer, nullable=False)

    # Null means "use DEFAULT_TAX_RATE_BPS"
    tax_rate_bps = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_available = db.Column(db.Boolean, nullable=False, default=True)

    track_inventory = db.Column(db.Boolean, nullable=False, default=False)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)

    option_groups = db.Column(db.JSON, nullable=False, default=list)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    category = db.relationship("Category", backref=db.backref("products", lazy=True))

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} sales_context_id={self.sales_context_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sales_context_id": self.sales_context_id,
            "category_id": self.category_id,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "is_active": self.is_active,
            "is_available": self.is_available,
            "track_inventory": self.track_inventory,
            "stock_quantity": self.stock_quantity,
            "option_groups": self.option_groups or [],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
