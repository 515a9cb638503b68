from __future__ import annotations

from ..extensions import db
from eventpos.time_utils import to_utc_z


MOVEMENT_INITIAL = "initial"
MOVEMENT_SALE = "sale"
MOVEMENT_SALE_CANCELLED = "sale_cancelled"
MOVEMENT_ADJUSTMENT_PLUS = "adjustment_plus"
MOVEMENT_ADJUSTMENT_MINUS = "adjustment_minus"
MOVEMENT_INVENTORY_COUNT = "inventory_count"
MOVEMENT_WASTE = "waste"
MOVEMENT_TRANSFER_IN = "transfer_in"
MOVEMENT_TRANSFER_OUT = "transfer_out"

VALID_MOVEMENT_TYPES = (
    MOVEMENT_INITIAL,
    MOVEMENT_SALE,
    MOVEMENT_SALE_CANCELLED,
    MOVEMENT_ADJUSTMENT_PLUS,
    MOVEMENT_ADJUSTMENT_MINUS,
    MOVEMENT_INVENTORY_COUNT,
    MOVEMENT_WASTE,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
)


class StockMovement(db.Model):
    """
    Append-only stock journal.

    IMMUTABLE: rows are never updated or deleted; corrections are new rows.
    Product.stock_quantity == SUM(quantity) over a product's movements.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        db.Index("ix_stock_movements_context_created", "sales_context_id", "created_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    sales_context_id = db.Column(db.Integer, db.ForeignKey("sales_contexts.id"), nullable=False)

    movement_type = db.Column(db.String(32), nullable=False, index=True)

    # Signed delta applied to the cached quantity
    quantity = db.Column(db.Integer, nullable=False)
    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    reference_type = db.Column(db.String(50), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("stock_movements", lazy=True))

    def crossed_low_stock(self, threshold: int) -> bool:
        """True when this movement took the product from above threshold to at or below it."""
        return self.quantity_before > threshold >= self.quantity_after

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "sales_context_id": self.sales_context_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "reason": self.reason,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


COUNT_DRAFT = "draft"
COUNT_IN_PROGRESS = "in_progress"
COUNT_COMPLETED = "completed"
COUNT_CANCELLED = "cancelled"

VALID_COUNT_STATUSES = (COUNT_DRAFT, COUNT_IN_PROGRESS, COUNT_COMPLETED, COUNT_CANCELLED)


class InventoryCount(db.Model):
    """
    Physical stock count of one sales context.

    LIFECYCLE:
    1. draft: products are added, expected quantities snapshotted
    2. in_progress: counted quantities are entered
    3. completed: every non-zero difference booked as an inventory_count movement
    4. cancelled: abandoned before completion

    At most one count per sales context is in_progress.
    """
    __tablename__ = "inventory_counts"
    __table_args__ = (
        db.Index("ix_inventory_counts_context_status", "sales_context_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sales_context_id = db.Column(db.Integer, db.ForeignKey("sales_contexts.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=COUNT_DRAFT)
    notes = db.Column(db.Text, nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by_user_id = db.Column(db.Integer, nullable=True)
    completed_by_user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    items = db.relationship(
        "InventoryCountItem",
        backref="inventory_count",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="InventoryCountItem.id",
    )

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "sales_context_id": self.sales_context_id,
            "name": self.name,
            "status": self.status,
            "notes": self.notes,
            "started_at": to_utc_z(self.started_at) if self.started_at else None,
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "created_by_user_id": self.created_by_user_id,
            "completed_by_user_id": self.completed_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class InventoryCountItem(db.Model):
    """
    One product on a count.

    expected_quantity is the stock at the moment the product was added;
    difference = counted_quantity - expected_quantity once counted.
    """
    __tablename__ = "inventory_count_items"
    __table_args__ = (
        db.UniqueConstraint("inventory_count_id", "product_id", name="uq_inventory_count_items_count_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    inventory_count_id = db.Column(db.Integer, db.ForeignKey("inventory_counts.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    expected_quantity = db.Column(db.Integer, nullable=False)
    counted_quantity = db.Column(db.Integer, nullable=True)
    difference = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    counted_by_user_id = db.Column(db.Integer, nullable=True)
    counted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "inventory_count_id": self.inventory_count_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "expected_quantity": self.expected_quantity,
            "counted_quantity": self.counted_quantity,
            "difference": self.difference,
            "notes": self.notes,
            "counted_by_user_id": self.counted_by_user_id,
            "counted_at": to_utc_z(self.counted_at) if self.counted_at else None,
        }
