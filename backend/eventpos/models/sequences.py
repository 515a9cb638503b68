from __future__ import annotations

from ..extensions import db
from eventpos.time_utils import to_utc_z


SEQUENCE_ORDER_NUMBER = "order_number"
SEQUENCE_DAILY_NUMBER = "daily_number"


class OrderSequence(db.Model):
    """
    Atomic per-scope, per-day counters.

    WHY: Order numbers are allocated by incrementing this row in place, so two
    concurrent order creations can never read the same value.

    scope_key is "org:<id>" for order numbers and "org:<id>:ctx:<id>" for daily
    numbers; the day is part of the key, so counters reset implicitly.
    """
    __tablename__ = "order_sequences"
    __table_args__ = (
        db.UniqueConstraint("scope_key", "sequence_type", "business_date", name="uq_order_sequences_scope_type_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    scope_key = db.Column(db.String(64), nullable=False)
    sequence_type = db.Column(db.String(32), nullable=False)
    business_date = db.Column(db.Date, nullable=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "scope_key": self.scope_key,
            "sequence_type": self.sequence_type,
            "business_date": self.business_date.isoformat(),
            "last_value": self.last_value,
            "updated_at": to_utc_z(self.updated_at),
        }
