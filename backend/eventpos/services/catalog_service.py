# Overview: Read-only product catalog boundary; returns priced snapshots for order lines.

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app

from ..extensions import db
from ..models import Product
from .errors import NotFoundError, ValidationError


@dataclass(frozen=True)
class ProductSnapshot:
    product_id: int
    sales_context_id: int
    name: str
    category_id: int | None
    category_name: str
    price_cents: int
    tax_rate_bps: int
    is_active: bool
    is_available: bool
    tracks_inventory: bool
    current_stock: int
    option_groups: list = field(default_factory=list)

    @property
    def is_orderable(self) -> bool:
        return self.is_active and self.is_available


def get_product(product_id: int, sales_context_id: int) -> ProductSnapshot:
    """Look a product up inside its sales context; NotFoundError if it lives elsewhere."""
    product = (
        db.session.query(Product)
        .filter_by(id=product_id, sales_context_id=sales_context_id)
        .first()
    )
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})

    tax_rate_bps = product.tax_rate_bps
    if tax_rate_bps is None:
        tax_rate_bps = current_app.config.get("DEFAULT_TAX_RATE_BPS", 1900)

    return ProductSnapshot(
        product_id=product.id,
        sales_context_id=product.sales_context_id,
        name=product.name,
        category_id=product.category_id,
        category_name=product.category.name if product.category else "",
        price_cents=product.price_cents,
        tax_rate_bps=tax_rate_bps,
        is_active=product.is_active,
        is_available=product.is_available,
        tracks_inventory=product.track_inventory,
        current_stock=product.stock_quantity,
        option_groups=list(product.option_groups or []),
    )


def price_selected_options(snapshot: ProductSnapshot, selected: list[dict] | None) -> tuple[int, list[dict]]:
    """
    Resolve selected modifiers against the product's option groups.

    Returns (options_price_cents, priced_selection). Prices always come from the
    catalog, never from the caller; an unknown group/option is rejected.
    """
    priced = []
    total = 0
    groups = {g.get("name"): g for g in snapshot.option_groups}

    if selected is not None and not isinstance(selected, list):
        raise ValidationError(
            "selected_options must be a list",
            details={"product_id": snapshot.product_id},
        )

    for choice in selected or []:
        if not isinstance(choice, dict):
            raise ValidationError(
                "Each selected option needs a group and an option",
                details={"product_id": snapshot.product_id, "option": choice},
            )
        group_name = choice.get("group")
        option_name = choice.get("option")
        group = groups.get(group_name)
        option = None
        if group is not None:
            option = next(
                (o for o in group.get("options") or [] if o.get("name") == option_name),
                None,
            )
        if option is None:
            raise ValidationError(
                f"Unknown option {group_name}/{option_name} for {snapshot.name}",
                details={"product_id": snapshot.product_id, "group": group_name, "option": option_name},
            )

        modifier = int(option.get("price_modifier_cents") or 0)
        total += modifier
        priced.append({"group": group_name, "option": option_name, "price_modifier_cents": modifier})

    return total, priced
