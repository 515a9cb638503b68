# Overview: Stock ledger; atomic stock changes with one journal row per change.

"""
Stock Ledger Invariants (authoritative)

- StockMovement is append-only; corrections are new rows.
- Every mutating call appends exactly one movement and moves
  Product.stock_quantity by the same delta in the same transaction.
- Product.stock_quantity == SUM(StockMovement.quantity) for tracked products.
  The cached column is a projection, never the source of truth.
- Decrements are a single conditional UPDATE ("... WHERE stock_quantity >= :q").
  There is no read-then-write path that could oversell.
- Products with track_inventory = False bypass the ledger entirely:
  reserve/release succeed without writing anything.
- Nothing here commits. Callers own the transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, update

from ..extensions import db
from ..models import Product, StockMovement
from ..models.inventory import (
    MOVEMENT_ADJUSTMENT_MINUS,
    MOVEMENT_ADJUSTMENT_PLUS,
    MOVEMENT_INITIAL,
    MOVEMENT_INVENTORY_COUNT,
    MOVEMENT_SALE,
    MOVEMENT_SALE_CANCELLED,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
    MOVEMENT_WASTE,
)
from .errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from .concurrency import lock_for_update


logger = logging.getLogger(__name__)

# Types a manual adjustment may be booked as; sale types belong to orders only
ADJUSTMENT_TYPES = {
    MOVEMENT_INITIAL,
    MOVEMENT_ADJUSTMENT_PLUS,
    MOVEMENT_ADJUSTMENT_MINUS,
    MOVEMENT_WASTE,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
}

_CAS_ATTEMPTS = 5


def _get_product(product_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return product


def _current_quantity(product_id: int) -> int:
    return db.session.execute(
        db.select(Product.stock_quantity).where(Product.id == product_id)
    ).scalar_one()


def _append_movement(
    product: Product,
    *,
    movement_type: str,
    quantity: int,
    quantity_before: int,
    quantity_after: int,
    sales_context_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    reason: str | None = None,
    notes: str | None = None,
    user_id: int | None = None,
) -> StockMovement:
    movement = StockMovement(
        product_id=product.id,
        sales_context_id=sales_context_id or product.sales_context_id,
        movement_type=movement_type,
        quantity=quantity,
        quantity_before=quantity_before,
        quantity_after=quantity_after,
        reference_type=reference_type,
        reference_id=reference_id,
        reason=reason,
        notes=notes,
        created_by_user_id=user_id,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def _execute_stock_update(product: Product, stmt):
    """Run a stock UPDATE and drop the in-memory copy of the cached quantity."""
    result = db.session.execute(stmt, execution_options={"synchronize_session": False})
    db.session.expire(product, ["stock_quantity"])
    return result


def _conditional_decrement(product: Product, quantity: int) -> tuple[int, int]:
    """
    Take quantity off the cached stock in one statement, or not at all.

    Returns (before, after). The row stays write-locked by this transaction
    after the UPDATE, so reading it back is consistent.
    """
    result = _execute_stock_update(
        product,
        update(Product)
        .where(Product.id == product.id, Product.stock_quantity >= quantity)
        .values(stock_quantity=Product.stock_quantity - quantity),
    )
    if result.rowcount != 1:
        raise InsufficientStockError(
            product.id,
            requested=quantity,
            available=_current_quantity(product.id),
            product_name=product.name,
        )
    after = _current_quantity(product.id)
    return after + quantity, after


def _increment(product: Product, quantity: int) -> tuple[int, int]:
    _execute_stock_update(
        product,
        update(Product)
        .where(Product.id == product.id)
        .values(stock_quantity=Product.stock_quantity + quantity),
    )
    after = _current_quantity(product.id)
    return after - quantity, after


def _compare_and_swap(product: Product, compute_after) -> tuple[int, int]:
    """
    Move stock from an observed value to compute_after(observed).

    The UPDATE only applies if nobody changed the row since it was read; a
    lost race re-reads and tries again.
    """
    for _ in range(_CAS_ATTEMPTS):
        before = _current_quantity(product.id)
        after = compute_after(before)
        result = _execute_stock_update(
            product,
            update(Product)
            .where(Product.id == product.id, Product.stock_quantity == before)
            .values(stock_quantity=after),
        )
        if result.rowcount == 1:
            return before, after
    raise ConflictError("Stock changed concurrently, please retry", details={"product_id": product.id})


# =============================================================================
# ORDER-FACING OPERATIONS
# =============================================================================

def reserve(
    product_id: int,
    quantity: int,
    *,
    sales_context_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    reason: str | None = None,
    user_id: int | None = None,
) -> StockMovement | None:
    """
    Reserve stock for a sale.

    Returns the movement, or None for untracked products.

    Raises:
        InsufficientStockError: fewer than quantity units are on hand
    """
    if quantity <= 0:
        raise ValidationError("Quantity must be positive", details={"quantity": quantity})

    product = _get_product(product_id)
    if not product.track_inventory:
        return None

    before, after = _conditional_decrement(product, quantity)
    return _append_movement(
        product,
        movement_type=MOVEMENT_SALE,
        quantity=-quantity,
        quantity_before=before,
        quantity_after=after,
        sales_context_id=sales_context_id,
        reference_type=reference_type,
        reference_id=reference_id,
        reason=reason,
        user_id=user_id,
    )


def release(
    product_id: int,
    quantity: int,
    *,
    sales_context_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    reason: str | None = None,
    user_id: int | None = None,
) -> StockMovement | None:
    """
    Return previously reserved stock (cancellation, removal, quantity decrease).

    Always succeeds. If the cached quantity is already negative, which can only
    come from an earlier inconsistency, the result is clamped at zero, the
    delta actually applied is journaled, and a warning is logged.
    """
    if quantity <= 0:
        raise ValidationError("Quantity must be positive", details={"quantity": quantity})

    product = _get_product(product_id)
    if not product.track_inventory:
        return None

    before, after = _compare_and_swap(product, lambda observed: max(observed + quantity, 0))
    if after != before + quantity:
        logger.warning(
            "Stock release for product %s clamped: before=%s requested=+%s after=%s",
            product.id, before, quantity, after,
        )

    return _append_movement(
        product,
        movement_type=MOVEMENT_SALE_CANCELLED,
        quantity=after - before,
        quantity_before=before,
        quantity_after=after,
        sales_context_id=sales_context_id,
        reference_type=reference_type,
        reference_id=reference_id,
        reason=reason,
        user_id=user_id,
    )


# =============================================================================
# MANUAL CORRECTIONS
# =============================================================================

def adjust(
    product_id: int,
    delta: int,
    *,
    reason: str,
    user_id: int | None = None,
    movement_type: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    notes: str | None = None,
) -> StockMovement:
    """
    Book a manual stock correction (delivery, breakage, transfer, opening stock).

    Negative deltas use the same conditional decrement as reserve() and fail
    instead of driving stock below zero.
    """
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        raise ValidationError("delta must be a non-zero integer", details={"delta": delta})
    if not reason:
        raise ValidationError("reason is required")

    if movement_type is None:
        movement_type = MOVEMENT_ADJUSTMENT_PLUS if delta > 0 else MOVEMENT_ADJUSTMENT_MINUS
    if movement_type not in ADJUSTMENT_TYPES:
        raise ValidationError(
            f"Invalid movement type for adjustment: {movement_type}",
            details={"allowed": sorted(ADJUSTMENT_TYPES)},
        )

    product = _get_product(product_id)
    if not product.track_inventory:
        raise ValidationError("Product does not track inventory", details={"product_id": product_id})

    if delta > 0:
        before, after = _increment(product, delta)
    else:
        before, after = _conditional_decrement(product, -delta)

    return _append_movement(
        product,
        movement_type=movement_type,
        quantity=delta,
        quantity_before=before,
        quantity_after=after,
        reference_type=reference_type,
        reference_id=reference_id,
        reason=reason,
        notes=notes,
        user_id=user_id,
    )


def record_count(
    product_id: int,
    counted_quantity: int,
    *,
    user_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    reason: str = "Inventory count",
) -> StockMovement | None:
    """
    Set stock to a physically counted quantity.

    Books the difference as an inventory_count movement; returns None when the
    count matches the cached quantity.
    """
    if counted_quantity < 0:
        raise ValidationError("Counted quantity cannot be negative", details={"counted_quantity": counted_quantity})

    product = _get_product(product_id)
    if not product.track_inventory:
        raise ValidationError("Product does not track inventory", details={"product_id": product_id})

    before, after = _compare_and_swap(product, lambda observed: counted_quantity)
    if before == after:
        return None

    return _append_movement(
        product,
        movement_type=MOVEMENT_INVENTORY_COUNT,
        quantity=after - before,
        quantity_before=before,
        quantity_after=after,
        reference_type=reference_type,
        reference_id=reference_id,
        reason=reason,
        user_id=user_id,
    )


def book_count_difference(
    product_id: int,
    difference: int,
    *,
    user_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    reason: str = "Inventory count",
) -> StockMovement | None:
    """
    Apply a counted difference (counted - expected) on top of the current stock.

    Sales booked between the snapshot and completion stay on the books. A
    shortfall larger than what is left on hand is clamped at zero and logged,
    like release().
    """
    if difference == 0:
        return None

    product = _get_product(product_id)
    if not product.track_inventory:
        raise ValidationError("Product does not track inventory", details={"product_id": product_id})

    before, after = _compare_and_swap(product, lambda observed: max(observed + difference, 0))
    if after != before + difference:
        logger.warning(
            "Count difference for product %s clamped: before=%s difference=%s after=%s",
            product.id, before, difference, after,
        )
    if before == after:
        return None

    return _append_movement(
        product,
        movement_type=MOVEMENT_INVENTORY_COUNT,
        quantity=after - before,
        quantity_before=before,
        quantity_after=after,
        reference_type=reference_type,
        reference_id=reference_id,
        reason=reason,
        user_id=user_id,
    )


# =============================================================================
# READS / CHECKS
# =============================================================================

def list_movements(
    sales_context_id: int,
    *,
    product_id: int | None = None,
    movement_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """Journal rows for a sales context, newest first."""
    query = db.session.query(StockMovement).filter(StockMovement.sales_context_id == sales_context_id)
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    if movement_type:
        query = query.filter(StockMovement.movement_type == movement_type)
    if start is not None:
        query = query.filter(StockMovement.created_at >= start)
    if end is not None:
        query = query.filter(StockMovement.created_at <= end)

    total = query.count()
    rows = (
        query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"data": rows, "total": total, "page": page, "limit": limit}


def ledger_quantity(product_id: int) -> int:
    """SUM of all journaled deltas for a product."""
    return int(
        db.session.query(func.coalesce(func.sum(StockMovement.quantity), 0))
        .filter(StockMovement.product_id == product_id)
        .scalar()
        or 0
    )


def verify_product_ledger(product_id: int) -> dict:
    product = _get_product(product_id)
    cached = _current_quantity(product_id)
    journal = ledger_quantity(product_id)
    return {
        "product_id": product.id,
        "name": product.name,
        "cached_quantity": cached,
        "ledger_quantity": journal,
        "consistent": cached == journal,
    }


def find_ledger_drift(sales_context_id: int | None = None) -> list[dict]:
    """Tracked products whose cached quantity disagrees with their journal."""
    query = db.session.query(Product).filter(Product.track_inventory.is_(True))
    if sales_context_id is not None:
        query = query.filter(Product.sales_context_id == sales_context_id)

    drift = []
    for product in query.order_by(Product.id).all():
        report = verify_product_ledger(product.id)
        if not report["consistent"]:
            logger.warning(
                "Ledger drift on product %s: cached=%s ledger=%s",
                product.id, report["cached_quantity"], report["ledger_quantity"],
            )
            drift.append(report)
    return drift
