# Overview: Pytest coverage for the stock ledger (reservations, releases, corrections, journal checks).

import pytest
from sqlalchemy import update

from eventpos.extensions import db
from eventpos.models import Product, StockMovement
from eventpos.models.inventory import (
    MOVEMENT_ADJUSTMENT_MINUS,
    MOVEMENT_INVENTORY_COUNT,
    MOVEMENT_SALE,
    MOVEMENT_SALE_CANCELLED,
    MOVEMENT_WASTE,
)
from eventpos.services import stock_ledger
from eventpos.services.errors import InsufficientStockError, NotFoundError, ValidationError


def _stock(product_id):
    return db.session.get(Product, product_id).stock_quantity


class TestReserve:
    def test_reserve_decrements_and_journals(self, db_session, burger):
        movement = stock_ledger.reserve(burger.id, 3, reference_type="order", reference_id=42)
        db_session.commit()

        assert movement.movement_type == MOVEMENT_SALE
        assert movement.quantity == -3
        assert movement.quantity_before == 10
        assert movement.quantity_after == 7
        assert movement.reference_id == 42
        assert _stock(burger.id) == 7

    def test_reserve_rejects_more_than_on_hand(self, db_session, burger):
        with pytest.raises(InsufficientStockError) as exc_info:
            stock_ledger.reserve(burger.id, 11)
        db_session.rollback()

        assert exc_info.value.details["available_quantity"] == 10
        assert exc_info.value.details["requested_quantity"] == 11
        assert _stock(burger.id) == 10
        assert db_session.query(StockMovement).filter_by(movement_type=MOVEMENT_SALE).count() == 0

    def test_reserve_exact_remaining_reaches_zero(self, db_session, last_cake):
        stock_ledger.reserve(last_cake.id, 1)
        db_session.commit()
        assert _stock(last_cake.id) == 0

        with pytest.raises(InsufficientStockError):
            stock_ledger.reserve(last_cake.id, 1)
        db_session.rollback()
        assert _stock(last_cake.id) == 0

    def test_untracked_product_bypasses_ledger(self, db_session, fries):
        assert stock_ledger.reserve(fries.id, 500) is None
        assert stock_ledger.release(fries.id, 500) is None
        db_session.commit()

        assert db_session.query(StockMovement).filter_by(product_id=fries.id).count() == 0
        assert _stock(fries.id) == 0

    def test_non_positive_quantity_rejected(self, db_session, burger):
        with pytest.raises(ValidationError):
            stock_ledger.reserve(burger.id, 0)
        with pytest.raises(ValidationError):
            stock_ledger.release(burger.id, -1)

    def test_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            stock_ledger.reserve(99999, 1)


class TestRelease:
    def test_release_restores_stock(self, db_session, burger):
        stock_ledger.reserve(burger.id, 4)
        movement = stock_ledger.release(burger.id, 4, reason="Order cancelled")
        db_session.commit()

        assert movement.movement_type == MOVEMENT_SALE_CANCELLED
        assert movement.quantity == 4
        assert movement.quantity_before == 6
        assert movement.quantity_after == 10
        assert _stock(burger.id) == 10

    def test_release_clamps_negative_stock(self, db_session, burger):
        # Corrupt the cache below zero the way only an outside write could
        db_session.execute(
            update(Product).where(Product.id == burger.id).values(stock_quantity=-5),
            execution_options={"synchronize_session": False},
        )
        db_session.commit()

        movement = stock_ledger.release(burger.id, 2)
        db_session.commit()

        assert movement.quantity_before == -5
        assert movement.quantity_after == 0
        assert movement.quantity == 5
        assert _stock(burger.id) == 0


class TestCorrections:
    def test_adjust_positive_and_negative(self, db_session, burger):
        plus = stock_ledger.adjust(burger.id, 5, reason="Delivery")
        minus = stock_ledger.adjust(burger.id, -3, reason="Broken", movement_type=MOVEMENT_WASTE)
        db_session.commit()

        assert plus.quantity_after == 15
        assert minus.movement_type == MOVEMENT_WASTE
        assert minus.quantity_after == 12
        assert _stock(burger.id) == 12

    def test_adjust_default_type_for_decrease(self, db_session, burger):
        movement = stock_ledger.adjust(burger.id, -1, reason="Shrinkage")
        assert movement.movement_type == MOVEMENT_ADJUSTMENT_MINUS

    def test_adjust_cannot_drive_stock_negative(self, db_session, burger):
        with pytest.raises(InsufficientStockError):
            stock_ledger.adjust(burger.id, -11, reason="Too much")

    def test_adjust_rejects_sale_types_and_untracked(self, db_session, burger, fries):
        with pytest.raises(ValidationError):
            stock_ledger.adjust(burger.id, 1, reason="x", movement_type=MOVEMENT_SALE)
        with pytest.raises(ValidationError):
            stock_ledger.adjust(burger.id, 0, reason="x")
        with pytest.raises(ValidationError):
            stock_ledger.adjust(burger.id, 1, reason="")
        with pytest.raises(ValidationError):
            stock_ledger.adjust(fries.id, 1, reason="x")

    def test_record_count_books_difference(self, db_session, burger):
        movement = stock_ledger.record_count(burger.id, 7)
        db_session.commit()

        assert movement.movement_type == MOVEMENT_INVENTORY_COUNT
        assert movement.quantity == -3
        assert _stock(burger.id) == 7

    def test_record_count_without_difference(self, db_session, burger):
        assert stock_ledger.record_count(burger.id, 10) is None

    def test_record_count_rejects_negative(self, db_session, burger):
        with pytest.raises(ValidationError):
            stock_ledger.record_count(burger.id, -1)


class TestJournal:
    def test_cached_quantity_matches_journal(self, db_session, burger):
        stock_ledger.reserve(burger.id, 2)
        stock_ledger.release(burger.id, 1)
        stock_ledger.adjust(burger.id, 4, reason="Delivery")
        stock_ledger.record_count(burger.id, 9)
        db_session.commit()

        report = stock_ledger.verify_product_ledger(burger.id)
        assert report["consistent"] is True
        assert report["cached_quantity"] == 9
        assert stock_ledger.ledger_quantity(burger.id) == 9
        assert stock_ledger.find_ledger_drift() == []

    def test_drift_is_reported(self, db_session, burger, sales_context):
        db_session.execute(
            update(Product).where(Product.id == burger.id).values(stock_quantity=3),
            execution_options={"synchronize_session": False},
        )
        db_session.commit()

        drift = stock_ledger.find_ledger_drift(sales_context.id)
        assert len(drift) == 1
        assert drift[0]["product_id"] == burger.id
        assert drift[0]["cached_quantity"] == 3
        assert drift[0]["ledger_quantity"] == 10

    def test_list_movements_newest_first(self, db_session, burger, sales_context):
        stock_ledger.reserve(burger.id, 1)
        stock_ledger.reserve(burger.id, 2)
        db_session.commit()

        result = stock_ledger.list_movements(sales_context.id, product_id=burger.id)
        assert result["total"] == 3
        assert [m.quantity for m in result["data"]] == [-2, -1, 10]

        sales = stock_ledger.list_movements(sales_context.id, movement_type=MOVEMENT_SALE, limit=1)
        assert sales["total"] == 2
        assert len(sales["data"]) == 1
