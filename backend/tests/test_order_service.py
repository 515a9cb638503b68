# Overview: Pytest coverage for the order aggregate (totals, item state machine, stock effects of edits).

import pytest

from conftest import make_product, place_order
from eventpos.extensions import db
from eventpos.models import Order, Product, StockMovement
from eventpos.models.inventory import MOVEMENT_SALE, MOVEMENT_SALE_CANCELLED
from eventpos.services import order_service, payment_service
from eventpos.services.errors import InsufficientStockError, NotFoundError, ValidationError


def _stock(product_id):
    return db.session.get(Product, product_id).stock_quantity


class TestTotals:
    def test_single_item_totals(self, db_session, actor, sales_context, burger):
        """Two units at 5.00 with 19 % contained tax."""
        order = place_order(actor, sales_context, (burger, 2))

        assert order.subtotal_cents == 1000
        assert order.tax_total_cents == 190
        assert order.total_cents == 1000
        assert order.status == "open"
        assert order.payment_status == "unpaid"

        item = order.items[0]
        assert item.unit_price_cents == 500
        assert item.tax_rate_bps == 1900
        assert item.total_price_cents == 1000
        assert item.paid_quantity == 0

    def test_mixed_tax_rates(self, db_session, actor, sales_context, burger, fries):
        order = place_order(actor, sales_context, (burger, 2), (fries, 1))

        assert order.subtotal_cents == 1300
        # 1000 * 19 % + 300 * 7 % = 190 + 21
        assert order.tax_total_cents == 211
        assert order.total_cents == 1300

    def test_tax_rounds_half_up(self, db_session, actor, sales_context):
        snack = make_product(sales_context.id, "Pretzel", 250, tax_rate_bps=1900)
        order = place_order(actor, sales_context, (snack, 1))

        # 250 * 19 % = 47.5
        assert order.tax_total_cents == 48

    def test_options_are_priced_from_catalog(self, db_session, actor, sales_context, burger):
        order = place_order(
            actor,
            sales_context,
            (burger, 2, [{"group": "Extras", "option": "Cheese"}, {"group": "Extras", "option": "Bacon"}]),
        )

        item = order.items[0]
        assert item.options_price_cents == 150
        assert item.total_price_cents == 1300
        assert [o["option"] for o in item.options] == ["Cheese", "Bacon"]
        assert order.total_cents == 1300

    def test_default_tax_rate_applies(self, db_session, actor, sales_context):
        water = make_product(sales_context.id, "Water", 200, tax_rate_bps=None)
        order = place_order(actor, sales_context, (water, 1))

        assert order.items[0].tax_rate_bps == 1900
        assert order.tax_total_cents == 38

    def test_item_snapshot_survives_catalog_edit(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 1))

        product = db_session.get(Product, burger.id)
        product.price_cents = 900
        product.name = "Deluxe Burger"
        db_session.commit()

        item = order_service.get_order(actor, order.id).items[0]
        assert item.unit_price_cents == 500
        assert item.product_name == "Burger"

    def test_discount_and_tip(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 2))

        order = order_service.update_order(actor, order.id, discount_cents=200, discount_reason="Staff", tip_cents=50)

        assert order.subtotal_cents == 1000
        assert order.total_cents == 850
        assert order.discount_reason == "Staff"

    def test_discount_above_order_value_rejected(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 1))

        with pytest.raises(ValidationError):
            order_service.update_order(actor, order.id, discount_cents=600)

        assert order_service.get_order(actor, order.id).discount_cents == 0

    def test_update_order_validates_fields(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 1))

        with pytest.raises(ValidationError):
            order_service.update_order(actor, order.id, tip_cents=-1)
        with pytest.raises(ValidationError):
            order_service.update_order(actor, order.id, priority="yesterday")

        updated = order_service.update_order(actor, order.id, priority="rush", table_number="12", notes="VIP")
        assert updated.priority == "rush"
        assert updated.table_number == "12"


class TestItemEdits:
    def test_add_item_reserves_and_recomputes(self, db_session, actor, sales_context, burger, fries):
        order = place_order(actor, sales_context, (fries, 1))

        item = order_service.add_item(actor, order.id, burger.id, 3, notes="well done")

        order = order_service.get_order(actor, order.id)
        assert item.quantity == 3
        assert item.notes == "well done"
        assert order.subtotal_cents == 1800
        assert _stock(burger.id) == 7

    def test_add_item_insufficient_stock(self, db_session, actor, sales_context, burger, last_cake):
        order = place_order(actor, sales_context, (burger, 1))

        with pytest.raises(InsufficientStockError):
            order_service.add_item(actor, order.id, last_cake.id, 2)

        assert len(order_service.get_order(actor, order.id).items) == 1
        assert _stock(last_cake.id) == 1

    def test_add_item_unavailable_product(self, db_session, actor, sales_context, burger):
        sold_out = make_product(sales_context.id, "Soup", 400, is_available=False)
        order = place_order(actor, sales_context, (burger, 1))

        with pytest.raises(ValidationError):
            order_service.add_item(actor, order.id, sold_out.id, 1)

    def test_quantity_increase_and_decrease(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 2))
        item_id = order.items[0].id

        order_service.update_item(actor, order.id, item_id, quantity=5)
        assert _stock(burger.id) == 5

        item = order_service.update_item(actor, order.id, item_id, quantity=1, kitchen_notes="no onions")
        assert item.quantity == 1
        assert item.total_price_cents == 500
        assert item.kitchen_notes == "no onions"
        assert _stock(burger.id) == 9

        order = order_service.get_order(actor, order.id)
        assert order.total_cents == 500

    def test_quantity_change_only_while_pending(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 2))
        item_id = order.items[0].id
        order_service.set_item_status(actor, order.id, item_id, "preparing")

        with pytest.raises(ValidationError):
            order_service.update_item(actor, order.id, item_id, quantity=3)

        # Notes stay editable
        item = order_service.update_item(actor, order.id, item_id, notes="extra napkins")
        assert item.notes == "extra napkins"

    def test_quantity_cannot_drop_below_paid(self, db_session, actor, sales_context, burger, fries):
        order = place_order(actor, sales_context, (burger, 3), (fries, 1))
        item_id = order.items[0].id
        payment_service.create_split_payment(
            actor, order.id, 1000, "cash", [{"order_item_id": item_id, "quantity": 2}]
        )

        with pytest.raises(ValidationError):
            order_service.update_item(actor, order.id, item_id, quantity=1)

    def test_remove_item_releases_stock(self, db_session, actor, sales_context, burger, fries):
        order = place_order(actor, sales_context, (burger, 4), (fries, 1))
        burger_item = order.items[0].id

        order = order_service.remove_item(actor, order.id, burger_item)

        assert [i.product_name for i in order.items] == ["Fries"]
        assert order.total_cents == 300
        assert _stock(burger.id) == 10

    def test_remove_paid_item_rejected(self, db_session, actor, sales_context, burger, fries):
        order = place_order(actor, sales_context, (burger, 1), (fries, 1))
        item_id = order.items[0].id
        payment_service.create_split_payment(
            actor, order.id, 500, "card", [{"order_item_id": item_id, "quantity": 1}]
        )

        with pytest.raises(ValidationError):
            order_service.remove_item(actor, order.id, item_id)

    def test_unknown_item(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 1))
        with pytest.raises(NotFoundError):
            order_service.update_item(actor, order.id, 99999, quantity=2)


class TestItemCancellation:
    def test_cancel_item_compensates_stock(self, db_session, actor, sales_context, burger, fries):
        order = place_order(actor, sales_context, (burger, 3), (fries, 2))
        item_id = order.items[0].id

        item = order_service.cancel_item(actor, order.id, item_id, reason="Guest changed mind")

        assert item.status == "cancelled"
        assert item.cancelled_at is not None
        assert _stock(burger.id) == 10

        order = order_service.get_order(actor, order.id)
        assert order.subtotal_cents == 600
        assert order.status == "open"

        movement = (
            db_session.query(StockMovement)
            .filter_by(product_id=burger.id, movement_type=MOVEMENT_SALE_CANCELLED)
            .one()
        )
        assert movement.quantity == 3
        assert movement.reason == "Guest changed mind"

    def test_cancel_delivered_item_rejected(self, db_session, actor, sales_context, burger, fries):
        order = place_order(actor, sales_context, (burger, 1), (fries, 1))
        item_id = order.items[0].id
        order_service.set_item_status(actor, order.id, item_id, "delivered")

        with pytest.raises(ValidationError):
            order_service.cancel_item(actor, order.id, item_id)

    def test_cancel_twice_rejected(self, db_session, actor, sales_context, burger, fries):
        order = place_order(actor, sales_context, (burger, 1), (fries, 1))
        item_id = order.items[0].id
        order_service.cancel_item(actor, order.id, item_id)

        with pytest.raises(ValidationError):
            order_service.cancel_item(actor, order.id, item_id)
        # Exactly one compensation
        assert db_session.query(StockMovement).filter_by(movement_type=MOVEMENT_SALE_CANCELLED).count() == 1


class TestItemStatus:
    def test_forward_flow_stamps_timestamps(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 1))
        item_id = order.items[0].id

        item = order_service.set_item_status(actor, order.id, item_id, "preparing")
        assert item.prepared_at is not None
        assert order_service.get_order(actor, order.id).status == "in_progress"

        order_service.set_item_status(actor, order.id, item_id, "ready")
        assert order_service.get_order(actor, order.id).status == "in_progress"

        item = order_service.set_item_status(actor, order.id, item_id, "delivered")
        assert item.ready_at is not None
        assert item.delivered_at is not None

        order = order_service.get_order(actor, order.id)
        assert order.status == "ready"
        assert order.ready_at is not None

    def test_backward_transition_rejected(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 1))
        item_id = order.items[0].id
        order_service.set_item_status(actor, order.id, item_id, "ready")

        with pytest.raises(ValidationError):
            order_service.set_item_status(actor, order.id, item_id, "preparing")
        with pytest.raises(ValidationError):
            order_service.set_item_status(actor, order.id, item_id, "ready")

    def test_cancelled_is_not_a_status_target(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 1))
        with pytest.raises(ValidationError):
            order_service.set_item_status(actor, order.id, order.items[0].id, "cancelled")

    def test_order_ready_ignores_cancelled_items(self, db_session, actor, sales_context, burger, fries):
        order = place_order(actor, sales_context, (burger, 1), (fries, 1))
        burger_item, fries_item = order.items[0].id, order.items[1].id

        order_service.cancel_item(actor, order.id, fries_item)
        order_service.set_item_status(actor, order.id, burger_item, "delivered")

        assert order_service.get_order(actor, order.id).status == "ready"

    def test_items_of_completed_order_still_move(self, db_session, actor, sales_context, burger):
        """Prepaid orders are completed at payment and then worked off by the kitchen."""
        order = place_order(actor, sales_context, (burger, 1))
        payment_service.create_payment(actor, order.id, 500, "cash")

        item = order_service.set_item_status(actor, order.id, order.items[0].id, "ready")

        assert item.status == "ready"
        assert order_service.get_order(actor, order.id).status == "completed"

    def test_cancelled_order_is_frozen(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 1))
        order_service.cancel_order(actor, order.id)

        with pytest.raises(ValidationError):
            order_service.set_item_status(actor, order.id, order.items[0].id, "preparing")


class TestOrderLifecycle:
    def test_cancel_order_compensates_once_per_item(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 3))
        assert _stock(burger.id) == 7

        order = order_service.cancel_order(actor, order.id, reason="Closed early")

        assert order.status == "cancelled"
        assert order.cancellation_reason == "Closed early"
        assert order.items[0].status == "cancelled"
        assert _stock(burger.id) == 10

        compensations = (
            db_session.query(StockMovement)
            .filter_by(reference_type="order", reference_id=order.id, movement_type=MOVEMENT_SALE_CANCELLED)
            .all()
        )
        assert [m.quantity for m in compensations] == [3]

    def test_cancel_order_twice_rejected(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 1))
        order_service.cancel_order(actor, order.id)

        with pytest.raises(ValidationError):
            order_service.cancel_order(actor, order.id)
        assert _stock(burger.id) == 10

    def test_terminal_orders_reject_edits(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 1))
        order_service.cancel_order(actor, order.id)

        with pytest.raises(ValidationError):
            order_service.add_item(actor, order.id, burger.id, 1)
        with pytest.raises(ValidationError):
            order_service.update_order(actor, order.id, tip_cents=100)

    def test_complete_requires_full_payment(self, db_session, actor, sales_context, burger, fries):
        order = place_order(actor, sales_context, (burger, 1), (fries, 1))

        with pytest.raises(ValidationError) as exc_info:
            order_service.complete_order(actor, order.id)
        assert exc_info.value.details["remaining_cents"] == 800

    def test_delete_unpaid_order(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 2))

        order_service.delete_order(actor, order.id)

        assert _stock(burger.id) == 10
        with pytest.raises(NotFoundError):
            order_service.get_order(actor, order.id)
        # Soft delete: the row and its journal stay
        assert db_session.get(Order, order.id).deleted_at is not None
        assert db_session.query(StockMovement).filter_by(movement_type=MOVEMENT_SALE).count() == 1

    def test_delete_order_with_payment_rejected(self, db_session, actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 2))
        payment_service.create_payment(actor, order.id, 300, "cash")

        with pytest.raises(ValidationError):
            order_service.delete_order(actor, order.id)


class TestQueries:
    def test_list_orders_filters_and_paginates(self, db_session, actor, sales_context, burger, fries):
        first = place_order(actor, sales_context, (burger, 1))
        second = place_order(actor, sales_context, (fries, 1))
        place_order(actor, sales_context, (fries, 2))
        order_service.cancel_order(actor, first.id)

        result = order_service.list_orders(actor, status="open")
        assert result["total"] == 2

        page = order_service.list_orders(actor, limit=2, page=1)
        assert page["total"] == 3
        assert len(page["data"]) == 2
        assert page["data"][0].id > page["data"][1].id

        by_source = order_service.list_orders(actor, source="counter", sales_context_id=sales_context.id)
        assert by_source["total"] == 3
        assert second.id in [o.id for o in by_source["data"]]

    def test_list_orders_rejects_bad_paging(self, db_session, actor):
        with pytest.raises(ValidationError):
            order_service.list_orders(actor, page=0)
        with pytest.raises(ValidationError):
            order_service.list_orders(actor, source="telepathy")

    def test_get_unknown_order(self, db_session, actor):
        with pytest.raises(NotFoundError):
            order_service.get_order(actor, 12345)
