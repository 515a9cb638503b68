# Overview: Pytest coverage for physical inventory counts (lifecycle, snapshots, booking differences).

import pytest

from conftest import make_product, place_order
from eventpos import signals
from eventpos.extensions import db
from eventpos.models import InventoryCount, Product, StockMovement
from eventpos.permissions import VIEW_INVENTORY
from eventpos.services import count_service, stock_ledger
from eventpos.services.capability_service import Actor
from eventpos.services.errors import ForbiddenError, NotFoundError, ValidationError


def _stock(product_id):
    return db.session.get(Product, product_id).stock_quantity


def _running_count(actor, sales_context, *products, name="Closing count"):
    count = count_service.create_count(actor, sales_context.id, name)
    for product in products:
        count_service.add_count_item(actor, count.id, product.id)
    return count_service.start_count(actor, count.id)


def _item_for(count, product):
    return next(item for item in count.items if item.product_id == product.id)


class TestCountLifecycle:
    def test_complete_books_differences(self, db_session, actor, sales_context, burger, last_cake):
        count = count_service.create_count(actor, sales_context.id, "Closing count", notes="Bar only")
        assert count.status == "draft"
        assert count.created_by_user_id == actor.user_id

        burger_line = count_service.add_count_item(actor, count.id, burger.id)
        count_service.add_count_item(actor, count.id, last_cake.id)
        assert burger_line.expected_quantity == 10

        count = count_service.start_count(actor, count.id)
        assert count.status == "in_progress"
        assert count.started_at is not None

        line = count_service.update_count_item(actor, count.id, burger_line.id, 7, notes="Two crushed")
        assert line.difference == -3
        assert line.counted_by_user_id == actor.user_id
        count_service.update_count_item(actor, count.id, _item_for(count, last_cake).id, 1)

        count = count_service.complete_count(actor, count.id)

        assert count.status == "completed"
        assert count.completed_at is not None
        assert count.completed_by_user_id == actor.user_id
        assert _stock(burger.id) == 7
        assert _stock(last_cake.id) == 1

        movements = db_session.query(StockMovement).filter_by(reference_type="inventory_count").all()
        assert [(m.product_id, m.movement_type, m.quantity, m.reference_id) for m in movements] == [
            (burger.id, "inventory_count", -3, count.id),
        ]
        assert stock_ledger.verify_product_ledger(burger.id)["consistent"] is True

    def test_sales_during_count_stay_booked(self, db_session, actor, sales_context, burger):
        count = _running_count(actor, sales_context, burger)
        count_service.update_count_item(actor, count.id, _item_for(count, burger).id, 9)

        place_order(actor, sales_context, (burger, 2))
        assert _stock(burger.id) == 8

        count_service.complete_count(actor, count.id)

        assert _stock(burger.id) == 7
        assert stock_ledger.verify_product_ledger(burger.id)["consistent"] is True

    def test_shortfall_beyond_stock_clamps_at_zero(self, db_session, actor, sales_context, burger):
        count = _running_count(actor, sales_context, burger)
        count_service.update_count_item(actor, count.id, _item_for(count, burger).id, 2)
        place_order(actor, sales_context, (burger, 5))

        count_service.complete_count(actor, count.id)

        assert _stock(burger.id) == 0
        assert stock_ledger.verify_product_ledger(burger.id)["consistent"] is True

    def test_completion_fires_low_stock(self, db_session, actor, sales_context, last_cake):
        count = _running_count(actor, sales_context, last_cake)
        count_service.update_count_item(actor, count.id, _item_for(count, last_cake).id, 0)
        received = []

        def receiver(sender, **payload):
            received.append(payload)

        with signals.automation_trigger.connected_to(receiver):
            count_service.complete_count(actor, count.id)

        assert [(p["event_type"], p["payload"]["product_id"]) for p in received] == [("low_stock", last_cake.id)]

    def test_uncounted_product_blocks_completion(self, db_session, actor, sales_context, burger, last_cake):
        count = _running_count(actor, sales_context, burger, last_cake)
        count_service.update_count_item(actor, count.id, _item_for(count, burger).id, 10)

        with pytest.raises(ValidationError) as exc:
            count_service.complete_count(actor, count.id)

        assert exc.value.details["uncounted_product_ids"] == [last_cake.id]
        assert db_session.get(InventoryCount, count.id).status == "in_progress"

    def test_start_needs_products(self, db_session, actor, sales_context):
        count = count_service.create_count(actor, sales_context.id, "Empty")

        with pytest.raises(ValidationError):
            count_service.start_count(actor, count.id)

    def test_one_running_count_per_context(self, db_session, actor, sales_context, burger):
        _running_count(actor, sales_context, burger)

        with pytest.raises(ValidationError):
            count_service.create_count(actor, sales_context.id, "Second")

    def test_cancel_and_terminal_states(self, db_session, actor, sales_context, burger):
        cancelled = count_service.cancel_count(actor, _running_count(actor, sales_context, burger).id)
        assert cancelled.status == "cancelled"
        with pytest.raises(ValidationError):
            count_service.complete_count(actor, cancelled.id)
        with pytest.raises(ValidationError):
            count_service.cancel_count(actor, cancelled.id)

        done = _running_count(actor, sales_context, burger, name="Recount")
        count_service.update_count_item(actor, done.id, _item_for(done, burger).id, 10)
        count_service.complete_count(actor, done.id)

        with pytest.raises(ValidationError):
            count_service.cancel_count(actor, done.id)
        with pytest.raises(ValidationError):
            count_service.update_count(actor, done.id, name="Renamed")
        with pytest.raises(ValidationError):
            count_service.delete_count(actor, done.id)

    def test_update_and_delete(self, db_session, actor, sales_context, burger):
        count = count_service.create_count(actor, sales_context.id, "Morning")
        count_service.add_count_item(actor, count.id, burger.id)

        count = count_service.update_count(actor, count.id, name="Morning count", notes="Cold room")
        assert (count.name, count.notes) == ("Morning count", "Cold room")
        with pytest.raises(ValidationError):
            count_service.update_count(actor, count.id, name="  ")

        count_service.delete_count(actor, count.id)
        assert db_session.query(InventoryCount).count() == 0


class TestCountItems:
    def test_add_item_checks(self, db_session, actor, sales_context, burger, fries, foreign_product):
        count = count_service.create_count(actor, sales_context.id, "Checks")
        count_service.add_count_item(actor, count.id, burger.id)

        with pytest.raises(ValidationError):
            count_service.add_count_item(actor, count.id, burger.id)
        with pytest.raises(NotFoundError):
            count_service.add_count_item(actor, count.id, fries.id)
        with pytest.raises(NotFoundError):
            count_service.add_count_item(actor, count.id, foreign_product.id)

        count_service.start_count(actor, count.id)
        with pytest.raises(ValidationError):
            count_service.add_count_item(actor, count.id, burger.id)

    def test_bulk_add(self, db_session, actor, sales_context, category, burger, fries, last_cake, foreign_product):
        crisps = make_product(sales_context.id, "Crisps", 150, stock=20)

        count = count_service.create_count(actor, sales_context.id, "By category")
        added = count_service.bulk_add_count_items(actor, count.id, category_id=category.id)
        assert sorted(item.product_id for item in added) == [burger.id, last_cake.id]

        added = count_service.bulk_add_count_items(actor, count.id)
        assert [item.product_id for item in added] == [crisps.id]

        picked = count_service.create_count(actor, sales_context.id, "Picked")
        added = count_service.bulk_add_count_items(
            actor, picked.id, product_ids=[last_cake.id, fries.id, foreign_product.id]
        )
        assert [item.product_id for item in added] == [last_cake.id]
        assert added[0].expected_quantity == 1

        with pytest.raises(ValidationError):
            count_service.bulk_add_count_items(actor, picked.id, product_ids=str(last_cake.id))

    def test_counted_quantity_checks(self, db_session, actor, sales_context, burger):
        count = count_service.create_count(actor, sales_context.id, "Quantities")
        line = count_service.add_count_item(actor, count.id, burger.id)

        with pytest.raises(ValidationError):
            count_service.update_count_item(actor, count.id, line.id, 5)

        count_service.start_count(actor, count.id)
        with pytest.raises(ValidationError):
            count_service.update_count_item(actor, count.id, line.id, -1)
        with pytest.raises(ValidationError):
            count_service.update_count_item(actor, count.id, line.id, None)
        with pytest.raises(NotFoundError):
            count_service.update_count_item(actor, count.id, line.id + 1000, 5)


class TestCountAccess:
    def test_other_organization_cannot_see_count(self, db_session, actor, other_actor, sales_context, burger):
        count = _running_count(actor, sales_context, burger)

        with pytest.raises(NotFoundError):
            count_service.get_count(other_actor, count.id)
        with pytest.raises(NotFoundError):
            count_service.complete_count(other_actor, count.id)
        with pytest.raises(NotFoundError):
            count_service.create_count(other_actor, sales_context.id, "Intruder")

    def test_viewer_reads_but_cannot_count(self, db_session, org, actor, sales_context, burger):
        viewer = Actor(organization_id=org.id, capabilities=frozenset({VIEW_INVENTORY}))
        count = _running_count(actor, sales_context, burger)

        with pytest.raises(ForbiddenError):
            count_service.create_count(viewer, sales_context.id, "Mine")
        with pytest.raises(ForbiddenError):
            count_service.update_count_item(viewer, count.id, _item_for(count, burger).id, 3)
        assert count_service.get_count(viewer, count.id).id == count.id

    def test_list_counts(self, db_session, actor, sales_context, burger):
        first = count_service.cancel_count(actor, count_service.create_count(actor, sales_context.id, "First").id)
        second = count_service.create_count(actor, sales_context.id, "Second")

        result = count_service.list_counts(actor, sales_context.id)
        assert [c.id for c in result["data"]] == [second.id, first.id]
        assert result["total"] == 2

        result = count_service.list_counts(actor, sales_context.id, status="cancelled")
        assert [c.id for c in result["data"]] == [first.id]

        with pytest.raises(ValidationError):
            count_service.list_counts(actor, sales_context.id, status="posted")
