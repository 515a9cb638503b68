# Overview: Pytest coverage for the capability gate and tenant isolation of core operations.

"""
Every core operation asks the gate exactly once. These tests prove that:
1. An actor without the capability is rejected with ForbiddenError
2. An actor of another organization never sees or changes foreign orders
3. A deployment-supplied gate replaces the built-in one
"""

import pytest

from conftest import place_order
from eventpos.permissions import (
    CANCEL_ORDER,
    CAPABILITY_CODES,
    CREATE_ORDER,
    TAKE_PAYMENT,
    VIEW_ORDERS,
)
from eventpos.services import inventory_service, order_service, payment_service
from eventpos.services.capability_service import Actor, authorize, session_actor
from eventpos.services.errors import ForbiddenError, NotFoundError


def _limited(org, *capabilities):
    return Actor(organization_id=org.id, user_id=3, capabilities=frozenset(capabilities))


class TestGate:
    def test_missing_capability_is_forbidden(self, db_session, actor, org, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 1))
        viewer = _limited(org, VIEW_ORDERS)

        assert order_service.get_order(viewer, order.id).id == order.id
        with pytest.raises(ForbiddenError):
            order_service.cancel_order(viewer, order.id)
        with pytest.raises(ForbiddenError):
            payment_service.create_payment(viewer, order.id, 500, "cash")
        with pytest.raises(ForbiddenError):
            place_order(viewer, sales_context, (burger, 1))

    def test_single_capability_is_enough(self, db_session, actor, org, sales_context, burger):
        order = place_order(_limited(org, CREATE_ORDER), sales_context, (burger, 1))
        payment_service.create_payment(_limited(org, TAKE_PAYMENT), order.id, 200, "cash")

        cancelled = order_service.cancel_order(_limited(org, CANCEL_ORDER), order.id)
        assert cancelled.status == "cancelled"

    def test_anonymous_actor_is_forbidden(self, db_session, org):
        with pytest.raises(ForbiddenError):
            authorize(None, org.id, VIEW_ORDERS)

    def test_actor_of_other_organization_is_forbidden(self, db_session, org, other_actor):
        with pytest.raises(ForbiddenError):
            authorize(other_actor, org.id, VIEW_ORDERS)

    def test_session_actor_only_creates_orders(self, db_session, org):
        guest = session_actor(org.id, CREATE_ORDER)

        authorize(guest, org.id, CREATE_ORDER)
        with pytest.raises(ForbiddenError):
            authorize(guest, org.id, VIEW_ORDERS)

    def test_custom_gate_replaces_builtin(self, app, db_session, actor, org):
        seen = []

        def gate(who, organization_id, capability):
            seen.append((who, organization_id, capability))
            raise ForbiddenError("Register closed")

        app.config["CAPABILITY_GATE"] = gate
        try:
            with pytest.raises(ForbiddenError):
                order_service.list_orders(actor)
        finally:
            app.config["CAPABILITY_GATE"] = None

        assert seen == [(actor, org.id, VIEW_ORDERS)]

    def test_capability_codes_are_unique(self):
        assert VIEW_ORDERS in CAPABILITY_CODES
        assert len(CAPABILITY_CODES) == 11


class TestTenantIsolation:
    def test_foreign_order_is_not_found(self, db_session, actor, other_actor, sales_context, burger):
        order = place_order(actor, sales_context, (burger, 2))

        with pytest.raises(NotFoundError):
            order_service.get_order(other_actor, order.id)
        with pytest.raises(NotFoundError):
            order_service.cancel_order(other_actor, order.id)
        with pytest.raises(NotFoundError):
            order_service.add_item(other_actor, order.id, burger.id, 1)
        with pytest.raises(NotFoundError):
            payment_service.get_payment_summary(other_actor, order.id)

        assert order_service.list_orders(other_actor)["total"] == 0
        assert order_service.get_order(actor, order.id).status == "open"

    def test_foreign_product_stock_untouchable(self, db_session, actor, foreign_product):
        with pytest.raises(NotFoundError):
            inventory_service.adjust_stock(actor, foreign_product.id, 5, reason="Not mine")
        with pytest.raises(NotFoundError):
            inventory_service.verify_product(actor, foreign_product.id)
