"""
Pytest fixtures for eventpos backend tests.

Provides test database setup, tenant fixtures (two organizations), a small
catalog and staff actors.
"""

import pytest

from eventpos import create_app
from eventpos.extensions import db
from eventpos.models import Category, Organization, Product, SalesContext
from eventpos.models.inventory import MOVEMENT_INITIAL
from eventpos.models.tenancy import SALES_CONTEXT_ACTIVE, SALES_CONTEXT_DRAFT
from eventpos.permissions import ALL_CAPABILITIES
from eventpos.services import ingestion_service, stock_ledger
from eventpos.services.capability_service import Actor


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DEFAULT_TAX_RATE_BPS': 1900,
        'LOW_STOCK_THRESHOLD': 0,
        'RETRY_ATTEMPTS': 3,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def org(db_session):
    """Organization A (first tenant)."""
    org = Organization(name="Org A - Summer Festival", code="SUMMER", timezone="Europe/Berlin", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def other_org(db_session):
    """Organization B (second tenant)."""
    org = Organization(name="Org B - Winter Market", code="WINTER", timezone="UTC", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def sales_context(db_session, org):
    context = SalesContext(organization_id=org.id, name="Main Stage", status=SALES_CONTEXT_ACTIVE)
    db_session.add(context)
    db_session.commit()
    return context


@pytest.fixture(scope='function')
def draft_context(db_session, org):
    context = SalesContext(organization_id=org.id, name="Next Year", status=SALES_CONTEXT_DRAFT)
    db_session.add(context)
    db_session.commit()
    return context


@pytest.fixture(scope='function')
def other_context(db_session, other_org):
    context = SalesContext(organization_id=other_org.id, name="Market Hall", status=SALES_CONTEXT_ACTIVE)
    db_session.add(context)
    db_session.commit()
    return context


@pytest.fixture(scope='function')
def category(db_session, sales_context):
    category = Category(sales_context_id=sales_context.id, name="Food", sort_order=0)
    db_session.add(category)
    db_session.commit()
    return category


def make_product(sales_context_id, name, price_cents, *, stock=None, category_id=None,
                 tax_rate_bps=1900, option_groups=None, **extra):
    """Create a product; with stock set it is tracked and its opening stock is journaled."""
    product = Product(
        sales_context_id=sales_context_id,
        category_id=category_id,
        name=name,
        price_cents=price_cents,
        tax_rate_bps=tax_rate_bps,
        track_inventory=stock is not None,
        stock_quantity=0,
        option_groups=option_groups or [],
        **extra,
    )
    db.session.add(product)
    db.session.flush()
    if stock:
        stock_ledger.adjust(product.id, stock, reason="Opening stock", movement_type=MOVEMENT_INITIAL)
    db.session.commit()
    return product


@pytest.fixture(scope='function')
def burger(db_session, sales_context, category):
    """Tracked product, 5.00 at 19 %, ten in stock, with a priced option group."""
    return make_product(
        sales_context.id,
        "Burger",
        500,
        stock=10,
        category_id=category.id,
        option_groups=[
            {"name": "Extras", "options": [
                {"name": "Cheese", "price_modifier_cents": 50},
                {"name": "Bacon", "price_modifier_cents": 100},
            ]},
        ],
    )


@pytest.fixture(scope='function')
def fries(db_session, sales_context, category):
    """Untracked product, 3.00 at 7 %."""
    return make_product(sales_context.id, "Fries", 300, category_id=category.id, tax_rate_bps=700)


@pytest.fixture(scope='function')
def last_cake(db_session, sales_context, category):
    """Tracked product with a single unit left."""
    return make_product(sales_context.id, "Last Cake", 400, stock=1, category_id=category.id)


@pytest.fixture(scope='function')
def foreign_product(db_session, other_context):
    return make_product(other_context.id, "Mulled Wine", 450, stock=5)


@pytest.fixture(scope='function')
def actor(org):
    """Staff actor of organization A holding every capability."""
    return Actor(organization_id=org.id, user_id=1, device_id=7, capabilities=frozenset({ALL_CAPABILITIES}))


@pytest.fixture(scope='function')
def other_actor(other_org):
    """Staff actor of organization B holding every capability."""
    return Actor(organization_id=other_org.id, user_id=2, capabilities=frozenset({ALL_CAPABILITIES}))


def actor_headers(actor) -> dict:
    """Identity headers the upstream gateway would forward for actor."""
    headers = {
        'X-Organization-Id': str(actor.organization_id),
        'X-Capabilities': ",".join(sorted(actor.capabilities)),
    }
    if actor.user_id is not None:
        headers['X-User-Id'] = str(actor.user_id)
    if actor.device_id is not None:
        headers['X-Device-Id'] = str(actor.device_id)
    return headers


def place_order(actor, sales_context, *lines, **fields):
    """Submit a counter order; lines are (product, quantity) or (product, quantity, selected_options)."""
    items = []
    for line in lines:
        product, quantity = line[0], line[1]
        entry = {"product_id": product.id, "quantity": quantity}
        if len(line) > 2:
            entry["selected_options"] = line[2]
        items.append(entry)

    payload = {"sales_context_id": sales_context.id, "items": items}
    payload.update(fields)
    return ingestion_service.submit_counter_order(actor, payload)
