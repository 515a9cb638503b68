# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/eventpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables (use `flask db upgrade` for migrated deployments).
# - python -m flask system seed-demo [--org "Demo Festival"]
#   Idempotent demo data: organization, active sales context, catalog, opening stock.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Organization management (MULTI-TENANT):
# - python -m flask orgs list
# - python -m flask orgs create --name "Acme Events" --code "ACME" --timezone "Europe/Berlin"
#
# Stock ledger:
# - python -m flask inventory verify [--sales-context-id 1]
#   Compare cached stock with the movement journal; exits 1 on drift.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Category, Organization, Product, SalesContext
from .models.inventory import MOVEMENT_INITIAL
from .models.tenancy import SALES_CONTEXT_ACTIVE
from .services import stock_ledger


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.echo("FAIL Refusing to reset without --yes")
        raise SystemExit(1)
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


DEMO_CATALOG = [
    ("Drinks", [
        ("Cola", 350, 1900, 48, [
            {"name": "Size", "options": [
                {"name": "Small", "price_modifier_cents": 0},
                {"name": "Large", "price_modifier_cents": 100},
            ]},
        ]),
        ("Water", 250, 1900, 60, []),
        ("Beer", 450, 1900, 96, []),
    ]),
    ("Food", [
        ("Bratwurst", 500, 700, 40, [
            {"name": "Sauce", "options": [
                {"name": "Ketchup", "price_modifier_cents": 0},
                {"name": "Curry", "price_modifier_cents": 50},
            ]},
        ]),
        ("Fries", 350, 700, None, []),
    ]),
]


@system_group.command('seed-demo')
@click.option('--org', 'org_name', default='Demo Festival', help='Organization name')
@click.option('--org-code', default='DEMO', help='Organization code')
@click.option('--timezone', default='Europe/Berlin', help='IANA timezone of the organization')
@with_appcontext
def seed_demo(org_name, org_code, timezone):
    """
    Create demo data for local testing.

    Products with a stock figure are inventory-tracked; their opening stock is
    booked as an `initial` movement so the ledger balances from the start.
    """
    click.echo("START Seeding demo data...")

    org = db.session.query(Organization).filter_by(code=org_code).first()
    if not org:
        org = Organization(name=org_name, code=org_code, timezone=timezone, is_active=True)
        db.session.add(org)
        db.session.commit()
        click.echo(f"PASS Created organization: {org.name} (ID: {org.id})")
    else:
        click.echo(f"PASS Using existing organization: {org.name} (ID: {org.id})")

    context = db.session.query(SalesContext).filter_by(organization_id=org.id, name="Main Event").first()
    if not context:
        context = SalesContext(organization_id=org.id, name="Main Event", status=SALES_CONTEXT_ACTIVE)
        db.session.add(context)
        db.session.commit()
        click.echo(f"PASS Created sales context: {context.name} (ID: {context.id})")

    for sort_order, (category_name, products) in enumerate(DEMO_CATALOG):
        category = db.session.query(Category).filter_by(sales_context_id=context.id, name=category_name).first()
        if not category:
            category = Category(sales_context_id=context.id, name=category_name, sort_order=sort_order)
            db.session.add(category)
            db.session.flush()

        for name, price_cents, tax_rate_bps, stock, option_groups in products:
            if db.session.query(Product).filter_by(sales_context_id=context.id, name=name).first():
                click.echo(f"WARN  Product '{name}' already exists, skipping...")
                continue

            product = Product(
                sales_context_id=context.id,
                category_id=category.id,
                name=name,
                price_cents=price_cents,
                tax_rate_bps=tax_rate_bps,
                track_inventory=stock is not None,
                stock_quantity=0,
                option_groups=option_groups,
            )
            db.session.add(product)
            db.session.flush()
            if stock:
                stock_ledger.adjust(
                    product.id,
                    stock,
                    reason="Opening stock",
                    movement_type=MOVEMENT_INITIAL,
                )
            click.echo(f"PASS Created product: {name} ({price_cents} cents, stock {stock})")

    db.session.commit()
    click.echo("DONE Demo data ready")


@click.group('orgs')
def orgs_group():
    """Organization (tenant) management commands."""


@orgs_group.command('list')
@with_appcontext
def list_orgs():
    """List all organizations."""
    orgs = db.session.query(Organization).order_by(Organization.id).all()
    if not orgs:
        click.echo("No organizations found.")
        return

    click.echo(f"{'ID':<5} {'Code':<10} {'Timezone':<20} {'Active':<7} Name")
    for org in orgs:
        click.echo(f"{org.id:<5} {org.code or '':<10} {org.timezone:<20} {str(org.is_active):<7} {org.name}")


@orgs_group.command('create')
@click.option('--name', required=True, help='Organization name')
@click.option('--code', required=True, help='Short code (unique)')
@click.option('--timezone', default='UTC', help='IANA timezone used for business days')
@with_appcontext
def create_org_cli(name, code, timezone):
    """Create a new organization (tenant)."""
    if db.session.query(Organization).filter_by(code=code).first():
        click.echo(f"FAIL Organization with code '{code}' already exists")
        raise SystemExit(1)

    org = Organization(name=name, code=code, timezone=timezone, is_active=True)
    db.session.add(org)
    db.session.commit()
    click.echo(f"PASS Created organization: {org.name} (ID: {org.id})")


@click.group('inventory')
def inventory_group():
    """Stock ledger inspection commands."""


@inventory_group.command('verify')
@click.option('--sales-context-id', type=int, default=None, help='Limit the check to one sales context')
@with_appcontext
def verify_inventory(sales_context_id):
    """Report products whose cached stock disagrees with their movement journal."""
    drift = stock_ledger.find_ledger_drift(sales_context_id)
    if not drift:
        click.echo("PASS Stock ledger consistent")
        return

    for report in drift:
        click.echo(
            f"FAIL Product {report['product_id']} ({report['name']}): "
            f"cached={report['cached_quantity']} ledger={report['ledger_quantity']}"
        )
    raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orgs_group)
    app.cli.add_command(inventory_group)
