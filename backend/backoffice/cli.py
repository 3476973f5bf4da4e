# Overview: Flask CLI command groups for bootstrap and order maintenance.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (use `flask db upgrade` for migrated databases).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Idempotently create a demo user, supplier and a few products.
#
# Order maintenance:
# - python -m flask orders convert-delivered
#   Create the missing sale for every delivered order that has none.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Product, Supplier, User
from .services import order_sale_service


DEMO_PRODUCTS = (
    # sku, name, price_cents, cost_price_cents
    ("DEMO-COFFEE-1KG", "House Blend Coffee 1kg", 2400, 1300),
    ("DEMO-MUG-WHITE", "Ceramic Mug, White", 900, 350),
    ("DEMO-FILTER-100", "Paper Filters (100)", 450, 180),
)


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create a demo user, supplier and products (skips rows that exist)."""
    user = db.session.query(User).filter_by(username="demo").first()
    if not user:
        user = User(username="demo", first_name="Demo", last_name="Operator", email="demo@backoffice.local")
        db.session.add(user)
        click.echo("PASS Created user: demo")

    supplier = db.session.query(Supplier).filter_by(code="DEMO").first()
    if not supplier:
        supplier = Supplier(
            name="Demo Wholesale Ltd",
            code="DEMO",
            contact_person="Pat Supplier",
            email="orders@demo-wholesale.local",
            payment_terms="net_30",
        )
        db.session.add(supplier)
        click.echo("PASS Created supplier: DEMO")

    for sku, name, price_cents, cost_cents in DEMO_PRODUCTS:
        if db.session.query(Product).filter_by(sku=sku).first():
            continue
        db.session.add(Product(sku=sku, name=name, price_cents=price_cents, cost_price_cents=cost_cents))
        click.echo(f"PASS Created product: {sku}")

    db.session.commit()
    click.echo(f"\nUse X-Actor-Id: {user.id} for API calls.")


@click.group('orders')
def orders_group():
    """Sales order maintenance commands."""


@orders_group.command('convert-delivered')
@with_appcontext
def convert_delivered():
    """Retry sale creation for delivered orders that have no sale."""
    results = order_sale_service.convert_pending_deliveries()
    if not results:
        click.echo("PASS No delivered orders are missing a sale.")
        return

    failed = 0
    for order_number, receipt_number in results:
        if receipt_number:
            click.echo(f"PASS {order_number} -> {receipt_number}")
        else:
            failed += 1
            click.echo(f"FAIL {order_number}: sale could not be created")

    click.echo(f"\n{len(results) - failed} converted, {failed} failed")
    if failed:
        raise click.ClickException(f"{failed} order(s) could not be converted; see the log for details")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orders_group)
