# Overview: Flask CLI command groups for bootstrap and stock inspection.

# backend/pharmapos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (use `flask db upgrade` where migrations are managed).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock inspection:
# - python -m flask inventory reconcile [--product-id 12]
#   Compare aggregate, batch and movement totals; exits 1 on any mismatch.
# - python -m flask inventory low-stock
#   List active products at or below their reorder level.
# - python -m flask inventory expiring [--within-days 90] [--critical-days 30] [--include-expired]
#   List batches with stock that expire inside the window, soonest first.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Product
from .services import inventory_service


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

    click.echo("PASS Database reset complete.")


@click.group('inventory')
def inventory_group():
    """Stock inspection commands."""


@inventory_group.command('reconcile')
@click.option('--product-id', type=int, default=None, help='Only this product')
@with_appcontext
def reconcile(product_id):
    """Check the stock ledger invariants per product."""
    if product_id is not None:
        product_ids = [product_id]
    else:
        product_ids = [pid for (pid,) in db.session.query(Product.id).order_by(Product.id).all()]

    mismatches = 0
    for pid in product_ids:
        try:
            report = inventory_service.reconcile_product(pid)
        except ValueError as e:
            raise click.ClickException(f"Product {pid}: {e}")
        status = "PASS" if report["consistent"] else "FAIL"
        if not report["consistent"]:
            mismatches += 1
        click.echo(
            f"{status} product {pid}: aggregate={report['aggregate_quantity']} "
            f"batches={report['batch_quantity']} movements={report['movement_quantity']}"
        )

    click.echo(f"\n{len(product_ids)} products checked, {mismatches} inconsistent")
    if mismatches:
        raise SystemExit(1)


@inventory_group.command('low-stock')
@click.option('--limit', type=int, default=200)
@with_appcontext
def low_stock(limit):
    """List products at or below their reorder level."""
    products = inventory_service.list_low_stock_products(limit=limit)
    if not products:
        click.echo("No products at or below reorder level.")
        return
    for p in products:
        click.echo(f"{p.id:>6}  {p.sku:<20} {p.name:<40} qty={p.quantity} reorder={p.reorder_level}")


@inventory_group.command('expiring')
@click.option('--within-days', type=int, default=inventory_service.EXPIRY_WARNING_DAYS, show_default=True)
@click.option('--critical-days', type=int, default=inventory_service.EXPIRY_CRITICAL_DAYS, show_default=True)
@click.option('--include-expired', is_flag=True, help='Also list batches already past expiry')
@with_appcontext
def expiring(within_days, critical_days, include_expired):
    """List batches expiring within the window."""
    try:
        batches = inventory_service.list_expiring_batches(
            within_days, critical_days, include_expired=include_expired
        )
    except ValueError as e:
        raise click.BadParameter(str(e))
    if not batches:
        click.echo(f"No batches expiring in the next {within_days} days.")
        return
    for entry in batches:
        b = entry.batch
        click.echo(
            f"{entry.status.upper():<9} {b.expiry_date.isoformat()}  {entry.days_remaining:>4}d  "
            f"{entry.product.sku:<20} {b.batch_number:<16} qty={b.quantity}"
        )
    critical = sum(1 for entry in batches if entry.status == inventory_service.EXPIRY_CRITICAL)
    click.echo(f"\n{len(batches)} batches expiring, {critical} critical")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
