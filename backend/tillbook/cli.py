# Overview: Flask CLI command groups for bootstrap, day operations and ledger checks.

# backend/tillbook/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use `flask db upgrade` for managed schemas).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Master data seeding:
# - python -m flask stores create --name "Main Store" --code MAIN [--currency QAR] [--timezone Asia/Qatar]
# - python -m flask stores list
# - python -m flask products create --sku SKU-1 --name "Water 500ml" --price-cents 300 [--cost-cents 150] [--stock 10]
# - python -m flask customers create --name "Jane" [--phone "+97455512345"] [--credit-limit-cents 50000]
#
# Day operations:
# - python -m flask day open --store-id 1 [--date 2024-01-01] [--opening-cash-cents 10000]
# - python -m flask day close --store-id 1 [--closing-cash-cents 25000]
# - python -m flask day status --store-id 1
#
# Credit ledger:
# - python -m flask credit verify [--customer-id 1]
#   Compare every stored balance to the sum of its ledger entries; exits 1 on drift.

import sys

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import ServiceError
from .models import Customer, Product, Store


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db_cli():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db_cli(yes):
    """
    DEV/TEST only: drop and recreate all tables.

    Example:
        flask system reset-db --yes
    """
    if not yes:
        click.echo("FAIL Refusing to reset without --yes")
        sys.exit(1)
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


@click.group('stores')
def stores_group():
    """Store management commands."""


@stores_group.command('create')
@click.option('--name', required=True, help='Store name')
@click.option('--code', required=True, help='Unique store code')
@click.option('--currency', default='QAR', show_default=True, help='Base currency (ISO 4217)')
@click.option('--timezone', 'tz_name', help='Business timezone, e.g. Asia/Qatar')
@with_appcontext
def create_store_cli(name, code, currency, tz_name):
    """
    Create a store.

    Example:
        flask stores create --name "Main Store" --code MAIN --timezone Asia/Qatar
    """
    if db.session.query(Store).filter_by(code=code).first():
        click.echo(f"FAIL Store code already exists: {code}")
        sys.exit(1)

    store = Store(
        name=name,
        code=code,
        base_currency=currency.upper(),
        settings={"timezone": tz_name} if tz_name else {},
    )
    db.session.add(store)
    db.session.commit()
    click.echo(f"PASS Created store: {store.code} - {store.name}")
    click.echo(f"   Store ID: {store.id}")


@stores_group.command('list')
@with_appcontext
def list_stores_cli():
    """List all stores with their business timezone."""
    from .services.day_service import resolve_store_timezone

    stores = db.session.query(Store).order_by(Store.id).all()
    if not stores:
        click.echo("No stores found")
        return
    for store in stores:
        status = "active" if store.is_active else "inactive"
        click.echo(f"{store.id:>4}  {store.code:<10} {store.name:<30} {resolve_store_timezone(store):<16} {status}")


@click.group('products')
def products_group():
    """Product seeding commands."""


@products_group.command('create')
@click.option('--sku', required=True)
@click.option('--name', required=True)
@click.option('--barcode')
@click.option('--price-cents', type=int, default=0, show_default=True)
@click.option('--cost-cents', type=int)
@click.option('--stock', type=int, default=0, show_default=True, help='Initial global stock')
@with_appcontext
def create_product_cli(sku, name, barcode, price_cents, cost_cents, stock):
    """Create a catalog product."""
    if db.session.query(Product).filter_by(sku=sku).first():
        click.echo(f"FAIL SKU already exists: {sku}")
        sys.exit(1)
    product = Product(
        sku=sku,
        name=name,
        barcode=barcode,
        price_cents=price_cents,
        cost_cents=cost_cents,
        stock=stock,
        quantity=stock,
    )
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product {product.id}: {product.sku} - {product.name}")


@click.group('customers')
def customers_group():
    """Customer seeding commands."""


@customers_group.command('create')
@click.option('--name', required=True)
@click.option('--phone')
@click.option('--email')
@click.option('--credit-limit-cents', type=int, default=0, show_default=True)
@with_appcontext
def create_customer_cli(name, phone, email, credit_limit_cents):
    """Create a customer with a zero credit balance."""
    customer = Customer(name=name, phone=phone, email=email, credit_limit_cents=credit_limit_cents)
    db.session.add(customer)
    db.session.commit()
    click.echo(f"PASS Created customer {customer.id}: {customer.name}")


@click.group('day')
def day_group():
    """Business-day operations."""


@day_group.command('open')
@click.option('--store-id', type=int, required=True)
@click.option('--date', 'day_date', help='YYYY-MM-DD (default: today in store timezone)')
@click.option('--opening-cash-cents', type=int, help='Default: previous day closing cash')
@with_appcontext
def open_day_cli(store_id, day_date, opening_cash_cents):
    """Open the business day for a store."""
    from .services import day_service

    try:
        day = day_service.open_day(store_id=store_id, date=day_date, opening_cash_cents=opening_cash_cents)
    except ServiceError as e:
        click.echo(f"FAIL {e.code}: {e.message}")
        sys.exit(1)
    click.echo(f"PASS Opened day {day.date} for store {store_id} (id={day.id})")
    click.echo(f"   Opening cash: {day.opening_cash_cents} cents")


@day_group.command('close')
@click.option('--store-id', type=int, required=True)
@click.option('--closing-cash-cents', type=int)
@with_appcontext
def close_day_cli(store_id, closing_cash_cents):
    """Close the currently open day for a store."""
    from .services import day_service

    day = day_service.get_open_day(store_id)
    if day is None:
        click.echo(f"FAIL No open day for store {store_id}")
        sys.exit(1)
    try:
        day = day_service.close_day(day_id=day.id, closing_cash_cents=closing_cash_cents)
    except ServiceError as e:
        click.echo(f"FAIL {e.code}: {e.message}")
        sys.exit(1)
    click.echo(f"PASS Closed day {day.date} for store {store_id}")
    click.echo(f"   Expected cash: {day.expected_cash_cents} cents")
    if day.cash_difference_cents is not None:
        click.echo(f"   Difference:    {day.cash_difference_cents} cents")


@day_group.command('status')
@click.option('--store-id', type=int, required=True)
@with_appcontext
def day_status_cli(store_id):
    """Show the open day and today's business date for a store."""
    from .services import day_service

    try:
        store = day_service.get_store(store_id)
    except ServiceError as e:
        click.echo(f"FAIL {e.message}")
        sys.exit(1)

    day = day_service.get_open_day(store_id)
    click.echo(f"Store {store.code}: business date {day_service.business_date(store)} "
               f"({day_service.resolve_store_timezone(store)})")
    if day is None:
        click.echo("   No open day")
    else:
        click.echo(f"   Open day {day.date}: {day.total_transactions} transactions, "
                   f"{day.total_sales_cents} cents")


@click.group('credit')
def credit_group():
    """Credit ledger checks."""


@credit_group.command('verify')
@click.option('--customer-id', type=int, help='Check one customer (default: all)')
@with_appcontext
def verify_credit_cli(customer_id):
    """
    Verify stored credit balances against the ledger.

    Example:
        flask credit verify
    """
    from .services import credit_service

    if customer_id:
        results = [credit_service.verify_balance(customer_id)]
    else:
        results = credit_service.verify_all_balances()

    drift = [r for r in results if not r["consistent"]]
    for r in drift:
        click.echo(
            f"FAIL Customer {r['customer_id']}: stored {r['stored_balance_cents']} "
            f"!= ledger {r['ledger_balance_cents']}"
        )
    if drift:
        sys.exit(1)
    click.echo(f"PASS {len(results)} customer balance(s) match the ledger")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stores_group)
    app.cli.add_command(products_group)
    app.cli.add_command(customers_group)
    app.cli.add_command(day_group)
    app.cli.add_command(credit_group)
