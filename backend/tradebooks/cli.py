# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/tradebooks/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Engine bootstrap:
# - python -m flask engine init
#   Idempotent: creates the INVENTORY, SALES and CASH control accounts.
# - python -m flask engine reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Master data:
# - python -m flask masters add-item --code PARA500 --name "Paracetamol 500" --sale-price 1200 --purchase-price 900 --tax-rate 1800
# - python -m flask masters add-customer --code C001 --name "City Pharmacy" --credit-limit 5000000
# - python -m flask masters add-supplier --code S001 --name "Acme Labs"
#
# Stock:
# - python -m flask stock low [--as-of 2026-03-31T23:59:59Z]
#   Active items at or below their minimum stock.
# - python -m flask stock expiring --within-days 30
#   Batches still in stock that expire within the window.
# - python -m flask stock rebuild-projection [--item-id 3]
#   Recompute cached current_stock from the movement log.
#
# Ledger:
# - python -m flask ledger verify
#   Exit non-zero if any reference or the ledger as a whole is unbalanced.
# - python -m flask ledger trial-balance [--as-of 2026-03-31T23:59:59Z]

import click
from flask.cli import with_appcontext

from .errors import EngineError
from .extensions import db
from .services import accounting_service, masters_service, stock_service
from .time_utils import parse_iso_datetime


def _as_of(raw):
    try:
        return parse_iso_datetime(raw)
    except ValueError as exc:
        raise click.BadParameter("must be an ISO-8601 datetime") from exc


def _cents(value: int) -> str:
    return f"{value / 100:,.2f}"


@click.group('engine')
def engine_group():
    """Engine bootstrap commands."""


@engine_group.command('init')
@with_appcontext
def init_engine():
    """Create the control accounts the posting rules need."""
    accounts = masters_service.ensure_control_accounts()
    db.session.commit()
    for account in accounts:
        click.echo(f"PASS {account.code:<10} {account.name:<12} nature={account.nature} (ID: {account.id})")


@engine_group.command('reset-db')
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

    click.echo("PASS Database reset complete. Run 'python -m flask engine init' to initialize.")


# =============================================================================
# MASTER DATA
# =============================================================================

@click.group('masters')
def masters_group():
    """Item and party master data."""


@masters_group.command('add-item')
@click.option('--code', required=True)
@click.option('--name', required=True)
@click.option('--unit', default='pcs', show_default=True)
@click.option('--sale-price', 'sale_price_cents', type=int, help='Default sale price in cents')
@click.option('--purchase-price', 'purchase_price_cents', type=int, help='Default purchase price in cents')
@click.option('--tax-rate', 'tax_rate_bps', type=int, default=0, show_default=True, help='GST rate in basis points')
@click.option('--min-stock', type=int, default=0, show_default=True)
@with_appcontext
def add_item_cli(code, name, unit, sale_price_cents, purchase_price_cents, tax_rate_bps, min_stock):
    try:
        item = masters_service.create_item(
            code=code,
            name=name,
            unit=unit,
            sale_price_cents=sale_price_cents,
            purchase_price_cents=purchase_price_cents,
            tax_rate_bps=tax_rate_bps,
            min_stock=min_stock,
        )
    except EngineError as exc:
        raise click.ClickException(f"{exc.message} {exc.details.get('errors', '')}".strip())
    click.echo(f"PASS Created item {item.code} (ID: {item.id})")


@masters_group.command('add-customer')
@click.option('--code', required=True)
@click.option('--name', required=True)
@click.option('--credit-limit', 'credit_limit_cents', type=int, help='Credit limit in cents (0 = none)')
@click.option('--terms', 'payment_terms_days', type=int, help='Payment terms in days')
@with_appcontext
def add_customer_cli(code, name, credit_limit_cents, payment_terms_days):
    try:
        customer = masters_service.create_customer(
            code=code,
            name=name,
            credit_limit_cents=credit_limit_cents,
            payment_terms_days=payment_terms_days,
        )
    except EngineError as exc:
        raise click.ClickException(f"{exc.message} {exc.details.get('errors', '')}".strip())
    click.echo(f"PASS Created customer {customer.code} (ID: {customer.id})")


@masters_group.command('add-supplier')
@click.option('--code', required=True)
@click.option('--name', required=True)
@click.option('--terms', 'payment_terms_days', type=int, help='Payment terms in days')
@with_appcontext
def add_supplier_cli(code, name, payment_terms_days):
    try:
        supplier = masters_service.create_supplier(code=code, name=name, payment_terms_days=payment_terms_days)
    except EngineError as exc:
        raise click.ClickException(f"{exc.message} {exc.details.get('errors', '')}".strip())
    click.echo(f"PASS Created supplier {supplier.code} (ID: {supplier.id})")


# =============================================================================
# STOCK
# =============================================================================

@click.group('stock')
def stock_group():
    """Stock ledger inspection and repair."""


@stock_group.command('low')
@click.option('--as-of', 'as_of', help='ISO-8601 cut-off (inclusive)')
@with_appcontext
def low_stock_cli(as_of):
    rows = stock_service.low_stock_items(_as_of(as_of))
    if not rows:
        click.echo("PASS No items at or below minimum stock")
        return
    click.echo(f"{'ID':<6} {'Code':<14} {'On hand':>8} {'Min':>6} {'Short':>6}  Name")
    click.echo("-" * 60)
    for row in rows:
        click.echo(
            f"{row['item_id']:<6} {row['code']:<14} {row['on_hand']:>8} "
            f"{row['min_stock']:>6} {row['shortfall']:>6}  {row['name']}"
        )


@stock_group.command('expiring')
@click.option('--within-days', type=int, default=0, show_default=True)
@with_appcontext
def expiring_cli(within_days):
    rows = stock_service.expiring_batches(within_days)
    if not rows:
        click.echo("PASS No expiring batches in stock")
        return
    for row in rows:
        flag = "EXPIRED" if row["is_expired"] else "expiring"
        click.echo(
            f"item={row['item_id']} batch={row['batch_number']} expiry={row['expiry_date']} "
            f"on_hand={row['on_hand']} {flag}"
        )


@stock_group.command('rebuild-projection')
@click.option('--item-id', type=int, help='Rebuild a single item (default: all)')
@with_appcontext
def rebuild_projection_cli(item_id):
    """Recompute Item.current_stock from the movement log."""
    changed = stock_service.rebuild_projection(item_id)
    if not changed:
        click.echo("PASS Projection already matches the movement log")
        return
    for row in changed:
        click.echo(f"FIXED item={row['item_id']} cached={row['cached']} -> ledger={row['ledger']}")
    click.echo(f"PASS Rebuilt {len(changed)} item(s)")


# =============================================================================
# LEDGER
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Accounting ledger verification and reports."""


@ledger_group.command('verify')
@with_appcontext
def verify_ledger_cli():
    """Check debit/credit symmetry per reference and globally."""
    unbalanced = accounting_service.unbalanced_references()
    trial = accounting_service.trial_balance()
    for row in unbalanced:
        click.echo(
            f"FAIL {row['reference_type']}:{row['reference_id']} "
            f"debits={row['debit_cents']} credits={row['credit_cents']}"
        )
    if unbalanced or not trial["is_balanced"]:
        raise click.ClickException(
            f"Ledger unbalanced: debits={trial['total_debit_cents']} credits={trial['total_credit_cents']}"
        )
    click.echo(
        f"PASS Ledger balanced: debits = credits = {_cents(trial['total_debit_cents'])} "
        f"across {len(trial['accounts'])} account(s)"
    )


@ledger_group.command('trial-balance')
@click.option('--as-of', 'as_of', help='ISO-8601 cut-off (inclusive)')
@with_appcontext
def trial_balance_cli(as_of):
    trial = accounting_service.trial_balance(_as_of(as_of))
    click.echo(f"{'Account':<20} {'Debit':>14} {'Credit':>14}")
    click.echo("-" * 50)
    for row in trial["accounts"]:
        label = f"{row['account_type']}:{row['account_id']}"
        click.echo(f"{label:<20} {_cents(row['debit_cents']):>14} {_cents(row['credit_cents']):>14}")
    click.echo("-" * 50)
    click.echo(f"{'TOTAL':<20} {_cents(trial['total_debit_cents']):>14} {_cents(trial['total_credit_cents']):>14}")
    click.echo("PASS Balanced" if trial["is_balanced"] else "FAIL Unbalanced")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(engine_group)
    app.cli.add_command(masters_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(ledger_group)
