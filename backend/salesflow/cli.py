# Overview: Flask CLI command groups for bootstrap and stock/order maintenance.

# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Use: flask --app salesflow <group> <command> [options]
#
# System bootstrap:
# - flask --app salesflow system init-db
#   Create all tables (use `flask db upgrade` for migrated databases).
#
# Stock integrity:
# - flask --app salesflow stock audit
#   List products whose counter disagrees with the ledger or that have orphaned movements.
# - flask --app salesflow stock clean-orphans --yes
#   Delete orphaned movements, then print the audit again.
# - flask --app salesflow stock align 12 --actor ana --reason "Shelf count 2024-05-02"
#   Set a product's counter to its calculated stock (explicit, never automatic).
#
# Orders:
# - flask --app salesflow orders repair-markers [--order-id 7]
#   Backfill completion markers missing on orders already past a stage.

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services import fulfillment_service, reconciliation_service
from .services.concurrency import ConcurrencyConflict, run_with_retry
from .services.order_service import OrderNotFound
from .services.stock_ledger_service import StockLedgerError


def _retry(func):
    return run_with_retry(
        func,
        attempts=current_app.config.get("CLI_RETRY_ATTEMPTS", 3),
        backoff_base=current_app.config.get("CLI_RETRY_BACKOFF", 0.1),
    )


def _echo_integrity(rows):
    if not rows:
        click.echo("PASS Stock counters match the ledger; no orphaned movements.")
        return
    click.echo(f"WARN {len(rows)} product(s) need attention:")
    for row in rows:
        click.echo(
            f"  #{row.product_id} {row.product_name}: system={row.system_stock} "
            f"calculated={row.calculated_stock} difference={row.difference} "
            f"in={row.total_entries} out={row.total_exits} orphans={row.orphaned_movement_count}"
        )


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("PASS Database tables created.")


@click.group('stock')
def stock_group():
    """Stock ledger integrity commands."""


@stock_group.command('audit')
@with_appcontext
def stock_audit():
    """Compare every product counter with its ledger."""
    _echo_integrity(reconciliation_service.compute_integrity())


@stock_group.command('clean-orphans')
@click.option('--yes', is_flag=True, help='Confirm deletion of orphaned movements')
@with_appcontext
def clean_orphans(yes):
    """Delete orphaned movements and re-run the audit."""
    if not yes:
        raise click.UsageError("Refusing to delete ledger rows without --yes")
    try:
        result = _retry(reconciliation_service.clean_orphaned_movements)
    except ConcurrencyConflict as exc:
        raise click.ClickException(str(exc))
    click.echo(
        f"PASS Deleted {result.deleted_count} orphaned movement(s) "
        f"totalling {result.total_quantity} unit(s)."
    )
    _echo_integrity(reconciliation_service.compute_integrity())


@stock_group.command('align')
@click.argument('product_id', type=int)
@click.option('--actor', required=True, help='Who is aligning the counter')
@click.option('--reason', required=True, help='Justification recorded in the log')
@with_appcontext
def align_stock(product_id, actor, reason):
    """Set PRODUCT_ID's counter to its calculated stock."""
    try:
        result = _retry(
            lambda: reconciliation_service.align_stock_to_ledger(product_id, actor, reason)
        )
    except (StockLedgerError, ConcurrencyConflict) as exc:
        raise click.ClickException(str(exc))
    click.echo(
        f"PASS Product {result['product_id']} stock {result['previous_stock']} -> {result['new_stock']}"
    )


@click.group('orders')
def orders_group():
    """Order maintenance commands."""


@orders_group.command('repair-markers')
@click.option('--order-id', type=int, default=None, help='Only repair this order')
@with_appcontext
def repair_markers(order_id):
    """Backfill completion markers with each order's creator and creation time."""
    try:
        repaired = _retry(lambda: fulfillment_service.repair_completion_markers(order_id))
    except (OrderNotFound, ConcurrencyConflict) as exc:
        raise click.ClickException(str(exc))
    if not repaired:
        click.echo("PASS No missing markers.")
        return
    for entry in repaired:
        click.echo(f"FIXED order {entry['order_id']}: {', '.join(entry['stages'])}")
    click.echo(f"PASS Repaired {len(repaired)} order(s).")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(orders_group)
