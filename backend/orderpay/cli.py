# Overview: Flask CLI command groups for bootstrap, reconciliation workers, and maintenance.

# backend/orderpay/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to "orderpay:create_app" (PowerShell: $env:FLASK_APP="orderpay:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use Flask-Migrate for upgrades).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Order seeding:
# - python -m flask orders seed --variants 3 --stock 10 --expires-in-minutes 60
#   Create catalog variants and one pending order over them (checkout stand-in).
# - python -m flask orders show 1
#   Print an order with its payments, stock movements and history.
#
# Reconciliation workers:
# - python -m flask workers list
#   List workers with their configured intervals.
# - python -m flask workers run-once expiry_sweep
#   Run one tick of a worker and print its summary.
# - python -m flask workers serve [--only expiry_sweep --only refund_sync]
#   Run ticker threads in the foreground until Ctrl+C.
#
# Maintenance:
# - python -m flask maintenance cleanup-payment-attempts --retention-hours 24
#   Delete payment attempt rows older than the retention window.

import json
import time

import click
from datetime import timedelta
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import ProductVariant
from .services import maintenance_service, order_service
from .services.scheduler import WORKERS, WorkerScheduler, run_worker_once
from .time_utils import utcnow


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Tables created.")


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


# =============================================================================
# ORDERS
# =============================================================================

@click.group('orders')
def orders_group():
    """Order seeding and inspection."""


@orders_group.command('seed')
@click.option('--variants', type=int, default=2, show_default=True, help='Number of variants to create')
@click.option('--stock', type=int, default=10, show_default=True, help='Base stock per variant')
@click.option('--quantity', type=int, default=1, show_default=True, help='Quantity per order line')
@click.option('--price-cents', type=int, default=10000, show_default=True)
@click.option('--expires-in-minutes', type=int, default=None, help='Defaults to ORDER_PAYMENT_WINDOW_MINUTES')
@with_appcontext
def seed_order(variants, stock, quantity, price_cents, expires_in_minutes):
    """Create variants and a pending order over them."""
    created = []
    for i in range(variants):
        variant = ProductVariant(name=f"Seed Variant {i + 1}", base_stock=stock)
        db.session.add(variant)
        created.append(variant)
    db.session.commit()

    expires_at = None
    if expires_in_minutes is not None:
        expires_at = utcnow() + timedelta(minutes=expires_in_minutes)

    order_id = order_service.create_pending_order(
        [{"variant_id": v.id, "quantity": quantity, "unit_price_cents": price_cents} for v in created],
        expires_at=expires_at,
    )
    click.echo(f"PASS Created order {order_id} with {len(created)} line(s)")


@orders_group.command('show')
@click.argument('order_id', type=int)
@with_appcontext
def show_order(order_id):
    """Print an order as JSON."""
    detail = order_service.get_order_detail(order_id)
    if detail is None:
        click.echo(f"FAIL Order {order_id} not found")
        return
    click.echo(json.dumps(detail, indent=2))


# =============================================================================
# WORKERS
# =============================================================================

@click.group('workers')
def workers_group():
    """Reconciliation worker commands."""


@workers_group.command('list')
@with_appcontext
def list_workers():
    """List workers and intervals."""
    click.echo("\n" + "="*80)
    click.echo(f"{'Name':<20} {'Interval (s)':<14} {'Description'}")
    click.echo("="*80)
    for spec in WORKERS.values():
        interval = current_app.config[spec.interval_config_key]
        click.echo(f"{spec.name:<20} {interval:<14} {spec.description}")
    click.echo("="*80 + "\n")


@workers_group.command('run-once')
@click.argument('name', type=click.Choice(sorted(WORKERS)))
@with_appcontext
def run_once(name):
    """Run one tick of a worker."""
    result = run_worker_once(current_app._get_current_object(), name)
    click.echo(json.dumps(result.to_dict()))


@workers_group.command('serve')
@click.option('--only', 'names', multiple=True, type=click.Choice(sorted(WORKERS)),
              help='Run only these workers (repeatable)')
@with_appcontext
def serve_workers(names):
    """Run worker tickers in the foreground."""
    app = current_app._get_current_object()
    scheduler = WorkerScheduler(app, list(names) or None)
    scheduler.start()
    click.echo(f"START Workers running: {', '.join(t.spec.name for t in scheduler.tickers)} (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nSTOP Stopping workers...")
    finally:
        scheduler.stop()


# =============================================================================
# MAINTENANCE
# =============================================================================

@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-payment-attempts')
@click.option('--retention-hours', type=int, default=24, show_default=True)
@with_appcontext
def cleanup_payment_attempts_cli(retention_hours):
    """
    Delete payment attempt rows older than the retention window.
    """
    deleted = maintenance_service.cleanup_payment_attempts(retention_hours=retention_hours)
    click.echo(f"PASS Deleted {deleted} payment attempt(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(workers_group)
    app.cli.add_command(maintenance_group)
