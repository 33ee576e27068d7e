# Overview: Flask CLI command groups for bootstrap and scheduled maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create any missing tables (dev only; use `flask db upgrade` elsewhere).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Scheduled jobs:
# - python -m flask vouchers expire
#   Write one EXPIRED audit row per voucher past its expiry date (safe to rerun).
# - python -m flask idempotency purge
#   Delete checkout idempotency keys past their expiry.
#
# Operations:
# - python -m flask inventory adjust --product-id <id> --delta -3 --reference "Damaged in transit" [--user-id <id>]
#   Manual stock correction; appends an ADJUSTMENT movement.
# - python -m flask settings set-delivery 25000
#   Flat delivery charge in cents applied to every order.
# - python -m flask settings show-delivery

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import inventory_service, settings_service, voucher_audit_service
from .services.concurrency import atomic
from .validation import DomainError


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm dropping all data')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        raise click.ClickException("Refusing to reset without --yes")
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


@click.group('vouchers')
def vouchers_group():
    """Voucher jobs."""


@vouchers_group.command('expire')
@with_appcontext
def expire_vouchers():
    """Record EXPIRED audit events for vouchers past their expiry date."""
    processed = voucher_audit_service.process_expired_vouchers()
    click.echo(f"Processed {processed} expired vouchers.")


@click.group('idempotency')
def idempotency_group():
    """Checkout idempotency key maintenance."""


@idempotency_group.command('purge')
@with_appcontext
def purge_idempotency_keys():
    deleted = inventory_service.purge_expired_idempotency_keys()
    click.echo(f"Deleted {deleted} expired idempotency keys.")


@click.group('inventory')
def inventory_group():
    """Stock operations."""


@inventory_group.command('adjust')
@click.option('--product-id', required=True, help='Product id')
@click.option('--delta', type=int, required=True, help='Signed quantity change')
@click.option('--reference', required=True, help='Reason recorded on the movement')
@click.option('--user-id', default=None, help='Acting staff user id')
@with_appcontext
def adjust_inventory(product_id, delta, reference, user_id):
    """Apply a manual stock correction."""
    if delta == 0:
        raise click.ClickException("--delta must be non-zero")
    try:
        with atomic():
            movement = inventory_service.adjust_stock(
                product_id, delta, reference, performed_by_user_id=user_id
            )
            stock_after = movement.stock_after
    except DomainError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Adjusted {product_id} by {delta:+d}; stock is now {stock_after}")


@click.group('settings')
def settings_group():
    """Site settings used by checkout."""


@settings_group.command('set-delivery')
@click.argument('cents', type=int)
@with_appcontext
def set_delivery(cents):
    """Set the flat delivery charge in cents."""
    try:
        with atomic():
            settings_service.set_delivery_charge_cents(cents)
    except DomainError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Delivery charge set to {cents} cents")


@settings_group.command('show-delivery')
@with_appcontext
def show_delivery():
    click.echo(f"Delivery charge: {settings_service.get_delivery_charge_cents()} cents")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(vouchers_group)
    app.cli.add_command(idempotency_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(settings_group)
