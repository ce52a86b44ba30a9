# Overview: Flask CLI command groups for checkout maintenance, subscription inspection and gateway checks.

# backend/paycore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Checkout maintenance:
# - python -m flask checkout expire-stale [--hours 48]
#   Cancel pending checkout sessions older than the TTL (run from cron).
# - python -m flask checkout show TXN_...
#   Show a checkout session and its audit trail.
#
# Subscription inspection:
# - python -m flask subscriptions expiring [--days 7]
#   List active subscriptions ending soon.
# - python -m flask subscriptions status acme
#   Show a tenant's subscription with its dynamic status.
#
# Gateway:
# - python -m flask gateway show [--scope system]
#   Show which credentials a scope resolves to (password never printed).
# - python -m flask gateway test [--scope system]
#   Probe the gateway validator API with the resolved credentials.

import click
from flask.cli import with_appcontext

from .services import checkout_service, gateway_settings_service, subscription_service
from .services.checkout_service import CheckoutNotFoundError
from .services.gateway_client import GatewayUnavailable
from .services.gateway_settings_service import ConfigurationMissing
from .time_utils import to_utc_z
from .validation import cents_to_amount


@click.group('checkout')
def checkout_group():
    """Checkout session maintenance."""


@checkout_group.command('expire-stale')
@click.option('--hours', type=int, default=None, help='Age threshold (default CHECKOUT_PENDING_TTL_HOURS)')
@with_appcontext
def expire_stale_cli(hours):
    """
    Cancel stale pending checkout sessions.

    Example:
        flask checkout expire-stale
        flask checkout expire-stale --hours 24
    """
    expired = checkout_service.expire_stale_sessions(hours)
    click.echo(f"Expired {expired} pending checkout session(s).")


@checkout_group.command('show')
@click.argument('transaction_id')
@with_appcontext
def show_checkout_cli(transaction_id):
    """Show a checkout session and its audit trail."""
    try:
        session = checkout_service.get_checkout_session(transaction_id)
        events = checkout_service.list_session_events(transaction_id)
    except CheckoutNotFoundError as e:
        raise click.ClickException(str(e))

    click.echo(f"Transaction: {session['transaction_id']}")
    click.echo(f"Plan:        {session['plan_id']} ({session['plan_name']})")
    click.echo(f"Amount:      {cents_to_amount(session['plan_price_cents'])} {session['currency']}")
    click.echo(f"Status:      {session['status']}")
    if session['error']:
        click.echo(f"Error:       {session['error']}")
    click.echo(f"Paid detail: {'yes' if session['has_payment_details'] else 'no'}")

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<6} {'Occurred':<22} {'Event':<20} {'Source':<9} {'Note'}")
    click.echo("="*90)
    for event in events:
        click.echo(
            f"{event.id:<6} {str(to_utc_z(event.occurred_at)):<22} {event.event_type:<20} "
            f"{event.source:<9} {event.note or '-'}"
        )
    click.echo("="*90 + "\n")


@click.group('subscriptions')
def subscriptions_group():
    """Subscription inspection commands."""


@subscriptions_group.command('expiring')
@click.option('--days', type=int, default=7, show_default=True)
@with_appcontext
def expiring_cli(days):
    """
    List active subscriptions whose period ends within --days.

    Example:
        flask subscriptions expiring --days 3
    """
    subs = subscription_service.list_expiring(days)
    if not subs:
        click.echo("No subscriptions expiring.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'Subscription':<28} {'Tenant':<20} {'Plan':<12} {'Ends':<22} {'Days'}")
    click.echo("="*90)
    for sub in subs:
        dynamic = subscription_service.compute_dynamic_status(sub)
        click.echo(
            f"{sub.subscription_id:<28} {sub.tenant_id:<20} {sub.plan_id:<12} "
            f"{to_utc_z(sub.current_period_end):<22} {dynamic.days_remaining}"
        )
    click.echo("="*90 + "\n")


@subscriptions_group.command('status')
@click.argument('tenant_id')
@with_appcontext
def tenant_status_cli(tenant_id):
    """Show a tenant's subscription with its dynamic status."""
    sub = subscription_service.get_tenant_subscription(tenant_id)
    if not sub:
        raise click.ClickException(f"No subscription for tenant {tenant_id}")

    dynamic = subscription_service.compute_dynamic_status(sub)
    click.echo(f"Subscription: {sub.subscription_id} (plan {sub.plan_id}, {sub.billing_cycle_months} month cycle)")
    click.echo(f"Stored:       {sub.status}")
    click.echo(f"Effective:    {dynamic.status}")
    click.echo(f"Period:       {to_utc_z(sub.current_period_start)} -> {to_utc_z(sub.current_period_end)}")
    click.echo(f"Grace until:  {to_utc_z(sub.grace_period_ends_at)}")
    click.echo(f"Days left:    {dynamic.days_remaining}")
    click.echo(f"Total paid:   {cents_to_amount(sub.total_paid_cents)} {sub.currency} ({sub.renewal_count} renewals)")


@click.group('gateway')
def gateway_group():
    """Payment gateway configuration commands."""


@gateway_group.command('show')
@click.option('--scope', default='system', show_default=True)
@with_appcontext
def show_gateway_cli(scope):
    """Show which credentials a scope resolves to."""
    credentials = gateway_settings_service.resolve_gateway_credentials(scope)
    click.echo(f"Scope:    {scope}")
    click.echo(f"Enabled:  {credentials.enabled}")
    click.echo(f"Source:   {credentials.source}")
    click.echo(f"Live:     {credentials.is_live}")
    click.echo(f"Store ID: {credentials.store_id or '-'}")


@gateway_group.command('test')
@click.option('--scope', default='system', show_default=True)
@with_appcontext
def test_gateway_cli(scope):
    """Probe the gateway validator API with the resolved credentials."""
    try:
        result = gateway_settings_service.test_connection(scope)
    except ConfigurationMissing as e:
        raise click.ClickException(str(e))
    except GatewayUnavailable as e:
        raise click.ClickException(f"Gateway unreachable: {e}")

    if not result["success"]:
        raise click.ClickException(f"{result['error']} (status={result['gateway_status']})")

    mode = "live" if result["is_live"] else "sandbox"
    click.echo(f"Reached {result['base_url']} ({mode}, credentials from {result['source']}).")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(checkout_group)
    app.cli.add_command(subscriptions_group)
    app.cli.add_command(gateway_group)
