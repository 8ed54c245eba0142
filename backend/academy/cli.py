# Overview: Flask CLI commands (bootstrap, admin accounts, webhook ledger repair).
#
# Commands:
#   flask system init                  Create tables (dev only; use `flask db upgrade` in prod)
#   flask users create-admin EMAIL     Create an account on an admin email domain
#   flask webhooks pending             List webhook events that never finished processing
#   flask webhooks reprocess EVENT_ID  Re-fetch an event from Stripe and process it again

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import webhook_service
from .services.auth_service import PasswordValidationError, create_user, is_admin_email
from .services.email_service import get_mailer
from .services.stripe_gateway import PaymentGatewayError, get_gateway
from .validation import ConflictError, ValidationError


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create all tables for a fresh development database."""
    from . import models  # noqa: F401
    db.create_all()
    click.echo("PASS Database tables created")


@click.group('users')
def users_group():
    """Account management."""


@users_group.command('create-admin')
@click.argument('email')
@click.option('--name', 'full_name', default=None, help='Display name')
@click.password_option()
@with_appcontext
def create_admin(email, full_name, password):
    """Create an admin account (email must be on an admin domain)."""
    if not is_admin_email(email):
        raise click.ClickException("Email is not on an admin domain (see ADMIN_EMAIL_DOMAINS)")
    try:
        user = create_user(email=email, password=password, full_name=full_name)
    except (PasswordValidationError, ValidationError, ConflictError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created admin {user.email} (ID: {user.id})")


@click.group('webhooks')
def webhooks_group():
    """Webhook ledger inspection and repair."""


@webhooks_group.command('pending')
@click.option('--limit', type=int, default=100, show_default=True)
@with_appcontext
def pending_webhooks(limit):
    """List received webhook events that were never marked processed."""
    events = webhook_service.list_unprocessed_events(limit=limit)
    if not events:
        click.echo("No unprocessed webhook events.")
        return
    for event in events:
        click.echo(
            f"{event.stripe_event_id}  {event.event_type}  received={event.to_dict()['created_at']}"
            f"  error={event.last_error or '-'}"
        )


@webhooks_group.command('reprocess')
@click.argument('event_id')
@with_appcontext
def reprocess_webhook(event_id):
    """
    Fetch EVENT_ID from Stripe and run it through the webhook pipeline.

    Already-processed events are reported as duplicates and left alone.
    """
    gateway = get_gateway()
    try:
        event = gateway.retrieve_event(event_id)
    except PaymentGatewayError as e:
        raise click.ClickException(str(e))

    try:
        result = webhook_service.process_event(event, gateway=gateway, mailer=get_mailer())
    except webhook_service.WebhookError as e:
        raise click.ClickException(f"Reprocessing failed: {e}")

    if result.duplicate:
        click.echo(f"SKIP {event_id} was already processed")
    elif not result.processed:
        click.echo(f"FAIL {event_id}: {result.message}")
    else:
        click.echo(f"PASS {event_id} processed (payment_id={result.payment_id})")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(webhooks_group)
