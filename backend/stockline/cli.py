# Overview: Flask CLI command groups for bootstrap, user management and outbox draining.

# backend/stockline/cli.py
# Commands Legend (run from the backend directory, FLASK_APP=wsgi.py):
#
# - flask system init-db
#   Create all tables (idempotent). Use `flask db upgrade` for migrated databases.
# - flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - flask users create --username admin --email admin@stockline.local --password "Password123!" --role ADMIN
#   Create a staff user (prompts if options are omitted).
# - flask users list
# - flask events push [--limit 100]
#   Emit notification events that were not dispatched after their transaction.

import click
from flask.cli import with_appcontext

from .errors import DomainError
from .extensions import db
from .models import User
from .models.auth import ROLES
from .services.auth_service import create_user
from .services import notification_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database schema ready.")


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

    click.echo("PASS Database reset complete. Run 'flask users create' to add an admin.")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(ROLES, case_sensitive=False), prompt=True, help='Role')
@click.option('--first-name', default=None, help='First name')
@click.option('--last-name', default=None, help='Last name')
@with_appcontext
def create_user_cli(username, email, password, role, first_name, last_name):
    """
    Create a staff user.

    Password must be 8+ chars with uppercase, lowercase, digit and special char.
    """
    try:
        user = create_user(
            username=username,
            email=email,
            password=password,
            role=role.upper(),
            first_name=first_name,
            last_name=last_name,
        )
    except DomainError as e:
        raise click.ClickException(f"Failed to create user: {e.message}")

    click.echo(f"PASS Created user: {user.username} ({user.email}) with role '{user.role}'")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id.asc()).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Username':<20} {'Email':<30} {'Active':<8} {'Role'}")
    click.echo("="*80)

    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {user.email:<30} {active_str:<8} {user.role}")

    click.echo("="*80 + "\n")


@click.group('events')
def events_group():
    """Notification outbox commands."""


@events_group.command('push')
@click.option('--limit', type=int, default=100, show_default=True, help='Maximum events to emit')
@with_appcontext
def push_events(limit):
    """Emit undispatched outbox events to the configured relay."""
    pending = notification_service.pending_count()
    if not pending:
        click.echo("No pending events.")
        return

    sent = notification_service.dispatch_pending(limit=limit)
    remaining = notification_service.pending_count()
    click.echo(f"Dispatched {sent} event(s); {remaining} still pending.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(events_group)
