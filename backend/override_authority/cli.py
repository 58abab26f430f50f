# Overview: Flask CLI command groups for bootstrap, PIN provisioning and override maintenance.

# backend/override_authority/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (use `flask db upgrade` for migrated deployments).
# - python -m flask system seed-thresholds
#   Create the default override thresholds and approval ladders (idempotent).
#
# Users:
# - python -m flask users create --username jdoe --password "Password123" --role manager
#   Create a staff account (prompts if options are omitted).
#
# Manager PINs:
# - python -m flask pins set --user-id 2 --level manager [--max-daily 20] [--valid-until 2025-12-31T23:59Z]
#   Create or rotate a manager PIN (prompts for the PIN).
# - python -m flask pins list
#   List active manager PINs (hashes are never shown).
#
# Overrides maintenance:
# - python -m flask overrides expire-requests
#   Mark pending override requests past their expiry as expired.
# - python -m flask overrides unlock --origin pin:10.0.0.5
#   Clear a PIN lockout (keys: pin:<ip>, pin-user:<user id>, request:<id>, login:<username>).
# - python -m flask overrides lockout-status --origin pin:10.0.0.5
#   Show the lockout state of a key.
# - python -m flask overrides prune-lockouts
#   Delete counters whose window and lockout have lapsed.

import click
from flask.cli import with_appcontext

from .errors import OverrideError
from .extensions import db
from .levels import ApprovalLevel, CallerRole
from .services import auth_service, credential_service, request_service, threshold_service
from .services.rate_limit_service import get_rate_limiter
from .time_utils import parse_iso_datetime


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    click.echo("BUILD  Creating tables...")
    db.create_all()
    click.echo("PASS Database ready. Run 'python -m flask system seed-thresholds' next.")


@system_group.command('seed-thresholds')
@with_appcontext
def seed_thresholds():
    """Create default thresholds; scopes that already have one are skipped."""
    created = threshold_service.seed_default_thresholds()
    total = len(threshold_service.DEFAULT_THRESHOLDS)
    click.echo(f"PASS Created {created} thresholds ({total - created} already present)")


@click.group('users')
def users_group():
    """Staff account commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice([r.value for r in CallerRole]), prompt=True, help='Role')
@click.option('--first-name', default=None, help='First name')
@click.option('--last-name', default=None, help='Last name')
@click.option('--email', default=None, help='Email address')
@with_appcontext
def create_user_cli(username, password, role, first_name, last_name, email):
    """
    Create a staff account.

    Password must be 8+ characters with at least one letter and one digit.
    """
    try:
        user = auth_service.create_user(
            username=username,
            password=password,
            role=role,
            email=email,
            first_name=first_name,
            last_name=last_name,
        )
    except OverrideError as e:
        raise click.ClickException(f"FAIL Failed to create user: {e.message}")

    click.echo(f"PASS Created user: {user.username} (ID: {user.id}) with role '{user.role}'")
    click.echo("SECURITY Password securely hashed with bcrypt")


@click.group('pins')
def pins_group():
    """Manager PIN commands."""


@pins_group.command('set')
@click.option('--user-id', type=int, required=True, help='Manager user ID')
@click.option('--level', type=click.Choice([level.value for level in ApprovalLevel]), required=True,
              help='Approval level')
@click.option('--pin', prompt=True, hide_input=True, confirmation_prompt=True, help='4-6 digit PIN')
@click.option('--max-daily', type=int, default=None, help='Daily override cap')
@click.option('--valid-until', default=None, help='ISO-8601 expiry')
@with_appcontext
def set_pin_cli(user_id, level, pin, max_daily, valid_until):
    """Create or rotate a manager PIN. The previous active PIN is deactivated."""
    try:
        valid_until_dt = parse_iso_datetime(valid_until) if valid_until else None
    except ValueError:
        raise click.BadParameter("must be an ISO-8601 datetime", param_hint="--valid-until")

    try:
        record = credential_service.set_manager_pin(
            user_id,
            pin,
            level,
            max_daily_overrides=max_daily,
            valid_until=valid_until_dt,
        )
    except OverrideError as e:
        raise click.ClickException(f"FAIL Failed to set PIN: {e.message}")

    click.echo(f"PASS PIN set for user {user_id} at level '{record.approval_level}' (PIN ID: {record.id})")
    if record.max_daily_overrides:
        click.echo(f"     Daily cap: {record.max_daily_overrides}")
    if record.valid_until:
        click.echo(f"     Valid until: {valid_until}")


@pins_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive PINs')
@with_appcontext
def list_pins_cli(include_inactive):
    """List manager PINs."""
    pins = credential_service.list_manager_pins(include_inactive)
    if not pins:
        click.echo("No manager PINs found.")
        return

    click.echo(f"\n{'ID':<6} {'User':<6} {'Manager':<24} {'Level':<14} {'Active':<8} {'Cap'}")
    click.echo("-" * 70)
    for pin in pins:
        cap = pin["max_daily_overrides"] if pin["max_daily_overrides"] is not None else "-"
        click.echo(
            f"{pin['id']:<6} {pin['user_id']:<6} {str(pin['manager_name'])[:24]:<24} "
            f"{pin['approval_level']:<14} {str(pin['is_active']):<8} {cap}"
        )


@click.group('overrides')
def overrides_group():
    """Override request and lockout maintenance."""


@overrides_group.command('expire-requests')
@with_appcontext
def expire_requests_cli():
    """Mark stale pending requests as expired."""
    count = request_service.expire_stale_requests()
    click.echo(f"PASS Expired {count} override requests")


@overrides_group.command('unlock')
@click.option('--origin', required=True, help='Lockout key, e.g. pin:10.0.0.5 or pin-user:7')
@with_appcontext
def unlock_cli(origin):
    """Clear failed attempts and any lockout for a key."""
    get_rate_limiter().reset(origin)
    click.echo(f"PASS Cleared lockout for {origin}")


@overrides_group.command('lockout-status')
@click.option('--origin', required=True, help='Lockout key')
@with_appcontext
def lockout_status_cli(origin):
    status = get_rate_limiter().get_lockout_status(origin)
    state = "LOCKED" if status["locked"] else "open"
    click.echo(f"{origin}: {state}, {status['failed_attempts']}/{status['max_attempts']} failed attempts")
    if status["locked"]:
        click.echo(f"     Locked until {status['locked_until']} ({status['seconds_until_unlock']}s)")


@overrides_group.command('prune-lockouts')
@with_appcontext
def prune_lockouts_cli():
    """Forget lapsed failed-attempt counters."""
    removed = get_rate_limiter().prune()
    click.echo(f"PASS Pruned {removed} lapsed lockout counters")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(pins_group)
    app.cli.add_command(overrides_group)
