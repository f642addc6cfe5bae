# Overview: Flask CLI command groups for bootstrap, user provisioning and maintenance.

# backend/stagetrack/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init [--admin-name "Admin" --admin-email admin@stagetrack.local]
#   Idempotent: creates tables, seeds stage thresholds and holiday settings,
#   and creates the first admin if no users exist.
#
# Users (tokens are the only credential; there are no passwords):
# - python -m flask users list
# - python -m flask users create --name "Dana" --email dana@example.com --role AGENT
# - python -m flask users issue-token --email dana@example.com [--ttl-hours 24]
#   Prints a bearer token once. It is stored hashed and cannot be shown again.
#
# Thresholds and ETAs:
# - python -m flask thresholds list [--date 2024-11-15]
# - python -m flask etas recalculate

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User, ROLE_ADMIN, VALID_ROLES
from .services import session_service, threshold_service
from .services.session_service import SYSTEM_ACTOR
from .validation import StageTrackError
from .time_utils import parse_iso_datetime


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@click.option('--admin-name', default='Admin', help='Display name for the first admin')
@click.option('--admin-email', default='admin@stagetrack.local', help='Email for the first admin')
@with_appcontext
def init_system(admin_name, admin_email):
    """
    Initialize StageTrack: tables, default thresholds, holiday settings, first admin.

    Safe to run repeatedly; existing rows are left alone.
    """
    click.echo("START Initializing StageTrack...")

    db.create_all()
    click.echo("PASS Tables ready")

    created = threshold_service.initialize_thresholds(SYSTEM_ACTOR)
    click.echo(f"PASS Seeded {len(created)} stage thresholds")

    if db.session.query(User).count() == 0:
        try:
            user = session_service.create_user(admin_name, admin_email, ROLE_ADMIN)
        except StageTrackError as e:
            raise click.ClickException(str(e))
        click.echo(f"PASS Created admin: {user.name} ({user.email})")
        click.echo("     Issue a token with: flask users issue-token --email " + user.email)
    else:
        click.echo("WARN  Users already exist, skipping admin creation")

    click.echo("DONE StageTrack initialized")


@click.group('users')
def users_group():
    """Staff user provisioning."""


@users_group.command('list')
@with_appcontext
def list_users():
    users = session_service.list_users()
    if not users:
        click.echo("No users.")
        return
    for u in users:
        status = "active" if u.is_active else "inactive"
        click.echo(f"{u.id:>4}  {u.role:<6}  {status:<8}  {u.name} <{u.email}>")


@users_group.command('create')
@click.option('--name', prompt=True)
@click.option('--email', prompt=True)
@click.option('--role', type=click.Choice(sorted(VALID_ROLES), case_sensitive=False), default='AGENT')
@with_appcontext
def create_user(name, email, role):
    try:
        user = session_service.create_user(name, email, role)
    except StageTrackError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created user {user.id}: {user.name} ({user.role})")


@users_group.command('issue-token')
@click.option('--email', required=True)
@click.option('--ttl-hours', type=int, default=None, help='Defaults to SESSION_TTL_HOURS')
@with_appcontext
def issue_token(email, ttl_hours):
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if not user:
        raise click.ClickException(f"No user with email {email}")
    try:
        session, token = session_service.create_session(user.id, ttl_hours=ttl_hours)
    except StageTrackError as e:
        raise click.ClickException(str(e))
    click.echo(f"Token for {user.name} (expires {session.expires_at.isoformat()}Z):")
    click.echo(token)


@click.group('thresholds')
def thresholds_group():
    """Stage threshold inspection."""


@thresholds_group.command('list')
@click.option('--date', 'as_of', default=None, help='Show seasonal-adjusted values for this date (YYYY-MM-DD)')
@with_appcontext
def list_thresholds(as_of):
    moment = parse_iso_datetime(as_of) if as_of else None
    for t in threshold_service.list_thresholds():
        eff = threshold_service.effective_threshold(t.stage, moment)
        source = "default" if t.is_default else "custom"
        adjusted = f"  (+{eff.buffer_applied} holiday)" if eff.buffer_applied else ""
        click.echo(f"{t.stage:<14} warn {eff.warning_days:>3}d  crit {eff.critical_days:>3}d  [{source}]{adjusted}")
    click.echo(f"Expected cycle: {threshold_service.expected_cycle_days()} days")


@click.group('etas')
def etas_group():
    """Order ETA maintenance."""


@etas_group.command('recalculate')
@with_appcontext
def recalculate_etas():
    updated = threshold_service.recalculate_etas(SYSTEM_ACTOR)
    click.echo(f"PASS Recalculated {updated} order ETAs")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(thresholds_group)
    app.cli.add_command(etas_group)
