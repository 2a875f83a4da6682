# Overview: Flask CLI command groups for bootstrap, maintenance and the offline client.

# backend/minimarket/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Use: python -m flask --app minimarket <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask --app minimarket system init
#   Create tables and the default admin / cashier accounts (idempotent).
# - python -m flask --app minimarket system create-user --username ana --email ana@shop.local --role cashier
#   Create a user (prompts for the password).
# - python -m flask --app minimarket system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Maintenance:
# - python -m flask --app minimarket maintenance cleanup-sessions --retention-days 30
# - python -m flask --app minimarket maintenance cleanup-sync-events --retention-days 90
#
# Offline register (uses OFFLINE_DATABASE_URL, SYNC_SERVER_URL, SYNC_API_TOKEN):
# - python -m flask --app minimarket offline status
# - python -m flask --app minimarket offline sync [--upload-only | --download-only]
# - python -m flask --app minimarket offline queue
# - python -m flask --app minimarket offline conflicts
# - python -m flask --app minimarket offline resolve product <local-id> --keep local
# - python -m flask --app minimarket offline retry-dead [--entity-type sale]
# - python -m flask --app minimarket offline logs --limit 20 [--status error]
# - python -m flask --app minimarket offline clear-logs [--older-than-days 30]
# - python -m flask --app minimarket offline run
#   Long-running client: connectivity polling plus periodic sync.
# - python -m flask --app minimarket offline cache-clear

import asyncio
import json
import logging

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .services.auth_service import create_user, PasswordValidationError
from .services import maintenance_service, session_service
from .validation import ConflictError, ValidationError


def _configure_logging() -> None:
    logging.basicConfig(
        level=current_app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--password', default='Password123!', show_default=True, help='Password for the default users')
@with_appcontext
def init_system(password):
    """
    Create all tables and the default users.

    Creates:
    - admin / admin@minimarket.local (role admin)
    - cashier / cashier@minimarket.local (role cashier)

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing minimarket server...")
    db.create_all()
    click.echo("PASS Tables created")

    for username, email, role in (
        ("admin", "admin@minimarket.local", "admin"),
        ("cashier", "cashier@minimarket.local", "cashier"),
    ):
        if db.session.query(User).filter_by(username=username).first():
            click.echo(f"WARN  User '{username}' already exists, skipping...")
            continue
        try:
            create_user(username=username, email=email, password=password, role=role)
        except PasswordValidationError as e:
            raise click.ClickException(f"Password validation failed for '{username}': {e}")
        click.echo(f"PASS Created user: {username} ({email}) with role '{role}'")

    click.echo("DONE Server initialized. Change default passwords in production!")


@system_group.command('create-user')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(['admin', 'cashier']), default='cashier', show_default=True)
@with_appcontext
def create_user_cli(username, email, password, role):
    """Create a user account."""
    try:
        user = create_user(username=username, email=email, password=password, role=role)
    except (ValidationError, ConflictError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created user {user.username} (ID: {user.id}, role: {user.role})")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-sessions')
@click.option('--retention-days', type=int, default=30, show_default=True)
@with_appcontext
def cleanup_sessions_cli(retention_days):
    """Delete expired or revoked session tokens older than the retention window."""
    deleted = session_service.cleanup_expired_sessions(retention_days=retention_days)
    click.echo(f"Deleted {deleted} sessions older than {retention_days} days.")


@maintenance_group.command('cleanup-sync-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_sync_events_cli(retention_days):
    """
    Cleanup old sync audit events.

    Default retention: 90 days.
    """
    deleted = maintenance_service.cleanup_sync_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} sync events older than {retention_days} days.")


# ---------------------------------------------------------------------------
# Offline register
# ---------------------------------------------------------------------------

def _runtime(**kwargs):
    from .offline import OfflineRuntime

    runtime = OfflineRuntime.from_config(current_app.config, **kwargs)
    runtime.open_storage()
    return runtime


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group('offline')
def offline_group():
    """Offline register: local store, sync queue and cache."""


@offline_group.command('status')
@with_appcontext
def offline_status():
    """Sync phase, checkpoint and queue counters."""
    runtime = _runtime()
    try:
        _echo_json(runtime.sync_manager.get_sync_status())
    finally:
        runtime.close_storage()


@offline_group.command('sync')
@click.option('--upload-only', is_flag=True, help='Only push queued local changes')
@click.option('--download-only', is_flag=True, help='Only pull server changes')
@with_appcontext
def offline_sync(upload_only, download_only):
    """Run one sync cycle now."""
    if upload_only and download_only:
        raise click.UsageError("--upload-only and --download-only are mutually exclusive")
    _configure_logging()

    async def run():
        runtime = _runtime()
        manager = runtime.sync_manager
        try:
            if upload_only:
                return await manager.upload_changes()
            if download_only:
                return await manager.download_changes()
            return await manager.full_sync()
        finally:
            await runtime.shutdown()

    result = asyncio.run(run())
    _echo_json(result.to_dict())
    if not result.success:
        raise click.ClickException(result.error or "Sync failed")


@offline_group.command('queue')
@with_appcontext
def offline_queue():
    """Pending, conflicting and dead-lettered queue entries."""
    runtime = _runtime()
    try:
        _echo_json(runtime.store.queue_stats())
    finally:
        runtime.close_storage()


@offline_group.command('conflicts')
@with_appcontext
def offline_conflicts():
    """List upload conflicts waiting for manual resolution."""
    runtime = _runtime()
    try:
        conflicts = runtime.sync_manager.list_conflicts()
        if not conflicts:
            click.echo("No conflicts.")
            return
        for conflict in conflicts:
            click.echo(
                f"{conflict['entityType']:<13} {conflict['entityId']}  "
                f"{conflict['reason'] or '-'}  (server id: {conflict['serverId'] or '-'})"
            )
    finally:
        runtime.close_storage()


@offline_group.command('resolve')
@click.argument('entity_type', type=click.Choice(['product', 'sale', 'cash_session']))
@click.argument('entity_id')
@click.option('--keep', type=click.Choice(['local', 'server']), required=True)
@with_appcontext
def offline_resolve(entity_type, entity_id, keep):
    """Resolve one conflict by keeping the local or the server copy."""
    runtime = _runtime()
    try:
        result = runtime.sync_manager.resolve_conflict(entity_type, entity_id, keep)
    except ValidationError as e:
        raise click.ClickException(str(e))
    finally:
        runtime.close_storage()
    _echo_json(result)


@offline_group.command('retry-dead')
@click.option('--entity-type', type=click.Choice(['product', 'sale', 'cash_session']))
@with_appcontext
def offline_retry_dead(entity_type):
    """Re-queue dead-lettered entries with a fresh retry budget."""
    runtime = _runtime()
    try:
        count = runtime.sync_manager.retry_dead_letters(entity_type)
    finally:
        runtime.close_storage()
    click.echo(f"Re-queued {count} entries.")


@offline_group.command('logs')
@click.option('--limit', type=int, default=20, show_default=True)
@click.option('--status', type=click.Choice(['success', 'error', 'conflict']))
@with_appcontext
def offline_logs(limit, status):
    """Most recent sync log entries."""
    runtime = _runtime()
    try:
        for entry in runtime.store.sync_logs(limit=limit, status=status):
            subject = f" {entry['entityType']} {entry['entityId']}" if entry['entityType'] else ""
            click.echo(
                f"{entry['timestamp']}  {entry['direction']:<8} {entry['status']:<8}{subject}  {entry['details'] or ''}"
            )
    finally:
        runtime.close_storage()


@offline_group.command('clear-logs')
@click.option('--older-than-days', type=int, help='Defaults to SYNC_LOG_RETENTION_DAYS')
@click.option('--all', 'clear_all', is_flag=True, help='Delete every log entry')
@with_appcontext
def offline_clear_logs(older_than_days, clear_all):
    """Delete old sync log entries."""
    runtime = _runtime()
    try:
        days = None if clear_all else (older_than_days or runtime.settings.log_retention_days)
        deleted = runtime.store.clear_sync_logs(older_than_days=days)
    finally:
        runtime.close_storage()
    click.echo(f"Deleted {deleted} sync log entries.")


@offline_group.command('run')
@click.option('--precache', multiple=True, help='URL path to precache on install (repeatable)')
@click.option('--assume-online', is_flag=True, help='Skip the /api/health connectivity probe')
@with_appcontext
def offline_run(precache, assume_online):
    """Run the offline client until interrupted: connectivity polling plus periodic sync."""
    from .offline.connectivity import StaticConnectivityProbe

    _configure_logging()
    probe = StaticConnectivityProbe(True) if assume_online else None

    async def run():
        runtime = _runtime(probe=probe, precache_urls=tuple(precache) or None)
        await runtime.start()
        click.echo(f"Offline client running against {runtime.settings.server_url} (Ctrl+C to stop)")
        try:
            result = await runtime.sync_manager.full_sync()
            click.echo(f"Initial sync: {'ok' if result.success else result.error}")
            while True:
                await asyncio.sleep(3600)
        finally:
            await runtime.shutdown()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        click.echo("Stopped.")


@offline_group.command('cache-clear')
@with_appcontext
def offline_cache_clear():
    """Delete every cached HTTP response."""
    runtime = _runtime()
    try:
        cleared = runtime.cache_storage.clear()
    finally:
        runtime.close_storage()
    click.echo(f"Deleted {cleared} caches.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(maintenance_group)
    app.cli.add_command(offline_group)
