"""
Operator commands.

    flask --app autobk autobackups     # one autobackup cycle
    flask --app autobk maintenance     # one retention sweep
    flask --app autobk scheduling      # one planning pass
    flask --app autobk backup-now 7    # queue a manual backup of device 7
    flask --app autobk versions 7      # version history of device 7
    flask --app autobk daemon          # run until SIGINT/SIGTERM
"""

import json

import click
from flask import current_app
from flask.cli import with_appcontext

from autobk.models import format_version
from autobk.store import VersionStore


def _echo_summary(summary):
    click.echo(json.dumps(summary, indent=2, default=str))


@click.command('autobackups')
@with_appcontext
def autobackups_command():
    """Process all due schedule rows once."""
    from autobk.backup.executor import run_autobackups
    _echo_summary(run_autobackups())


@click.command('maintenance')
@with_appcontext
def maintenance_command():
    """Delete expired backups once."""
    from autobk.backup.retention import run_maintenance
    _echo_summary(run_maintenance())


@click.command('scheduling')
@with_appcontext
def scheduling_command():
    """Requeue failed rows and plan upcoming backups once."""
    from autobk.planner import run_scheduling
    _echo_summary(run_scheduling())


@click.command('backup-now')
@click.argument('device_id', type=int)
@with_appcontext
def backup_now_command(device_id):
    """Queue an immediate backup of DEVICE_ID."""
    from autobk.planner import create_planner

    try:
        schedule_id = create_planner().queue_manual_backup(device_id)
    except ValueError as e:
        raise click.ClickException(str(e))

    click.echo(f"Queued schedule {schedule_id} for device {device_id}")


@click.command('versions')
@click.argument('device_id', type=int)
@with_appcontext
def versions_command(device_id):
    """Show the version history of DEVICE_ID."""
    versions = VersionStore().fetch_versions(device_id)

    if not versions:
        click.echo(f"No versions for device {device_id}")
        return

    for version in versions:
        click.echo(
            f"{format_version(version.version_number)}\t{version.created_at:%Y-%m-%d %H:%M:%S}\t"
            f"{version.backup.backup_hash[:12]}\t{version.backup.file_path}"
        )


@click.command('daemon')
@with_appcontext
def daemon_command():
    """Run the periodic tasks until interrupted."""
    from autobk.scheduler import run_daemon
    run_daemon(current_app._get_current_object())


def register_commands(app):
    """Attach the operator commands to the Flask CLI."""
    for command in (
        autobackups_command,
        maintenance_command,
        scheduling_command,
        backup_now_command,
        versions_command,
        daemon_command,
    ):
        app.cli.add_command(command)
