"""Status command for the blobmirror CLI.

Commands:
- status: Report runs, object counts and recent failures from the state DB
"""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

import click

from blobmirror.cli.config import load_config
from blobmirror.core.config import ConfigError


def _fmt_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="JSON config file (default: ./blobmirror.json if present).",
)
@click.option("--state-db", help="State database path.")
@click.option("--failures", "failure_limit", default=5, show_default=True,
              help="Number of recent failures to show.")
def status(config_path: Path | None, state_db: str | None, failure_limit: int) -> None:
    """Show sync status from the state database."""
    from blobmirror.core.types import ObjectStatus, RunStatus
    from blobmirror.state import StateStore

    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    db_path = Path(state_db).expanduser() if state_db else config.database_path
    if not db_path.exists():
        click.echo(f"Error: state database not found: {db_path}", err=True)
        click.echo("Run 'blobmirror sync' first.", err=True)
        sys.exit(1)

    with StateStore(db_path) as store:
        click.echo(f"State database: {db_path}")

        checkpoint = store.get_checkpoint()
        if checkpoint:
            click.echo(f"Container:      {checkpoint.container}")
            if checkpoint.prefix:
                click.echo(f"Prefix:         {checkpoint.prefix}")
            click.echo(f"Last check:     {_fmt_time(checkpoint.last_check_time)}")
            click.echo(f"Tracked:        {checkpoint.total_objects_tracked} objects")
            if checkpoint.continuation_token:
                click.echo("Listing:        interrupted (will resume)")

        runs = store.count_runs_by_status()
        click.echo("")
        click.echo(f"Sync runs: {sum(runs.values())}")
        for run_status in RunStatus:
            click.echo(f"  {run_status.value:<12} {runs[run_status]}")

        latest = store.list_runs(limit=1)
        if latest:
            run = latest[0]
            click.echo(
                f"Last run: #{run.id} {run.status.value}, started "
                f"{_fmt_time(run.started_at)}, {run.downloaded_files} downloaded, "
                f"{run.failed_files} failed"
            )
            if run.error_message:
                click.echo(f"  Error: {run.error_message}")

        objects = store.count_objects_by_status()
        click.echo("")
        click.echo(f"Objects: {sum(objects.values())}")
        for object_status in ObjectStatus:
            click.echo(f"  {object_status.value:<12} {objects[object_status]}")

        failures = store.list_recent_failures(limit=failure_limit)
        if failures:
            click.echo("")
            click.echo("Recent failures:")
            for record in failures:
                click.echo(f"  {record.key}: {record.error_message or 'unknown error'}")
