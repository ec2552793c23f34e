"""Sync command for the blobmirror CLI.

Commands:
- sync: Mirror a remote container into a local directory
"""

from __future__ import annotations

import signal
import sys
from pathlib import Path
from typing import Any

import click

from blobmirror.cli.config import apply_overrides, load_config
from blobmirror.cli.log import configure_logging
from blobmirror.core.config import LOG_FORMATS, LOG_LEVELS, REMOTE_BACKENDS, ConfigError
from blobmirror.core.types import FolderStrategy


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="JSON config file (default: ./blobmirror.json if present).",
)
@click.option("--container", "-c", help="Remote container (bucket) to mirror.")
@click.option("--output", "-o", "output_path", help="Local output directory.")
@click.option("--backend", type=click.Choice(REMOTE_BACKENDS), help="Remote store type.")
@click.option("--local-root", help="Root directory for the local backend.")
@click.option("--endpoint-url", help="Custom S3 endpoint URL.")
@click.option("--access-key", envvar="BLOBMIRROR_ACCESS_KEY", help="S3 access key ID.")
@click.option("--secret-key", envvar="BLOBMIRROR_SECRET_KEY", help="S3 secret access key.")
@click.option("--region", help="S3 region.")
@click.option("--account-url", help="Azure Blob service URL.")
@click.option("--sas-token", envvar="BLOBMIRROR_SAS_TOKEN", help="Azure SAS token.")
@click.option("--prefix", help="Only sync keys starting with this prefix.")
@click.option("--workers", "-w", type=int, help="Concurrent download workers (1-100).")
@click.option("--batch-size", type=int, help="Objects per listing page (1-10000).")
@click.option("--watch/--no-watch", default=None, help="Sync continuously.")
@click.option("--interval", type=float, help="Seconds between passes in watch mode.")
@click.option("--state-db", help="State database path.")
@click.option("--force-resync/--no-force-resync", default=None, help="Re-download everything.")
@click.option(
    "--skip-existing/--no-skip-existing", default=None, help="Skip unchanged objects."
)
@click.option(
    "--verify-checksums/--no-verify-checksums", default=None, help="Verify MD5 of downloads."
)
@click.option("--disk-warn-percent", type=int, help="Disk usage warning threshold.")
@click.option("--disk-stop-percent", type=int, help="Disk usage stop threshold.")
@click.option(
    "--organize-folders/--no-organize-folders", default=None, help="Spread files into folders."
)
@click.option("--max-files-per-folder", type=int, help="Folder capacity (100-100000).")
@click.option(
    "--folder-strategy",
    type=click.Choice([s.value for s in FolderStrategy]),
    help="Folder organization strategy.",
)
@click.option("--partition-depth", type=int, help="Hash partition depth (1-4).")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False))
@click.option("--log-format", type=click.Choice(LOG_FORMATS))
def sync(config_path: Path | None, **options: Any) -> None:
    """Mirror a remote container into a local directory.

    Only new and changed objects are downloaded. Interrupted runs resume
    where they stopped. Use --watch to keep syncing every --interval seconds.
    """
    from blobmirror.state import StateStore
    from blobmirror.storage import StoreError, create_store
    from blobmirror.sync import SyncOrchestrator, SyncPassError

    try:
        config = load_config(config_path)
        apply_overrides(config, _overrides(options))
        config.validate()
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)

    try:
        remote = create_store(config.remote)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    with remote, StateStore(config.database_path) as store:
        try:
            if not remote.container_exists(config.sync.container):
                click.echo(
                    f"Error: container '{config.sync.container}' not found "
                    f"({remote.location})",
                    err=True,
                )
                sys.exit(1)
        except StoreError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        orchestrator = SyncOrchestrator(config, store, remote)

        def signal_handler(signum: int, frame: object) -> None:
            click.echo("\nStopping sync (waiting for in-flight downloads)...", err=True)
            orchestrator.request_stop()

        previous = {
            sig: signal.signal(sig, signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)
        }

        click.echo(
            f"Syncing '{config.sync.container}' from {remote.location} "
            f"to {config.output_path}"
        )
        try:
            orchestrator.run(on_pass=lambda result: click.echo(result.summary()))
        except SyncPassError as e:
            click.echo(f"Error: sync failed: {e}", err=True)
            sys.exit(1)
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)


def _overrides(options: dict[str, Any]) -> dict[str, Any]:
    """Map command-line options onto config sections."""
    return {
        "remote": {
            "backend": options["backend"],
            "local_root": options["local_root"],
            "endpoint_url": options["endpoint_url"],
            "access_key": options["access_key"],
            "secret_key": options["secret_key"],
            "region": options["region"],
            "account_url": options["account_url"],
            "sas_token": options["sas_token"],
        },
        "sync": {
            "container": options["container"],
            "output_path": options["output_path"],
            "prefix": options["prefix"],
            "workers": options["workers"],
            "batch_size": options["batch_size"],
            "skip_existing": options["skip_existing"],
            "verify_checksums": options["verify_checksums"],
            "force_resync": options["force_resync"],
            "disk_warn_percent": options["disk_warn_percent"],
            "disk_stop_percent": options["disk_stop_percent"],
            "folder_organization": {
                "enabled": options["organize_folders"],
                "max_files_per_folder": options["max_files_per_folder"],
                "strategy": options["folder_strategy"],
                "partition_depth": options["partition_depth"],
            },
        },
        "watch": {
            "enabled": options["watch"],
            "interval": options["interval"],
        },
        "state": {"database": options["state_db"]},
        "logging": {
            "level": options["log_level"],
            "format": options["log_format"],
        },
    }
