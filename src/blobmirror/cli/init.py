"""Init command for the blobmirror CLI.

Commands:
- init: Write a configuration template
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from blobmirror.cli.config import DEFAULT_CONFIG_FILE, save_config
from blobmirror.core.config import AppConfig


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    help="Where to write the configuration template.",
)
@click.option("--force", is_flag=True, help="Overwrite an existing file.")
def init(config_path: Path, force: bool) -> None:
    """Write a configuration template with default values."""
    if config_path.exists() and not force:
        click.echo(f"Error: {config_path} already exists (use --force to overwrite)", err=True)
        sys.exit(1)

    save_config(AppConfig(), config_path)
    click.echo(f"Configuration template written to {config_path}")
    click.echo("Set sync.container and the remote section, then run 'blobmirror sync'.")
