"""Command-line interface for blobmirror.

This module provides the main CLI entry point and assembles all commands.

Commands:
- sync: Mirror a remote container into a local directory
- status: Show sync status from the state database
- init: Write a configuration template

Every option can also be set through a BLOBMIRROR_<COMMAND>_<OPTION>
environment variable (e.g. BLOBMIRROR_SYNC_CONTAINER).
"""

from __future__ import annotations

import click

from blobmirror import __version__
from blobmirror.cli.config import apply_overrides, load_config, save_config
from blobmirror.cli.init import init
from blobmirror.cli.log import configure_logging
from blobmirror.cli.status import status
from blobmirror.cli.sync import sync

ENV_PREFIX = "BLOBMIRROR"


@click.group()
@click.version_option(__version__)
def cli() -> None:
    """blobmirror - Incremental, resumable object store mirroring."""


cli.add_command(sync)
cli.add_command(status)
cli.add_command(init)


def main() -> None:
    """Entry point for the CLI."""
    cli(auto_envvar_prefix=ENV_PREFIX)


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "apply_overrides",
    "configure_logging",
    "load_config",
    "save_config",
]
