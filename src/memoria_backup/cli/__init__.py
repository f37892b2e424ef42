"""
Memoria Backup CLI: encrypted backups of your memoir recordings.

This package organizes the CLI into modular command groups.
Each group lives in its own module for maintainability.
The main Click group is defined here and all subcommands
are registered via register functions.

Entry point: memoria_backup.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="memoria-backup")
@click.option("--verbose", "-v", is_flag=True, help="Log progress details to stderr.")
def main(verbose: bool):
    """Memoria Backup: private, encrypted backups of your memories.

    Only you hold the password. Without it nobody, including the
    storage provider, can open your backups.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .setup import register_setup_commands
from .backup import register_backup_commands
from .keys import register_keys_commands
from .status import register_status_commands
from .config_cmd import register_config_commands

register_setup_commands(main)
register_backup_commands(main)
register_keys_commands(main)
register_status_commands(main)
register_config_commands(main)
