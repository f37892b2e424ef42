"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the service factory, the
sync-to-async bridge, and the common option decorators.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

import click
from rich.console import Console

from .. import BACKUP_HOME
from ..errors import BackupError
from ..service import BackupService

console = Console()

T = TypeVar("T")

PASSWORD_ENVVAR = "MEMORIA_BACKUP_PASSWORD"

home_option = click.option(
    "--home", default=BACKUP_HOME, type=click.Path(), help="Backup home directory.",
)
storage_option = click.option(
    "--storage", default=None, type=click.Path(),
    help="Backup destination directory (default: <home>/storage).",
)
password_option = click.option(
    "--password", prompt="Master password", hide_input=True, envvar=PASSWORD_ENVVAR,
    help=f"Master password (or set {PASSWORD_ENVVAR}).",
)


def open_service(home: str, storage: Optional[str] = None) -> BackupService:
    """Build the on-disk service for ``home``."""
    return BackupService.open(home, storage_root=storage)


def run(coro: Awaitable[T]) -> T:
    """Run a coroutine to completion from a click command."""
    return asyncio.run(coro)


def fail(exc: BackupError) -> None:
    """Print a BackupError in plain language and exit non-zero."""
    console.print(f"\n[bold red]{exc.user_message}[/]")
    console.print(f"[dim]{exc.code.value}: {exc.message}[/]\n")
    raise SystemExit(1)
