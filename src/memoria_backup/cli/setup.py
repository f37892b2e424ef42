"""Setup command: init."""

from __future__ import annotations

import click
from rich.panel import Panel

from ..errors import BackupError
from ._common import console, fail, home_option, open_service, run


def register_setup_commands(main: click.Group) -> None:
    """Register the init command."""

    @main.command()
    @home_option
    @click.option(
        "--password", prompt="Choose a master password", hide_input=True,
        confirmation_prompt=True, help="Master password for your backups.",
    )
    @click.option("--enable/--no-enable", default=True, help="Turn on automatic backups.")
    def init(home: str, password: str, enable: bool):
        """Create your backup keys, or check an existing password.

        The password is never stored. Write it down somewhere safe:
        without it your backups cannot be opened.

        Examples:

            memoria-backup init

            memoria-backup init --home /mnt/usb/memoria --no-enable
        """
        service = open_service(home)
        existing = service.vault.has_persisted_keys()

        try:
            key = run(service.initialize(password))
        except BackupError as exc:
            fail(exc)

        if enable and not service.config.enabled:
            service.update_config(enabled=True)

        headline = "Keys unlocked" if existing else "Backup keys created"
        console.print(Panel(
            f"[bold green]{headline}[/]\n"
            f"Key: {key.key_id}\n"
            f"Strength: {key.strength_bits}-bit AES-GCM\n"
            f"Backups: {'on' if service.config.enabled else 'off'}\n"
            f"Home: [cyan]{service.home}[/]",
            title="Memoria Backup",
            border_style="green",
        ))
        if not existing:
            console.print(
                "[yellow]Keep your password safe. It cannot be recovered if lost.[/]\n"
            )
