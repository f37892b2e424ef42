"""Key management commands: rotate, export, import, clear, recovery-password."""

from __future__ import annotations

from pathlib import Path

import click
from pydantic import ValidationError
from rich.panel import Panel

from ..errors import BackupError, ErrorCode
from ..keyvault import CLEAR_KEYS_WARNING, generate_recovery_password
from ..models import EncryptedBlob
from ._common import console, fail, home_option, open_service, password_option, run


def register_keys_commands(main: click.Group) -> None:
    """Register the keys command group."""

    @main.group()
    def keys():
        """Encryption keys: rotate, move to another device, or remove.

        Old backups stay readable after a rotation.
        """

    @keys.command("rotate")
    @home_option
    @password_option
    @click.option(
        "--new-password", default=None, hide_input=True,
        help="Password for the new key (default: keep the current one).",
    )
    def keys_rotate(home: str, password: str, new_password: str):
        """Replace your backup key with a fresh one.

        Examples:

            memoria-backup keys rotate
        """
        service = open_service(home)

        async def _go():
            await service.initialize(password)
            return await service.rotate_keys(new_password or password)

        try:
            key = run(_go())
        except BackupError as exc:
            fail(exc)

        console.print(Panel(
            f"[bold green]Key rotated[/]\n"
            f"New key: {key.key_id}\n"
            f"Older keys kept: {len(service.vault.historical_key_ids())}",
            title="Keys",
            border_style="green",
        ))

    @keys.command("export")
    @click.argument("output", type=click.Path())
    @home_option
    @password_option
    @click.option(
        "--export-password", prompt="Export password", hide_input=True,
        confirmation_prompt=True, help="Password protecting the export file.",
    )
    def keys_export(output: str, home: str, password: str, export_password: str):
        """Save all your keys to an encrypted file.

        Examples:

            memoria-backup keys export /mnt/usb/memoria-keys.json
        """
        service = open_service(home)

        async def _go():
            await service.initialize(password)
            return await service.export_keys(export_password)

        try:
            blob = run(_go())
        except BackupError as exc:
            fail(exc)

        out = Path(output).expanduser()
        out.write_text(blob.model_dump_json(indent=2), encoding="utf-8")
        out.chmod(0o600)
        console.print(f"\n[green]Keys exported to[/] [cyan]{out}[/]\n")

    @keys.command("import")
    @click.argument("source", type=click.Path(exists=True))
    @home_option
    @click.option(
        "--password", default=None, hide_input=True,
        help="Current master password, if this device already has keys.",
    )
    @click.option(
        "--import-password", prompt="Export password", hide_input=True,
        help="Password the export file was protected with.",
    )
    def keys_import(source: str, home: str, password: str, import_password: str):
        """Load keys from an export file.

        Afterwards, unlock with the master password of the device the
        keys came from.

        Examples:

            memoria-backup keys import /mnt/usb/memoria-keys.json
        """
        service = open_service(home)

        async def _go():
            if password:
                await service.initialize(password)
            try:
                blob = EncryptedBlob.model_validate_json(Path(source).read_text(encoding="utf-8"))
            except ValidationError as exc:
                raise BackupError(ErrorCode.INVALID_FORMAT, "Not a key export file") from exc
            return await service.import_keys(blob, import_password)

        try:
            key = run(_go())
        except BackupError as exc:
            fail(exc)

        console.print(Panel(
            f"[bold green]Keys imported[/]\n"
            f"Current key: {key.key_id}\n"
            f"Older keys: {len(service.vault.historical_key_ids())}",
            title="Keys",
            border_style="green",
        ))

    @keys.command("clear")
    @home_option
    @click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
    def keys_clear(home: str, yes: bool):
        """Permanently delete every key on this device.

        Examples:

            memoria-backup keys clear
        """
        console.print(f"\n[bold red]Warning:[/] {CLEAR_KEYS_WARNING}\n")
        if not yes:
            click.confirm("Delete all keys", abort=True)
        service = open_service(home)
        run(service.clear_keys())
        console.print("[yellow]All keys removed.[/]\n")

    @keys.command("recovery-password")
    @click.option("--random", "random_chars", is_flag=True, help="Random characters instead of syllables.")
    @click.option("--length", default=32, show_default=True, help="Length for --random.")
    @click.option("--segments", default=4, show_default=True, help="Syllable groups.")
    def keys_recovery_password(random_chars: bool, length: int, segments: int):
        """Suggest a strong, easy-to-write-down password.

        Examples:

            memoria-backup keys recovery-password
        """
        console.print(generate_recovery_password(
            pronounceable=not random_chars, length=length, segments=segments,
        ), highlight=False)

    main.add_command(keys)
