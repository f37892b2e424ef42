"""Backup and restore commands: run, list, delete, prune, validate, restore."""

from __future__ import annotations

import click
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from ..backup import format_bytes
from ..errors import BackupError
from ..models import BackupProgress, RestoreProgress
from ._common import (
    console,
    fail,
    home_option,
    open_service,
    password_option,
    run,
    storage_option,
)


def _progress_bar() -> Progress:
    return Progress(
        TextColumn("{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
        transient=True,
    )


def register_backup_commands(main: click.Group) -> None:
    """Register the backup command group and the restore command."""

    @main.group()
    def backup():
        """Backups: create, list, check, and tidy up.

        Backups are encrypted on this device before they are stored.
        """

    @backup.command("run")
    @home_option
    @storage_option
    @password_option
    @click.option("--automatic", is_flag=True, help="Apply the Wi-Fi and battery rules.")
    def backup_run(home: str, storage: str, password: str, automatic: bool):
        """Back up your memories now.

        Examples:

            memoria-backup backup run

            memoria-backup backup run --storage /mnt/usb/memoria
        """
        service = open_service(home, storage)

        async def _go() -> str:
            await service.initialize(password)
            with _progress_bar() as bar:
                task = bar.add_task("Preparing backup...", total=100)

                def on_progress(p: BackupProgress) -> None:
                    bar.update(task, completed=p.progress, description=p.current_step)

                return await service.backup(manual=not automatic, on_progress=on_progress)

        try:
            backup_id = run(_go())
        except BackupError as exc:
            fail(exc)

        status = service.status()
        console.print(Panel(
            f"[bold green]Backup completed successfully[/]\n"
            f"ID: {backup_id}\n"
            f"Total backups: {status.total_backups}\n"
            f"Storage used: {format_bytes(status.storage_used)}",
            title="Backup Complete",
            border_style="green",
        ))

    @backup.command("list")
    @home_option
    @storage_option
    def backup_list(home: str, storage: str):
        """List your backups, newest first.

        Examples:

            memoria-backup backup list
        """
        service = open_service(home, storage)
        try:
            manifests = run(service.list_backups())
        except BackupError as exc:
            fail(exc)

        if not manifests:
            console.print("\n[dim]No backups found.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Backup", style="cyan")
        table.add_column("Created", style="dim")
        table.add_column("Memories", justify="right")
        table.add_column("Size", justify="right")
        table.add_column("Type")

        for m in manifests:
            table.add_row(
                m.backup_id,
                m.created_at.strftime("%Y-%m-%d %H:%M"),
                str(m.item_count),
                format_bytes(m.ciphertext_bytes),
                "automatic" if m.is_automatic else "manual",
            )

        console.print(f"\n[bold]{len(manifests)}[/] backup(s):\n")
        console.print(table)
        console.print()

    @backup.command("delete")
    @click.argument("backup_id")
    @home_option
    @storage_option
    @click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
    def backup_delete(backup_id: str, home: str, storage: str, yes: bool):
        """Delete one backup.

        Examples:

            memoria-backup backup delete backup_20260224T101500Z_1a2b3c4d
        """
        if not yes:
            click.confirm(f"Delete backup {backup_id}? This cannot be undone", abort=True)
        service = open_service(home, storage)
        try:
            manifest = run(service.delete_backup(backup_id))
        except BackupError as exc:
            fail(exc)
        console.print(
            f"\n[green]Deleted {backup_id}[/] "
            f"([dim]{format_bytes(manifest.ciphertext_bytes)} freed[/])\n"
        )

    @backup.command("prune")
    @home_option
    @storage_option
    def backup_prune(home: str, storage: str):
        """Delete backups older than the retention period.

        The newest backup is always kept.

        Examples:

            memoria-backup backup prune
        """
        service = open_service(home, storage)
        try:
            deleted = run(service.prune_expired())
        except BackupError as exc:
            fail(exc)

        if not deleted:
            console.print("\n[dim]Nothing to prune.[/]\n")
            return
        console.print(f"\n[green]Pruned {len(deleted)} backup(s):[/]")
        for backup_id in deleted:
            console.print(f"  [dim]{backup_id}[/]")
        console.print()

    @backup.command("validate")
    @click.argument("backup_id")
    @home_option
    @storage_option
    @password_option
    def backup_validate(backup_id: str, home: str, storage: str, password: str):
        """Check that a backup can be fully restored, without restoring it.

        Examples:

            memoria-backup backup validate backup_20260224T101500Z_1a2b3c4d
        """
        service = open_service(home, storage)

        async def _go():
            await service.initialize(password)
            return await service.validate(backup_id)

        try:
            report = run(_go())
        except BackupError as exc:
            fail(exc)

        def mark(ok: bool) -> str:
            return "[green]OK[/]" if ok else "[red]FAIL[/]"

        console.print(Panel(
            f"Metadata: {mark(report.metadata_valid)}\n"
            f"Checksum: {mark(report.checksum_match)}\n"
            f"Decryption: {mark(report.decryption_successful)}\n"
            f"Memory count: {mark(report.memory_count_match)}",
            title=f"Backup {backup_id}",
            border_style="green" if report.is_valid else "red",
        ))
        for err in report.errors:
            console.print(f"  [red]{err}[/]")
        for warning in report.warnings:
            console.print(f"  [yellow]{warning}[/]")
        if not report.is_valid:
            raise SystemExit(1)

    @main.command()
    @click.argument("backup_id")
    @home_option
    @storage_option
    @password_option
    def restore(backup_id: str, home: str, storage: str, password: str):
        """Restore memories from a backup.

        Memories you changed on this device since the backup are kept.

        Examples:

            memoria-backup restore backup_20260224T101500Z_1a2b3c4d
        """
        service = open_service(home, storage)

        async def _go():
            await service.initialize(password)
            with _progress_bar() as bar:
                task = bar.add_task("Downloading backup...", total=100)

                def on_progress(p: RestoreProgress) -> None:
                    bar.update(task, completed=p.progress, description=p.current_step)

                return await service.restore(backup_id, on_progress=on_progress)

        try:
            summary = run(_go())
        except BackupError as exc:
            fail(exc)

        console.print(Panel(
            f"[bold green]Restore complete[/]\n"
            f"Restored: {summary.restored_count}\n"
            f"Kept newer on device: {summary.skipped_count}\n"
            f"Failed: {summary.failed_count}\n"
            f"Total in backup: {summary.total_count}",
            title="Restore Complete",
            border_style="green" if summary.failed_count == 0 else "yellow",
        ))
        if summary.errors:
            console.print("[yellow]Some memories could not be restored:[/]")
            for err in summary.errors:
                console.print(f"  [red]{err}[/]")

    main.add_command(backup)
