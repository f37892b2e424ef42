"""Health and status commands."""

from __future__ import annotations

import json

import click
from rich.panel import Panel

from ..backup import format_bytes
from ._common import console, home_option, open_service


def _score_style(score: int) -> str:
    if score >= 80:
        return "green"
    if score >= 50:
        return "yellow"
    return "red"


def register_status_commands(main: click.Group) -> None:
    """Register the health and status commands."""

    @main.command()
    @home_option
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    def health(home: str, as_json: bool):
        """How well protected are your memories?

        Examples:

            memoria-backup health

            memoria-backup health --json
        """
        service = open_service(home)
        report = service.health()

        if as_json:
            click.echo(json.dumps(report.model_dump(), indent=2))
            return

        style = _score_style(report.score)
        lines = [f"[bold {style}]Score: {report.score}/100[/]"]
        for issue, advice in zip(report.issues, report.recommendations):
            lines.append(f"\n[yellow]{issue}[/]\n  [dim]{advice}[/]")
        if not report.issues:
            lines.append("\n[green]Your memories are well protected.[/]")
        console.print(Panel("\n".join(lines), title="Backup Health", border_style=style))

    @main.command()
    @home_option
    def status(home: str):
        """Backup counters and recent activity.

        Examples:

            memoria-backup status
        """
        service = open_service(home)
        status = service.status()

        last = (
            status.last_backup_time.strftime("%Y-%m-%d %H:%M")
            if status.last_backup_time else "never"
        )
        console.print(Panel(
            f"Last backup: {last}\n"
            f"Total backups: {status.total_backups}\n"
            f"Storage: {format_bytes(status.storage_used)} of "
            f"{format_bytes(status.storage_limit)} ({status.utilization:.0%})\n"
            f"Backups: {'on' if service.config.enabled else 'off'}"
            + (f"\n[red]Last error: {status.last_error}[/]" if status.last_error else ""),
            title="Backup Status",
            border_style="cyan",
        ))

        for record in status.runs[-5:]:
            colour = "green" if record.status.value == "completed" else "red"
            console.print(
                f"  [dim]{record.finished_at:%Y-%m-%d %H:%M}[/] "
                f"{record.kind.value:<8} [{colour}]{record.status.value}[/] {record.detail}"
            )
