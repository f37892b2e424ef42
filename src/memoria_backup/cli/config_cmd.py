"""Settings commands: show, set."""

from __future__ import annotations

import click
import yaml
from pydantic import ValidationError
from rich.table import Table

from ..config import coerce_value
from ._common import console, home_option, open_service


def register_config_commands(main: click.Group) -> None:
    """Register the config command group."""

    @main.group("config")
    def config_group():
        """Backup settings: Wi-Fi only, battery saving, retention, region."""

    @config_group.command("show")
    @home_option
    @click.option("--yaml", "as_yaml", is_flag=True, help="Output raw YAML.")
    def config_show(home: str, as_yaml: bool):
        """Show current settings.

        Examples:

            memoria-backup config show
        """
        service = open_service(home)
        data = service.config.model_dump(mode="json")

        if as_yaml:
            click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=True))
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        for name in sorted(data):
            table.add_row(name, str(data[name]))
        console.print()
        console.print(table)
        console.print()

    @config_group.command("set")
    @click.argument("assignments", nargs=-1, required=True)
    @home_option
    def config_set(assignments: tuple, home: str):
        """Change one or more settings as key=value pairs.

        Examples:

            memoria-backup config set wifi_only_backup=false

            memoria-backup config set compliance_region=eu-west max_backup_retention_days=60
        """
        changes = {}
        for item in assignments:
            name, sep, raw = item.partition("=")
            if not sep or not name:
                raise click.BadParameter(f"expected key=value, got {item!r}")
            changes[name.strip()] = coerce_value(raw.strip())

        service = open_service(home)
        try:
            config = service.update_config(**changes)
        except ValidationError as exc:
            console.print("\n[bold red]Invalid setting:[/]")
            for err in exc.errors():
                field = ".".join(str(p) for p in err["loc"])
                console.print(f"  [red]{field}[/]: {err['msg']}")
            console.print()
            raise SystemExit(1)

        data = config.model_dump(mode="json")
        for name in sorted(changes):
            console.print(f"[green]{name}[/] = {data[name]}")
