"""
CLI ``bulwark config``: configuration inspection.
"""

from __future__ import annotations

import typer

from bulwark.cli.utils import console, print_dict

app = typer.Typer(no_args_is_help=True)


@app.command("show")
def show_config(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json, env"),
) -> None:
    """Show the resolved configuration."""
    from bulwark.core.settings import get_settings

    settings = get_settings()

    if format == "json":
        console.print_json(settings.model_dump_json())
        return

    values = settings.model_dump(mode="json")

    if format == "env":
        for key, value in sorted(values.items()):
            console.print(f"BULWARK_{key.upper()}={'' if value is None else value}")
        return

    print_dict(values, title="bulwark settings")
