"""
Root Typer application for the bulwark CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from bulwark.core.logging import configure_logging
from bulwark.core.settings import get_settings

app = Typer(
    name="bulwark",
    help="bulwark: retry, circuit breaker, and fallback around any call.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from bulwark import __version__

        typer.echo(f"bulwark {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Emit structured debug logs."),
) -> None:
    """bulwark CLI: try guarded execution and inspect configuration."""
    settings = get_settings()
    configure_logging(
        level="DEBUG" if verbose else settings.log_level,
        json_format=settings.log_json if settings.log_json is not None else False,
    )


# ── Sub-command registration ─────────────────────────────────────────────

from bulwark.cli.config import app as config_app  # noqa: E402
from bulwark.cli.demo import demo  # noqa: E402

app.command("demo")(demo)
app.add_typer(config_app, name="config", help="Configuration inspection.")
