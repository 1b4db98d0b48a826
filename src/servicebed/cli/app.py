"""
Root Typer application for the servicebed CLI.
"""

from __future__ import annotations

import os

import typer
from typer import Typer

from servicebed.cli import services
from servicebed.framework.logging import configure_logging

app = Typer(
    name="servicebed",
    help="servicebed: disposable service containers for integration tests.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from servicebed import __version__

        typer.echo(f"servicebed {__version__}")
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
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log harness activity at DEBUG."),
) -> None:
    """servicebed CLI: start, check and clean up ephemeral services."""
    # Harness logs go to stderr; WARNING unless overridden
    level = "DEBUG" if verbose else os.environ.get("SERVICEBED_LOG_LEVEL", "WARNING").upper()
    configure_logging(level=level, force=True)


# ── Command registration ─────────────────────────────────────────────────

app.command("hello")(services.hello)
app.command("presets")(services.presets)
app.command("check")(services.check)
app.command("up")(services.up)
app.command("cleanup")(services.cleanup)
