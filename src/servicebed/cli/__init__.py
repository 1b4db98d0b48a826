"""
CLI layer for servicebed.

A Typer application that drives the harness from a terminal: argument
parsing, coloured output and table formatting. All lifecycle logic lives
in ``servicebed.harness``.

Entry point::

    servicebed --help
"""

from servicebed.cli.app import app

__all__ = ["app"]
