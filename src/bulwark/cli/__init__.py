"""
CLI layer for bulwark.

A small Typer application that demonstrates guarded execution and shows
the resolved configuration.  All behaviour lives in ``bulwark.execution``;
this package handles only argument parsing and coloured output.

Entry point::

    bulwark --help
"""

from bulwark.cli.app import app

__all__ = ["app"]
