"""
CLI layer for taskstore.

Provides a Typer application whose ``db`` sub-commands drive the store:
reconcile the schema, list and describe tables, show the schema history
and check connectivity. This package handles only terminal transport:
argument parsing, coloured output and table formatting.

Entry point::

    taskstore --help
"""

from taskstore.cli.app import app

__all__ = ["app"]
