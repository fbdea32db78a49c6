"""
Root Typer application for the taskstore CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from taskstore.logging import configure_logging

app = Typer(
    name="taskstore",
    help="taskstore — task-board storage: schema reconciliation and inspection.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("taskboard-store")
        except PackageNotFoundError:
            from taskstore import __version__ as v
        typer.echo(f"taskstore {v}")
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
    log_level: str = typer.Option("WARNING", "--log-level", envvar="DB_LOG_LEVEL", help="structlog level."),
    log_json: bool = typer.Option(False, "--log-json", envvar="DB_LOG_JSON", help="Emit logs as JSON."),
) -> None:
    """taskstore CLI — reconcile and inspect the task-board database."""
    configure_logging(level=log_level, json_format=log_json)


# ── Sub-command registration ─────────────────────────────────────────────

from taskstore.cli.db import app as db_app  # noqa: E402

app.add_typer(db_app, name="db", help="Database operations.")
