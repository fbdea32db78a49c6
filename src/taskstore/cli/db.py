"""
CLI: ``taskstore db`` — schema and connectivity commands.

Every command builds a store from ``DB_*`` settings, overridable with
``--url`` or ``--path``, and closes it before exiting.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import typer

from taskstore.cli.utils import console, fail, open_store, output_data
from taskstore.errors import StoreError
from taskstore.store import Store

app = typer.Typer(no_args_is_help=True)

_URL = typer.Option(None, "--url", "-u", help="Connection URL (sqlite:///... or postgresql://...)")
_PATH = typer.Option(None, "--path", "-p", help="SQLite file path")
_JSON = typer.Option(False, "--json", help="JSON output")


@contextmanager
def _store(url: str | None, path: str | None, *, initialize: bool = True) -> Iterator[Store]:
    store = open_store(url, path)
    try:
        if initialize:
            store.initialize()
        yield store
    except StoreError as e:
        fail(e)
    finally:
        store.close()


def _run(url: str | None, path: str | None, fn: Callable[[Store], Any]) -> Any:
    with _store(url, path) as store:
        return fn(store)


@app.command()
def init(
    url: str | None = _URL,
    path: str | None = _PATH,
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the DDL without applying it"),
    json_out: bool = _JSON,
) -> None:
    """Reconcile the database schema with the declared tables."""
    with _store(url, path, initialize=False) as store:
        if dry_run:
            plan = store.plan()
            if not json_out and plan.is_empty:
                console.print("[green]Schema is up to date.[/green]")
                return
            output_data(plan, as_json=json_out, title="Schema Plan")
            return
        report = store.initialize()
        if not json_out and not report.changed and not report.warnings:
            console.print("[green]Schema is up to date.[/green]")
            return
        output_data(report, as_json=json_out, title="Schema Reconciled")


@app.command()
def tables(
    url: str | None = _URL,
    path: str | None = _PATH,
    json_out: bool = _JSON,
) -> None:
    """List the tables present in the database."""
    names = _run(url, path, lambda store: store.list_tables())
    output_data([{"table": name} for name in names], as_json=json_out, title="Tables")


@app.command()
def describe(
    table: str = typer.Argument(..., help="Table name"),
    url: str | None = _URL,
    path: str | None = _PATH,
    json_out: bool = _JSON,
) -> None:
    """Show the introspected columns of one table."""
    columns = _run(url, path, lambda store: store.describe_table(table))
    if not columns:
        console.print(f"[yellow]Table {table!r} does not exist.[/yellow]")
        raise typer.Exit(code=1)
    output_data(columns, as_json=json_out, title=table)


@app.command()
def history(
    url: str | None = _URL,
    path: str | None = _PATH,
    json_out: bool = _JSON,
) -> None:
    """Show the schema changes recorded by reconciliation."""
    rows = _run(url, path, lambda store: store.history())
    output_data(rows, as_json=json_out, title="Schema History")


@app.command()
def health(
    url: str | None = _URL,
    path: str | None = _PATH,
    json_out: bool = _JSON,
) -> None:
    """Check connectivity and show connection stats."""

    def _check(store: Store) -> dict[str, Any]:
        return {"ok": store.ping(), **store.stats()}

    output_data(_run(url, path, _check), as_json=json_out, title="Database Health")
