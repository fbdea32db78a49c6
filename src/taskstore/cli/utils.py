"""
CLI utility helpers — output formatting and store construction.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from taskstore.adapters import DatabaseConfig
from taskstore.errors import StoreError
from taskstore.settings import load_settings
from taskstore.store import Store

console = Console()
err_console = Console(stderr=True)


# ── Store helper ─────────────────────────────────────────────────────────


def resolve_config(url: str | None = None, path: str | None = None) -> DatabaseConfig:
    """Config from ``DB_*`` settings, with ``--url`` / ``--path`` taking precedence."""
    if url:
        overrides: dict[str, Any] = {"url": url, "backend": "auto"}
    elif path:
        overrides = {"path": path, "backend": "sqlite", "url": None}
    else:
        overrides = {}
    return load_settings(**overrides).to_config()


def open_store(url: str | None = None, path: str | None = None) -> Store:
    """Build (but do not initialize) a store for a CLI command."""
    try:
        return Store(resolve_config(url, path))
    except StoreError as e:
        fail(e)
        raise  # unreachable, fail() exits


def fail(error: StoreError) -> None:
    """Print a store error and exit with status 1."""
    err_console.print(
        f"[bold red]Error[/bold red] ({type(error).__name__}): {error.message}"
    )
    if error.cause is not None:
        err_console.print(f"  [dim]{error.cause}[/dim]")
    raise typer.Exit(code=1)


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / report / dict to plain dict."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output_data(data: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a dict, dataclass or list of them to the terminal."""
    if as_json:
        payload = [_to_dict(d) for d in data] if isinstance(data, list | tuple) else _to_dict(data)
        console.print_json(json.dumps(payload, default=str))
        return

    if isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        _print_table(data, title=title)
    else:
        _print_dict(_to_dict(data), title=title)


# ── Private helpers ──────────────────────────────────────────────────────


def _print_table(items: list, *, title: str = "") -> None:
    """Render a list of dataclasses/dicts as a Rich table."""
    first = _to_dict(items[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in first:
        table.add_column(col, overflow="fold")
    for item in items:
        d = _to_dict(item)
        table.add_row(*("" if v is None else str(v) for v in d.values()))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        if isinstance(v, list):
            console.print(f"  [cyan]{k}[/cyan]: {len(v)}")
            for item in v:
                console.print(f"    - {item}")
        else:
            console.print(f"  [cyan]{k}[/cyan]: {v}")
