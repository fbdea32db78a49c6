"""
Shared pytest fixtures and configuration for taskstore tests.

This module provides:
- Environment isolation (no ``DB_*`` variables or ``.env`` file leak in)
- SQLite configs and ready stores backed by temporary files
- Row helpers for seeding users and tags

Usage:
    Fixtures are auto-discovered by pytest::

        def test_something(store):
            store.query("SELECT 1 AS ok")
"""

import os
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

from taskstore.adapters import DatabaseConfig
from taskstore.store import Store


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "postgres"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Environment Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Path, None, None]:
    """Drop ``DB_*`` variables and run each test from its own directory."""
    for key in list(os.environ):
        if key.startswith("DB_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    yield tmp_path


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "data" / "tasks.sqlite")


@pytest.fixture
def sqlite_config(db_path: str) -> DatabaseConfig:
    return DatabaseConfig(path=db_path, acquire_timeout=0.5)


@pytest.fixture
def store(sqlite_config: DatabaseConfig) -> Generator[Store, None, None]:
    """An initialized store over a fresh SQLite file."""
    s = Store(sqlite_config)
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def raw_sqlite(db_path: str) -> Callable[[str], list[tuple[Any, ...]]]:
    """Run SQL directly against the test file, outside the store."""

    def run(sql: str, *args: Any) -> list[tuple[Any, ...]]:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(db_path)
        try:
            rows = conn.execute(sql, args).fetchall()
            conn.commit()
            return rows
        finally:
            conn.close()

    return run


# =============================================================================
# Row Helpers
# =============================================================================


@pytest.fixture
def insert_user(store: Store) -> Callable[..., str]:
    def insert(email: str = "ada@example.com", name: str = "Ada", target: Any = None) -> str:
        user_id = str(uuid.uuid4())
        (target or store).execute(
            "INSERT INTO users (id, email, name, password_hash) VALUES (?, ?, ?, ?)",
            [user_id, email, name, "x" * 60],
        )
        return user_id

    return insert


@pytest.fixture
def count_rows(store: Store) -> Callable[[str], int]:
    def count(table: str) -> int:
        row = store.query_one(f"SELECT COUNT(*) AS n FROM {table}")
        assert row is not None
        return row["n"]

    return count
