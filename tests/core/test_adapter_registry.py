"""Tests for ``taskstore.adapters.registry`` — backend name to adapter class."""

from __future__ import annotations

import pytest

from taskstore.adapters import (
    AdapterRegistry,
    DatabaseConfig,
    DatabaseType,
    PostgreSQLAdapter,
    SQLiteAdapter,
    create_adapter,
)
from taskstore.errors import ConfigInvalid


class _RecordingAdapter(SQLiteAdapter):
    pass


class TestAdapterRegistry:
    def test_defaults(self) -> None:
        registry = AdapterRegistry()
        assert registry.get("sqlite") is SQLiteAdapter
        assert registry.get("postgresql") is PostgreSQLAdapter
        assert registry.get("Postgres") is PostgreSQLAdapter

    def test_unknown_name(self) -> None:
        with pytest.raises(ConfigInvalid) as exc_info:
            AdapterRegistry().get("mysql")
        assert exc_info.value.key == "backend"

    def test_register_replaces_backend(self) -> None:
        registry = AdapterRegistry()
        registry.register("SQLite", _RecordingAdapter)
        adapter = registry.create(DatabaseConfig(path="tasks.sqlite"))
        assert isinstance(adapter, _RecordingAdapter)
        assert adapter.is_connected is False


class TestCreateAdapter:
    def test_validates_config(self) -> None:
        with pytest.raises(ConfigInvalid) as exc_info:
            create_adapter(DatabaseConfig(backend=DatabaseType.POSTGRESQL, database="tasks"))
        assert exc_info.value.key == "host"
