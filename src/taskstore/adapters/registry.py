"""Database adapter registry and factory.

Manifesto:
    Consumers should never hard-code adapter class names. The registry
    maps backend names to adapter classes and ``create_adapter()`` builds a
    configured instance from a ``DatabaseConfig``.

Features:
    - ``AdapterRegistry`` with pre-registered defaults
    - ``register()`` for custom adapters and test doubles
    - ``create_adapter()`` factory: config → unconnected adapter

Tags:
    taskstore, database, registry, factory

Doc-Types:
    api-reference
"""

from __future__ import annotations

from taskstore.errors import ConfigInvalid

from .base import DatabaseAdapter
from .postgresql import PostgreSQLAdapter
from .sqlite import SQLiteAdapter
from .types import DatabaseConfig


class AdapterRegistry:
    """
    Registry for database adapter classes.

    Pre-registered adapters:
    - ``sqlite`` — :class:`SQLiteAdapter`
    - ``postgresql`` / ``postgres`` — :class:`PostgreSQLAdapter`
    """

    def __init__(self):
        self._factories: dict[str, type[DatabaseAdapter]] = {}
        self._register_defaults()

    def _register_defaults(self) -> None:
        """Register default adapters."""
        self._factories["sqlite"] = SQLiteAdapter
        self._factories["postgresql"] = PostgreSQLAdapter
        self._factories["postgres"] = PostgreSQLAdapter  # Alias

    def register(self, name: str, adapter_class: type[DatabaseAdapter]) -> None:
        """Register an adapter class."""
        self._factories[name.lower()] = adapter_class

    def get(self, name: str) -> type[DatabaseAdapter]:
        name = name.lower()
        if name not in self._factories:
            raise ConfigInvalid(f"Unknown database adapter: {name}", key="backend")
        return self._factories[name]

    def create(self, config: DatabaseConfig) -> DatabaseAdapter:
        """Create an (unconnected) adapter for ``config``."""
        return self.get(config.backend.value)(config)


# Global registry
adapter_registry = AdapterRegistry()


def create_adapter(config: DatabaseConfig) -> DatabaseAdapter:
    """Validate ``config`` and build the matching adapter."""
    return adapter_registry.create(config.validate())


__all__ = [
    "AdapterRegistry",
    "adapter_registry",
    "create_adapter",
]
