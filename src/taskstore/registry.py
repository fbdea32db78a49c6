"""Process-scoped holder of the one live ``Store``.

The application asks the registry for "the store"; the registry builds and
initializes it on first use, hands back the same instance while the
configuration is unchanged, and on a new configuration tears the old
instance down before building the replacement. Construction, comparison and
swap all happen under one lock.

Examples:
    >>> registry = StoreRegistry()
    >>> store = registry.get_instance(DatabaseConfig(path="data/tasks.sqlite"))
    >>> registry.get_instance() is store
    True
    >>> registry.close()
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence

from taskstore.adapters import DatabaseConfig
from taskstore.errors import NotInitialized
from taskstore.logging import get_logger
from taskstore.schema import TableDescriptor
from taskstore.store import Store
from taskstore.tables import TASKBOARD_TABLES

logger = get_logger(__name__)


class StoreRegistry:
    """
    Explicit context object owning at most one initialized ``Store``.

    Args:
        tables: Declared tables passed to every store it builds.
        config_loader: Supplies the config when ``get_instance`` is called
            without one and nothing is cached (defaults to ``DB_*`` settings).
        store_factory: Builds a store from a config (tests inject fakes).
    """

    def __init__(
        self,
        tables: Sequence[TableDescriptor] = TASKBOARD_TABLES,
        *,
        config_loader: Callable[[], DatabaseConfig] | None = None,
        store_factory: Callable[[DatabaseConfig, Sequence[TableDescriptor]], Store] = Store,
    ):
        self._tables = tuple(tables)
        self._config_loader = config_loader or _config_from_settings
        self._store_factory = store_factory
        self._lock = threading.Lock()
        self._store: Store | None = None
        self._generation = 0

    @property
    def generation(self) -> int:
        """Number of stores built so far."""
        return self._generation

    def get_instance(self, config: DatabaseConfig | None = None) -> Store:
        """Return the live store, building or replacing it as needed.

        Args:
            config: Desired configuration. ``None`` keeps the current store,
                or loads settings when there is none.
        """
        with self._lock:
            current = self._store
            if current is not None and not current.is_closed:
                if config is None or config == current.config:
                    return current

            if config is None:
                config = self._config_loader()

            if current is not None:
                logger.info(
                    "registry.replacing",
                    old_backend=current.backend,
                    new_backend=config.backend.value,
                )
                self._store = None
                current.close()

            store = self._store_factory(config, self._tables)
            try:
                store.initialize()
            except BaseException:
                store.close()
                raise
            self._store = store
            self._generation += 1
            logger.debug("registry.instance_built", generation=self._generation, **config.redacted())
            return store

    def current(self) -> Store:
        """The live store; raises ``NotInitialized`` when there is none."""
        store = self._store
        if store is None or store.is_closed:
            raise NotInitialized("No store has been initialized in this registry")
        return store

    def close(self) -> None:
        """Close the live store, if any. Idempotent."""
        with self._lock:
            store, self._store = self._store, None
        if store is not None:
            store.close()


def _config_from_settings() -> DatabaseConfig:
    from taskstore.settings import load_settings

    return load_settings().to_config()


__all__ = ["StoreRegistry"]
