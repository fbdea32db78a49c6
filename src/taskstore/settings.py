"""Environment-driven settings for the storage layer.

Manifesto:
    Deployments configure the store with ``DB_*`` environment variables (or
    a ``.env`` file); code configures it with a ``DatabaseConfig``. This module
    is the bridge: it validates environment input with pydantic and turns it
    into an immutable ``DatabaseConfig``.

    - **Pydantic validation:** Bad env input fails at startup with ``ConfigInvalid``
    - **URL or parts:** ``DB_URL`` wins; otherwise host/port/name/user/password
    - **Embedded fallback:** ``DB_BACKEND=auto`` with no host means SQLite

Examples:
    >>> settings = StoreSettings(backend="postgresql", host="db", name="tasks")
    >>> settings.to_config().sslmode
    'disable'

Tags:
    settings, configuration, pydantic, environment, taskstore

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskstore.adapters.types import DEFAULT_SQLITE_PATH, DatabaseConfig, DatabaseType
from taskstore.errors import ConfigInvalid
from taskstore.logging import configure_logging


class StoreBackend(str, Enum):
    """Backend selector accepted from the environment."""

    AUTO = "auto"
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    POSTGRES = "postgres"


class StoreSettings(BaseSettings):
    """Store configuration read from ``DB_*`` environment variables.

    Fields
    ──────
    backend          : auto | sqlite | postgresql | postgres
    url              : Full connection URL, overrides the discrete fields
    host/port/name   : PostgreSQL server location
    user/password    : PostgreSQL credentials
    ssl/ssl_verify   : TLS on, and whether to verify the server certificate
    path             : SQLite file path
    pool_*           : Pool bounds and acquire behaviour
    log_level        : structlog level
    log_json         : JSON output (None = auto-detect from TTY)
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Backend ──────────────────────────────────────────────────
    backend: StoreBackend = Field(default=StoreBackend.AUTO)
    url: str | None = Field(default=None, description="sqlite:///path or postgresql://...")

    # ── PostgreSQL ───────────────────────────────────────────────
    host: str | None = None
    port: int = Field(default=5432, ge=1, le=65535)
    name: str = Field(default="encore_tasks", description="Database name")
    user: str | None = None
    password: str | None = None
    ssl: bool = False
    ssl_verify: bool = True

    # ── SQLite ───────────────────────────────────────────────────
    path: str = Field(default=DEFAULT_SQLITE_PATH)

    # ── Pool ─────────────────────────────────────────────────────
    pool_min: int = Field(default=1, ge=0)
    pool_max: int = Field(default=10, ge=1)
    acquire_timeout: float = Field(default=2.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    acquire_retries: int = Field(default=3, ge=0)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_json: bool | None = None

    @field_validator("backend", mode="before")
    @classmethod
    def _normalise_backend(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value!r}")
        return level

    # ── Derived ──────────────────────────────────────────────────

    def configure_logging(self, service: str = "taskstore") -> None:
        """Apply ``log_level`` / ``log_json`` to structlog."""
        configure_logging(level=self.log_level, json_format=self.log_json, service=service)

    def resolve_backend(self) -> DatabaseType:
        """Concrete backend after applying the ``auto`` rule."""
        if self.backend == StoreBackend.AUTO:
            if self.url:
                return DatabaseConfig.from_url(self.url).backend
            return DatabaseType.POSTGRESQL if self.host else DatabaseType.SQLITE
        return DatabaseType.parse(self.backend.value)

    def to_config(self) -> DatabaseConfig:
        """Build and validate the immutable ``DatabaseConfig``."""
        pool = {
            "pool_min": self.pool_min,
            "pool_max": self.pool_max,
            "acquire_timeout": self.acquire_timeout,
            "connect_timeout": self.connect_timeout,
            "acquire_retries": self.acquire_retries,
        }
        backend = self.resolve_backend()

        if self.url:
            config = DatabaseConfig.from_url(self.url, **pool)
            if config.backend != backend:
                raise ConfigInvalid(
                    f"DB_URL selects {config.backend.value} but DB_BACKEND is {self.backend.value}",
                    key="url",
                )
            return config.validate()

        if backend == DatabaseType.SQLITE:
            return DatabaseConfig(backend=backend, path=self.path, **pool).validate()

        return DatabaseConfig(
            backend=backend,
            host=self.host,
            port=self.port,
            database=self.name,
            username=self.user,
            password=self.password,
            ssl=self.ssl,
            ssl_verify=self.ssl_verify,
            **pool,
        ).validate()


def load_settings(**overrides: Any) -> StoreSettings:
    """Read settings from the environment, raising ``ConfigInvalid`` on bad input."""
    try:
        return StoreSettings(**overrides)
    except ValidationError as exc:
        first = exc.errors()[0]
        key = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ConfigInvalid(f"Invalid store settings: {first.get('msg')}", key=key, cause=exc) from exc


__all__ = [
    "StoreBackend",
    "StoreSettings",
    "load_settings",
]
