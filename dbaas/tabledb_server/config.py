"""
Configuration management for TableDB Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set an explicit admin token
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEV_ADMIN_TOKEN = "12344567899"


@dataclass(frozen=True)
class StorageConfig:
    """Storage configuration.

    Attributes:
        admin_data_source: SQLite target for the metadata catalogs
        user_data_source: SQLite target for the default user-table shard
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    admin_data_source: str = ":memory:"
    user_data_source: str = ":memory:"
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            admin_data_source=os.getenv("TABLEDB_ADMIN_DATA_SOURCE", ":memory:"),
            user_data_source=os.getenv("TABLEDB_USER_DATA_SOURCE", ":memory:"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration.

    Attributes:
        host: Address to bind
        port: Port to listen on
        admin_token: Token required by /admin routes
    """

    host: str = "0.0.0.0"
    port: int = 8080
    admin_token: str = DEV_ADMIN_TOKEN

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            admin_token=os.getenv("TABLEDB_ADMIN_TOKEN", DEV_ADMIN_TOKEN),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        storage: Storage configuration
        http: HTTP server configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.admin_data_source:
            raise ValueError("TABLEDB_ADMIN_DATA_SOURCE must not be empty")
        if not self.storage.user_data_source:
            raise ValueError("TABLEDB_USER_DATA_SOURCE must not be empty")
        if self.storage.busy_timeout_ms < 0:
            raise ValueError("SQLITE_BUSY_TIMEOUT_MS must not be negative")
        if not 0 < self.http.port < 65536:
            raise ValueError(f"HTTP_PORT out of range: {self.http.port}")
        if not self.http.admin_token:
            raise ValueError("TABLEDB_ADMIN_TOKEN must not be empty")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if self.http.admin_token == DEV_ADMIN_TOKEN:
            logger.warning("Using the development admin token. Set TABLEDB_ADMIN_TOKEN.")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "admin_data_source": self.storage.admin_data_source,
                "user_data_source": self.storage.user_data_source,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "log_level": self.observability.log_level,
                "log_format": self.observability.log_format,
            },
        )
