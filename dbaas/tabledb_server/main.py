"""
TableDB Server - Main entry point.

This module starts the TableDB server with all components:
- Store factory (shard cache)
- Metadata store (catalogs)
- Delegated store (row-level access control)
- HTTP server

Usage:
    python -m dbaas.tabledb_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Catalogs are initialized before the server accepts requests
    - Shutdown closes the catalog and every shard backend

How to change safely:
    - Add new components with enable/disable flags
    - Keep construction order: factory, metadata, delegated store, HTTP app
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn

from .api import create_http_app
from .config import ServerConfig
from .store import DelegatedStore, MetadataStore, StoreFactory

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class Server:
    """TableDB Server orchestrator.

    Attributes:
        config: Server configuration
        factory: Shard backend factory
        metadata: Metadata store
        delegated: Delegated store

    Example:
        >>> server = Server()
        >>> server.start()
        >>> app = server.app
        >>> server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self.factory: StoreFactory | None = None
        self.metadata: MetadataStore | None = None
        self.delegated: DelegatedStore | None = None
        self.app = None

    def start(self) -> None:
        """Build every component and the HTTP app."""
        logger.info("Starting TableDB server")
        self.config.log_config()

        storage = self.config.storage
        self.factory = StoreFactory(busy_timeout_ms=storage.busy_timeout_ms)
        self.metadata = MetadataStore.open(
            admin_data_source=storage.admin_data_source,
            user_store_data_source=storage.user_data_source,
            factory=self.factory,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        self.delegated = DelegatedStore(self.metadata, self.factory)
        self.app = create_http_app(
            self.metadata,
            self.delegated,
            admin_token=self.config.http.admin_token,
        )
        logger.info("TableDB server started successfully")

    def stop(self) -> None:
        """Close the catalog and every shard."""
        logger.info("Stopping TableDB server")
        if self.metadata:
            self.metadata.close()
        if self.factory:
            self.factory.close()
        logger.info("TableDB server stopped")


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)
    try:
        server.start()
        uvicorn.run(
            server.app,
            host=config.http.host,
            port=config.http.port,
            log_config=None,
        )
    except Exception as e:
        logger.error(f"Server startup failed: {e}", exc_info=True)
        raise
    finally:
        server.stop()


if __name__ == "__main__":
    main()
