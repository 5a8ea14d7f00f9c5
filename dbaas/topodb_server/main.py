"""
TopoDB Server - Main entry point.

This module starts the TopoDB server with all components:
- Entity store (SQLite)
- Cascade engine and query engines
- HTTP server (REST API)

Usage:
    python -m dbaas.topodb_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Schema exists before the HTTP server accepts requests
    - One cascade lock manager per store
    - Graceful shutdown stops accepting requests before exiting

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
from aiohttp import web

from .api import TopoDBServicer, create_http_app
from .cascade import CascadeEngine, SubtreeLockManager
from .config import ServerConfig
from .query import HierarchyQueryEngine, TagQueryEngine
from .store import EntityStore

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """TopoDB Server orchestrator.

    Manages the lifecycle of all server components:
    - Entity store
    - Cascade and query engines
    - HTTP server

    Attributes:
        config: Server configuration
        store: SQLite entity store
        servicer: Service implementation behind the HTTP API

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: EntityStore | None = None
        self.servicer: TopoDBServicer | None = None
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start the server and block until shutdown is requested."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting TopoDB server")
        self.config.log_config()

        try:
            storage = self.config.storage
            self.store = EntityStore(
                data_dir=storage.data_dir,
                db_filename=storage.db_filename,
                wal_mode=storage.wal_mode,
                busy_timeout_ms=storage.busy_timeout_ms,
                cache_size_pages=storage.cache_size_pages,
                scan_page_size=storage.scan_page_size,
            )
            await self.store.initialize()

            cascade = CascadeEngine(
                self.store,
                locks=SubtreeLockManager(),
                wait_on_conflict=self.config.cascade.wait_on_conflict,
                checkpoint_interval=self.config.cascade.checkpoint_interval,
            )
            self.servicer = TopoDBServicer(
                store=self.store,
                cascade=cascade,
                hierarchy=HierarchyQueryEngine(self.store),
                tags=TagQueryEngine(self.store),
            )

            app = create_http_app(self.servicer, self.config.http)
            self._runner = web.AppRunner(app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.config.http.host, self.config.http.port)
            await site.start()

            self._running = True
            logger.info(
                f"TopoDB server started on http://{self.config.http.host}:{self.config.http.port}"
            )

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            if self._runner:
                await self._runner.cleanup()
                self._runner = None
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping TopoDB server")

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        self._running = False
        logger.info("TopoDB server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
