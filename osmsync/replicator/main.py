"""
osmsync replicator - Main entry point.

This module starts one replication role per process:
- fetch: mirrors the producer's diffs into the diff directory
- apply: feeds the mirrored diffs into the database

Usage:
    osmsync-replicator fetch
    osmsync-replicator apply

Configuration is entirely via environment variables.
See config.py for all available settings.

Exit codes:
    0   clean shutdown (signal)
    1   fatal error (configuration, migration, lock held)
    15  the apply tool requested shutdown

Invariants:
    - At most one process per role and directory (PID lock)
    - SIGTERM/SIGINT cancel the role's token; loops finish their cleanup
    - The lock is released on every exit path

How to change safely:
    - Keep exit codes stable, supervisors depend on them
    - Test shutdown while a batch is in flight
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

import json_log_formatter

from .apply import Applier, GzipDecompressor, SubprocessApplyTool, SubprocessMigrationTool
from .config import ReplicatorConfig
from .errors import ConfigurationError, LockHeldError, MigrationError, ShutdownRequested
from .fetch import Fetcher, HttpxFetcher, RemoteStateClient
from .roles import Role
from .runtime.cancellation import CancellationToken
from .runtime.lock import PidLock
from .store.artifacts import ArtifactStore
from .store.cursor import Cursor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1


def setup_logging(config: ReplicatorConfig, role: Role | None = None) -> None:
    """Configure logging based on configuration.

    Args:
        config: Replicator configuration
        role: Role whose log file is written when file logging is enabled
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [handler]

    if config.observability.log_to_file and role is not None:
        log_path = role.descriptor.log_path(config.storage)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = handlers

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class Replicator:
    """Runs one replication role until shutdown.

    Attributes:
        role: Role run by this process
        config: Replicator configuration
        token: Cancellation token shared by every component of the role

    Example:
        >>> replicator = Replicator(Role.FETCH, config)
        >>> await replicator.run()
        >>> # ... until request_shutdown() is called
    """

    def __init__(
        self,
        role: Role,
        config: ReplicatorConfig | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self.role = role
        self.config = config or ReplicatorConfig.from_env()
        self.token = token or CancellationToken()
        self.lock = PidLock(role.descriptor.lock_path(self.config.storage))

        self.fetcher: Fetcher | None = None
        self.applier: Applier | None = None
        self.http: HttpxFetcher | None = None

    def build_fetcher(self) -> Fetcher:
        config = self.config
        self.http = HttpxFetcher(config.source, config.fetcher.parallelism, self.token)
        remote = RemoteStateClient(
            self.http, config.source.url, self.token, config.source.outage_retry_delay
        )
        return Fetcher(
            config.fetcher,
            ArtifactStore(config.storage.diff_dir),
            Cursor(config.storage.fetch_cursor_path, "fetch"),
            Cursor(config.storage.apply_cursor_path, "apply"),
            remote,
            self.http,
            self.token,
        )

    def build_applier(self) -> Applier:
        config = self.config
        return Applier(
            config.applier,
            ArtifactStore(config.storage.diff_dir),
            Cursor(config.storage.apply_cursor_path, "apply"),
            SubprocessApplyTool(config.tools),
            SubprocessMigrationTool(config.tools),
            GzipDecompressor(),
            self.token,
            work_dir=config.storage.work_dir,
        )

    async def run(self) -> None:
        """Take the role's lock and run the role's loop.

        Raises:
            LockHeldError: If another live process runs this role
            ConfigurationError: If the replication source was never reachable
            MigrationError: If the database migration failed
            ShutdownRequested: If the apply tool requested shutdown
        """
        descriptor = self.role.descriptor
        logger.info(f"Starting {descriptor.name} process")
        self.config.log_config()

        descriptor.base_dir(self.config.storage).mkdir(parents=True, exist_ok=True)
        self.lock.acquire()
        try:
            if self.role is Role.FETCH:
                self.fetcher = self.build_fetcher()
                try:
                    await self.fetcher.run()
                finally:
                    await self.http.close()
            else:
                self.applier = self.build_applier()
                await self.applier.run()
        finally:
            self.lock.release()
            logger.info("Shutdown complete")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self.token.cancel("Shutdown signal received")


def exit_code_for(error: BaseException) -> int:
    """Process exit code for an error that ended a role."""
    if isinstance(error, ShutdownRequested):
        return error.exit_code
    return EXIT_FATAL


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Replicate OSM diffs into a local database")
    parser.add_argument("role", choices=["fetch", "apply"], help="Role to run in this process")
    args = parser.parse_args(argv)
    role = Role.parse(args.role)

    # Load configuration
    try:
        config = ReplicatorConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_FATAL)

    # Setup logging
    setup_logging(config, role)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    replicator = Replicator(role, config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        replicator.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    exit_code = EXIT_OK
    try:
        loop.run_until_complete(replicator.run())
    except (ConfigurationError, LockHeldError, MigrationError) as e:
        logger.error(f"{role.descriptor.name} failed: {e}")
        exit_code = exit_code_for(e)
    except ShutdownRequested as e:
        exit_code = exit_code_for(e)
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
