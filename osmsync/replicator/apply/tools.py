"""
External collaborators of the Applier.

The database is only ever touched through two executables: the apply tool,
which imports a directory of decompressed change-files, and the migration
tool, which is run once before the first batch. Decompression of the
change-files into the scratch area is a third, in-process capability.

All three are narrow protocols so the Applier can be tested with fakes.

Invariants:
    - A cancelled tool process is terminated, then killed after a grace period
    - Exit code 15, or death by SIGTERM, means the tool asked for shutdown
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import shutil
import signal
import zlib
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..config import MetaMode, ToolsConfig
from ..errors import BatchPreparationError, MigrationError

logger = logging.getLogger(__name__)

SHUTDOWN_EXIT_CODE = 15


def is_shutdown_exit(exit_code: int) -> bool:
    """Whether a tool's exit status means it was asked to shut down."""
    return exit_code in (SHUTDOWN_EXIT_CODE, -signal.SIGTERM)


@runtime_checkable
class ApplyTool(Protocol):
    """Imports a directory of change-files into the database."""

    async def apply(self, osc_dir: Path, version: str, meta_mode: MetaMode) -> int:
        """Run one import and return the tool's exit code."""
        ...


@runtime_checkable
class MigrationTool(Protocol):
    """Brings the database schema up to date."""

    async def migrate(self) -> None:
        """Run the migration.

        Raises:
            MigrationError: If the migration did not complete
        """
        ...


@runtime_checkable
class Decompressor(Protocol):
    """Expands one compressed change-file."""

    def decompress(self, source: Path, dest: Path) -> None:
        """Write the decompressed content of ``source`` to ``dest``.

        Raises:
            BatchPreparationError: If ``source`` is missing or corrupt
        """
        ...


class GzipDecompressor:
    """Decompressor for gzip change-files."""

    def decompress(self, source: Path, dest: Path) -> None:
        try:
            with gzip.open(source, "rb") as src, open(dest, "wb") as dst:
                shutil.copyfileobj(src, dst)
        except FileNotFoundError:
            raise BatchPreparationError(f"Missing file: {source}")
        except (OSError, EOFError, zlib.error) as e:
            Path(dest).unlink(missing_ok=True)
            raise BatchPreparationError(f"Failed to decompress {source}: {e}") from e


async def _run_process(args: list[str], cwd: str, grace_seconds: float) -> int:
    """Run ``args`` to completion, terminating it if the caller is cancelled."""
    process = await asyncio.create_subprocess_exec(*args, cwd=cwd)
    try:
        return await process.wait()
    except asyncio.CancelledError:
        if process.returncode is None:
            logger.info(f"Terminating {args[0]} (pid {process.pid})")
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"{args[0]} did not exit after SIGTERM, killing it")
                process.kill()
                await process.wait()
        raise


class SubprocessApplyTool:
    """ApplyTool running the database's import executable.

    Example:
        >>> tool = SubprocessApplyTool(ToolsConfig())
        >>> exit_code = await tool.apply(Path("/tmp/osm-3s_update_x/process_5"), version, MetaMode.ATTIC)
    """

    def __init__(self, config: ToolsConfig) -> None:
        self.config = config
        self.executable = config.resolve(config.apply_tool)

    def command(self, osc_dir: Path, version: str, meta_mode: MetaMode) -> list[str]:
        return [
            self.executable,
            f"--osc-dir={osc_dir}",
            f"--version={version}",
            *meta_mode.tool_args,
            "--flush-size=0",
        ]

    async def apply(self, osc_dir: Path, version: str, meta_mode: MetaMode) -> int:
        args = self.command(osc_dir, version, meta_mode)
        logger.debug("Running apply tool", extra={"args": args})
        try:
            return await _run_process(
                args, self.config.exec_dir, self.config.terminate_grace_seconds
            )
        except OSError as e:
            logger.error(f"Cannot start apply tool {self.executable}: {e}")
            return 127


class SubprocessMigrationTool:
    """MigrationTool running the database's migration executable."""

    def __init__(self, config: ToolsConfig) -> None:
        self.config = config
        self.executable = config.resolve(config.migration_tool)

    async def migrate(self) -> None:
        args = [self.executable, "--migrate"]
        try:
            exit_code = await _run_process(
                args, self.config.exec_dir, self.config.terminate_grace_seconds
            )
        except OSError as e:
            raise MigrationError(f"Cannot start migration tool {self.executable}: {e}") from e

        if exit_code != 0:
            raise MigrationError(f"Migration tool exited with code {exit_code}")
