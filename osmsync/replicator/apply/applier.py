"""
Diff applier.

The Applier feeds the artifacts published by the Fetcher into the
database through the external apply tool, one contiguous batch at a
time. It is the only writer of the apply cursor.

Per iteration:
    1. Collect the longest run of available artifacts after the cursor
    2. Decompress them into a scratch directory as ``<id:09d>.osc``
    3. Read the data version from the last artifact's metadata
    4. Run the apply tool, retrying failures, and advance the cursor

Invariants:
    - Artifacts are applied in strictly increasing order, never skipping an ID
    - The cursor is written only after the apply tool reported success
    - A batch that keeps failing stays pending; it is never dropped
    - The scratch area is removed on every exit path

How to change safely:
    - Keep the order of the decompressed files global across the batch
    - Treat any new tool exit code explicitly in apply_batch
    - Test shutdown while the apply tool is running
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from ..config import ApplierConfig
from ..errors import (
    ApplyToolFailure,
    BatchPreparationError,
    GapError,
    IntegrityError,
    ShutdownRequested,
)
from ..runtime.cancellation import CancellationToken
from ..runtime.timing import PollPolicy
from ..store.artifacts import ArtifactStore
from ..store.batch import Batch
from ..store.cursor import Cursor
from .tools import ApplyTool, Decompressor, MigrationTool, is_shutdown_exit

logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "osm-3s_update_"


def osc_filename(sequence_id: int) -> str:
    """Name of a decompressed change-file inside a batch directory."""
    return f"{sequence_id:09d}.osc"


class Applier:
    """Applies published diffs to the database in contiguous batches.

    Attributes:
        config: Applier configuration
        store: Artifact store of the diff directory
        cursor: Apply cursor in the database directory
        apply_tool: Database import tool
        migration_tool: Database migration tool
        decompressor: Change-file decompressor

    Example:
        >>> applier = Applier(config, store, cursor, apply_tool, migration_tool, decompressor, token)
        >>> await applier.run()  # Runs until the token is cancelled
    """

    def __init__(
        self,
        config: ApplierConfig,
        store: ArtifactStore,
        cursor: Cursor,
        apply_tool: ApplyTool,
        migration_tool: MigrationTool,
        decompressor: Decompressor,
        token: CancellationToken,
        clock: Callable[[], float] = time.monotonic,
        work_dir: str | Path | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.cursor = cursor
        self.apply_tool = apply_tool
        self.migration_tool = migration_tool
        self.decompressor = decompressor
        self.token = token
        self.clock = clock
        self.work_dir = Path(work_dir) if work_dir is not None else Path(tempfile.gettempdir())
        self.policy = PollPolicy(
            initial_delay=config.initial_delay,
            expected_interval=config.expected_interval,
            min_delay=config.min_delay,
        )

        self.current_id = 0
        self.last_collected: float | None = None
        self._running = False
        self._scratch: Path | None = None
        self._batches_applied = 0
        self._failed_attempts = 0

    def resolve_start(self) -> int:
        """Starting sequence ID: the explicit one, or the persisted apply cursor."""
        if self.config.start is not None:
            logger.info(f"Starting from OSC file {self.config.start}")
            return self.config.start

        current = self.cursor.read()
        logger.info(f"Auto mode: resuming from OSC file {current}")
        return current

    async def run(self) -> None:
        """Run the apply loop until cancelled.

        Raises:
            MigrationError: If the database migration failed
            ShutdownRequested: If the apply tool asked for shutdown
        """
        if self._running:
            logger.warning("Applier already running")
            return

        self._running = True
        self.current_id = self.resolve_start()
        logger.info(
            "Starting applier",
            extra={
                "diff_dir": str(self.store.root),
                "meta_mode": self.config.meta_mode.value,
                "current_id": self.current_id,
            },
        )

        try:
            logger.info("Running database migration")
            await self.token.run(self.migration_tool.migrate())

            logger.info("Deleting old temporary files and directories")
            self.remove_stale_scratch()

            with self.scratch_area():
                while not self.token.cancelled:
                    await self.run_iteration()
        except ShutdownRequested as e:
            if e.exit_code:
                logger.info("Apply tool requested shutdown")
                raise
            logger.info("Shutdown signal received, cleaning up...")
        except asyncio.CancelledError:
            logger.info("Applier cancelled")
        finally:
            self._running = False
            logger.info("Applier stopped", extra={"current_id": self.current_id})

    async def stop(self) -> None:
        """Request the apply loop to stop, terminating a running tool."""
        logger.info("Stopping applier")
        self.token.cancel("Applier stop requested")

    async def run_iteration(self) -> None:
        """Apply at most one batch, or wait for the next artifact."""
        loop = asyncio.get_running_loop()
        try:
            batch = await loop.run_in_executor(None, self.collect_batch, self.current_id)
        except GapError as e:
            delay = self.policy.next_delay(self.last_collected, self.clock())
            logger.info(f"No new OSC files available ({e}), waiting {delay:.0f}s")
            await self.token.sleep_or_raise(delay)
            return

        self.last_collected = self.clock()
        if batch.count == 1:
            logger.info(f"Collected one OSC file: {batch.end}")
        else:
            logger.info(f"Collected batch: {batch.start} to {batch.end} ({batch.count} OSC files)")

        out_dir = self._batch_dir(batch)
        try:
            try:
                await loop.run_in_executor(None, self.prepare_batch, batch, out_dir)
                version = await self.read_version(batch.end)
            except (BatchPreparationError, IntegrityError, OSError) as e:
                self._failed_attempts += 1
                logger.error(f"Failed to prepare batch {batch}, retrying: {e}")
                await self.token.sleep_or_raise(self.config.failure_delay)
                return

            if not await self.apply_batch(out_dir, version):
                self._failed_attempts += 1
                logger.error("Failed to apply batch, will retry")
                await self.token.sleep_or_raise(self.config.failure_delay)
                return

            try:
                self.cursor.write(batch.end)
            except OSError as e:
                self._failed_attempts += 1
                logger.error(f"Could not save apply cursor {batch.end}, batch will be applied again: {e}")
                await self.token.sleep_or_raise(self.config.failure_delay)
                return

            self.current_id = batch.end
            self._batches_applied += 1
            logger.info(f"Successfully applied batch up to OSC file {self.current_id}")
        finally:
            shutil.rmtree(out_dir, ignore_errors=True)

    def collect_batch(self, current_id: int) -> Batch:
        """Longest contiguous run of available artifacts after ``current_id``.

        Stops at the first ID that is not fully available, so a gap is
        never skipped over.

        Raises:
            GapError: If the next ID is not available yet
        """
        end = current_id
        for sequence_id in range(current_id + 1, current_id + self.config.max_batch_size + 1):
            if not self.store.is_available(sequence_id):
                break
            end = sequence_id

        if end == current_id:
            raise GapError(current_id + 1)
        return Batch(current_id, end)

    def prepare_batch(self, batch: Batch, out_dir: Path) -> None:
        """Decompress every change-file of ``batch`` into ``out_dir``.

        Raises:
            BatchPreparationError: If a change-file is missing or corrupt
        """
        out_dir.mkdir(parents=True, exist_ok=True)
        if batch.count == 1:
            logger.info(f"Decompressing OSC file: {batch.end}")
        else:
            logger.info(f"Decompressing batch: {batch.start} to {batch.end} ({batch.count} OSC files)")

        for sequence_id in batch.ids():
            self.token.raise_if_cancelled()
            self.decompressor.decompress(
                self.store.change_path(sequence_id), out_dir / osc_filename(sequence_id)
            )

    async def read_version(self, sequence_id: int) -> str:
        """Data version (``timestamp``) of the metadata file of ``sequence_id``.

        The metadata file may still be settling, so reads are retried.

        Raises:
            IntegrityError: If no timestamp could be read
        """
        attempts = self.config.version_wait_attempts
        last_error: IntegrityError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return self.store.read_state(sequence_id).timestamp
            except IntegrityError as e:
                last_error = e
                if attempt < attempts:
                    await self.token.sleep_or_raise(self.config.version_wait_delay)

        logger.error(f"Could not extract timestamp from {self.store.state_path(sequence_id)}")
        raise IntegrityError(f"No timestamp for OSC file {sequence_id}: {last_error}")

    async def apply_batch(self, osc_dir: Path, version: str) -> bool:
        """Run the apply tool on ``osc_dir``, retrying failures.

        Returns:
            True on success, False once the retry budget is spent

        Raises:
            ShutdownRequested: If the tool asked for shutdown or the token fired
        """
        display_version = version.replace("\\", "")
        logger.info(f"Applying batch to database (version: {display_version})")

        max_retries = self.config.max_retries
        for attempt in range(1, max_retries + 1):
            exit_code = await self.token.run(
                self.apply_tool.apply(osc_dir, version, self.config.meta_mode)
            )
            if exit_code == 0:
                return True
            if is_shutdown_exit(exit_code):
                logger.info("Apply tool received SIGTERM, shutting down gracefully")
                raise ShutdownRequested("Apply tool requested shutdown", exit_code=15)

            failure = ApplyToolFailure(exit_code)
            logger.error(
                f"{failure}, retry {attempt}/{max_retries}",
                extra={"exit_code": exit_code, "osc_dir": str(osc_dir)},
            )
            if attempt < max_retries:
                await self.token.sleep_or_raise(self.config.retry_delay)

        logger.error(f"Failed to apply batch after {max_retries} attempts")
        return False

    def remove_stale_scratch(self) -> int:
        """Remove scratch directories left behind by earlier runs."""
        removed = 0
        for path in self.work_dir.glob(f"{SCRATCH_PREFIX}*"):
            if path.is_dir():
                shutil.rmtree(path, ignore_errors=True)
            else:
                path.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info(f"Removed {removed} stale scratch entr{'y' if removed == 1 else 'ies'}")
        return removed

    @contextmanager
    def scratch_area(self) -> Iterator[Path]:
        """Private scratch directory for this run, removed on exit."""
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self._scratch = Path(tempfile.mkdtemp(prefix=SCRATCH_PREFIX, dir=self.work_dir))
        try:
            yield self._scratch
        finally:
            shutil.rmtree(self._scratch, ignore_errors=True)
            self._scratch = None

    def _batch_dir(self, batch: Batch) -> Path:
        if self._scratch is None:
            raise RuntimeError("Scratch area is not open")
        out_dir = self._scratch / f"process_{batch.end}"
        shutil.rmtree(out_dir, ignore_errors=True)
        return out_dir

    @property
    def stats(self) -> dict[str, Any]:
        """Get applier statistics."""
        return {
            "running": self._running,
            "current_id": self.current_id,
            "batches_applied": self._batches_applied,
            "failed_attempts": self._failed_attempts,
            "meta_mode": self.config.meta_mode.value,
        }
