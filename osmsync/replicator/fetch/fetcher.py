"""
Diff fetcher.

The Fetcher polls the producer for its latest sequence ID and downloads
every newer artifact into the diff directory, one bounded batch at a
time. It is the only writer of the fetch cursor.

Per iteration:
    1. Ask the Remote State Client for the latest sequence ID
    2. Nothing new: wait, aligned to the producer's cadence, then quick
       retries, then slow retries
    3. Otherwise download the missing files of (current, batch_end],
       publish them and advance the fetch cursor if all of them verified

Invariants:
    - The cursor advances only after every artifact of the batch is published
    - Artifacts already on disk and verified are never downloaded again
    - Temp files are discarded on every exit path

How to change safely:
    - Keep one batch in flight at a time
    - Keep parallel transfers within one HTTP connection pool
    - Test crash/restart with partially downloaded batches
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from ..config import FetcherConfig
from ..errors import PartialBatchError, ShutdownRequested, TransportError
from ..runtime.cancellation import CancellationToken
from ..runtime.timing import PollPolicy
from ..store.artifacts import ArtifactKind, ArtifactStore
from ..store.batch import Batch
from ..store.cursor import Cursor, merge_cursors
from ..store.sharding import shard_path
from .http import HttpFetcher
from .remote_state import RemoteStateClient

logger = logging.getLogger(__name__)


class Fetcher:
    """Downloads replication diffs in ordered, verified batches.

    Attributes:
        config: Fetcher configuration
        store: Artifact store of the diff directory
        fetch_cursor: Cursor written after each successful batch
        apply_cursor: Apply cursor, read once for automatic resume
        remote: Producer state client
        http: HTTP capability used for artifact transfers

    Example:
        >>> fetcher = Fetcher(config, store, fetch_cursor, apply_cursor, remote, http, token)
        >>> await fetcher.run()  # Runs until the token is cancelled
    """

    def __init__(
        self,
        config: FetcherConfig,
        store: ArtifactStore,
        fetch_cursor: Cursor,
        apply_cursor: Cursor,
        remote: RemoteStateClient,
        http: HttpFetcher,
        token: CancellationToken,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.store = store
        self.fetch_cursor = fetch_cursor
        self.apply_cursor = apply_cursor
        self.remote = remote
        self.http = http
        self.token = token
        self.clock = clock
        self.policy = PollPolicy(
            initial_delay=config.initial_delay,
            expected_interval=config.expected_interval,
            quick_retry_delay=config.quick_retry_delay,
            quick_retry_count=config.quick_retry_count,
            slow_retry_delay=config.slow_retry_delay,
        )

        self.current_id = 0
        self.last_success: float | None = None
        self._running = False
        self._slow_retry = False
        self._batches_fetched = 0
        self._failed_batches = 0

    def resolve_start(self) -> int:
        """Starting sequence ID: the explicit one, or the furthest cursor."""
        if self.config.start is not None:
            logger.info(f"Starting from OSC file {self.config.start}")
            return self.config.start

        fetch_id = self.fetch_cursor.read()
        apply_id = self.apply_cursor.read()
        current = merge_cursors(fetch_id, apply_id)
        if fetch_id > apply_id:
            logger.info(f"Auto mode: resuming fetch from OSC file {current} (fetch ahead of apply)")
        else:
            logger.info(f"Auto mode: resuming from OSC file {current} (database state)")
        return current

    async def run(self) -> None:
        """Run the fetch loop until cancelled.

        Raises:
            ConfigurationError: If the replication source never answered
        """
        if self._running:
            logger.warning("Fetcher already running")
            return

        self._running = True
        self.current_id = self.resolve_start()
        logger.info(
            "Starting fetcher",
            extra={
                "source_url": self.remote.source_url,
                "diff_dir": str(self.store.root),
                "current_id": self.current_id,
            },
        )

        try:
            while not self.token.cancelled:
                await self.run_iteration()
        except ShutdownRequested:
            logger.info("Shutdown signal received, cleaning up...")
        except asyncio.CancelledError:
            logger.info("Fetcher cancelled")
        finally:
            removed = self.store.discard_all_temp()
            if removed:
                logger.info(f"Removed {removed} temporary file(s)")
            self._running = False
            logger.info("Fetcher stopped", extra={"current_id": self.current_id})

    async def stop(self) -> None:
        """Request the fetch loop to stop after the current wait or transfer."""
        logger.info("Stopping fetcher")
        self.token.cancel("Fetcher stop requested")

    async def run_iteration(self) -> None:
        """Poll the producer once and download at most one batch."""
        latest = await self.remote.latest_available()

        if latest <= self.current_id:
            found = await self._wait_for_new_data()
            if found is None:
                return
            latest = found

        batch = Batch.bounded(self.current_id, latest, self.config.max_batch_size)
        logger.info(f"Fetching {batch.describe()}")

        try:
            await self.download_batch(batch)
        except (PartialBatchError, OSError) as e:
            await self._batch_failed(f"Batch download failed, retrying: {e}")
            return

        try:
            self.fetch_cursor.write(batch.end)
        except OSError as e:
            await self._batch_failed(f"Could not save fetch cursor {batch.end}, retrying: {e}")
            return

        self.current_id = batch.end
        self.last_success = self.clock()
        self._slow_retry = False
        self._batches_fetched += 1

    async def _batch_failed(self, message: str) -> None:
        self._failed_batches += 1
        logger.error(message)
        await self.token.sleep_or_raise(self.config.batch_retry_delay)

    async def _wait_for_new_data(self) -> int | None:
        """Wait for the producer to move past the current ID.

        Returns:
            The newer latest ID if a quick retry saw one, else None
        """
        next_id = self.current_id + 1

        if self._slow_retry:
            logger.info(f"OSC file {next_id} not available, waiting {self.policy.slow_retry_delay:g}s")
            await self.token.sleep_or_raise(self.policy.slow_retry_delay)
            return None

        delay = self.policy.next_delay(self.last_success, self.clock())
        if delay > 0:
            logger.info(
                f"No new OSC files available (current: {self.current_id}), sleeping {delay:.0f}s"
            )
            await self.token.sleep_or_raise(delay)
            return None

        count = self.policy.quick_retry_count
        for attempt in range(1, count + 1):
            await self.token.sleep_or_raise(self.policy.quick_retry_delay)
            latest = await self.remote.latest_available()
            if latest > self.current_id:
                return latest
            if attempt < count:
                logger.info(f"Waiting for OSC file {next_id} (quick retry {attempt}/{count})")

        logger.info(
            f"OSC file {next_id} not available, falling back to "
            f"{self.policy.slow_retry_delay:g}s delays"
        )
        self._slow_retry = True
        await self.token.sleep_or_raise(self.policy.slow_retry_delay)
        return None

    def artifact_url(self, sequence_id: int, kind: ArtifactKind) -> str:
        return f"{self.remote.source_url}/{shard_path(sequence_id)}{kind.suffix}"

    async def download_batch(self, batch: Batch) -> None:
        """Make every artifact of ``batch`` available on disk.

        Verified artifacts already on disk are skipped. Missing files are
        downloaded to temp names with bounded parallelism and published
        afterwards. Files that published successfully stay in place even
        when the batch as a whole fails.

        Raises:
            PartialBatchError: If any artifact of the batch is not available
            ShutdownRequested: If cancelled while downloading
        """
        loop = asyncio.get_running_loop()
        requests = await loop.run_in_executor(None, self._scan_missing, batch)

        if not requests:
            if batch.count == 1:
                logger.info(f"Downloaded OSC file {batch.end} (cached)")
            else:
                logger.info(f"Downloaded {batch.count} OSC files (all cached)")
            return

        requested_ids = sorted({sequence_id for sequence_id, _ in requests})
        unwritable: set[int] = set()
        for sequence_id in requested_ids:
            try:
                self.store.ensure_directory(sequence_id)
            except OSError as e:
                logger.error(f"Cannot create directory for ID {sequence_id}: {e}")
                unwritable.add(sequence_id)
        if unwritable:
            requests = [request for request in requests if request[0] not in unwritable]
        failed_ids = set(unwritable)

        semaphore = asyncio.Semaphore(self.config.parallelism)

        async def transfer(sequence_id: int, kind: ArtifactKind) -> None:
            async with semaphore:
                await self.token.run(
                    self.http.download(
                        self.artifact_url(sequence_id, kind),
                        self.store.temp_path(sequence_id, kind),
                    )
                )

        try:
            results = await asyncio.gather(
                *(transfer(sequence_id, kind) for sequence_id, kind in requests),
                return_exceptions=True,
            )
        except BaseException:
            for sequence_id in requested_ids:
                self.store.discard_temp(sequence_id)
            raise

        shutdown: ShutdownRequested | None = None
        for (sequence_id, kind), result in zip(requests, results):
            if result is None:
                continue
            if isinstance(result, ShutdownRequested):
                shutdown = result
            elif isinstance(result, TransportError):
                logger.error(
                    f"Download failed ({result.reason}): ID {sequence_id}",
                    extra={"url": result.url, "reason": result.reason, "detail": result.detail},
                )
            else:
                logger.error(
                    f"Unexpected download error for ID {sequence_id}: {result!r}",
                    exc_info=result,
                )
            failed_ids.add(sequence_id)
            self.store.temp_path(sequence_id, kind).unlink(missing_ok=True)

        if shutdown is not None:
            for sequence_id in requested_ids:
                self.store.discard_temp(sequence_id)
            raise shutdown

        publish_ids = [sequence_id for sequence_id in requested_ids if sequence_id not in unwritable]
        unpublished = await loop.run_in_executor(None, self._publish_all, publish_ids)
        failed_ids.update(unpublished)

        if failed_ids:
            if batch.count == 1:
                logger.error(f"File failed verification: OSC file {batch.end}")
            else:
                logger.error(f"Some files failed verification in batch {batch.start + 1} to {batch.end}")
            raise PartialBatchError(batch.start, batch.end, sorted(failed_ids))

        if batch.count == 1:
            logger.info(f"Downloaded OSC file {batch.end}")
        else:
            logger.info(f"Downloaded {batch.describe()}")

    def _scan_missing(self, batch: Batch) -> list[tuple[int, ArtifactKind]]:
        return [
            (sequence_id, kind)
            for sequence_id in batch.ids()
            for kind in self.store.missing_kinds(sequence_id)
        ]

    def _publish_all(self, sequence_ids: list[int]) -> list[int]:
        unpublished = []
        for sequence_id in sequence_ids:
            try:
                ok = self.store.publish(sequence_id).ok
            except OSError as e:
                logger.error(f"Could not publish ID {sequence_id}: {e}")
                self.store.discard_temp(sequence_id)
                ok = False
            if not ok:
                unpublished.append(sequence_id)
        return unpublished

    @property
    def stats(self) -> dict[str, Any]:
        """Get fetcher statistics."""
        return {
            "running": self._running,
            "current_id": self.current_id,
            "batches_fetched": self._batches_fetched,
            "failed_batches": self._failed_batches,
            "source_verified": self.remote.verified,
        }
