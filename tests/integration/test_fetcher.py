"""
Integration tests for the Fetcher over httpx.MockTransport.

Tests cover:
- End-to-end batch download and cursor advance
- Idempotence of cached batches
- Re-download of corrupt artifacts
- Partial batch failures
- Automatic resume
- Waiting for new data and shutdown
"""

import asyncio

import httpx
import pytest

from osmsync.replicator.config import FetcherConfig, SourceConfig
from osmsync.replicator.errors import ConfigurationError, PartialBatchError
from osmsync.replicator.fetch import Fetcher, HttpxFetcher, RemoteStateClient
from osmsync.replicator.runtime.cancellation import CancellationToken
from osmsync.replicator.store.artifacts import ArtifactKind
from osmsync.replicator.store.batch import Batch
from osmsync.replicator.store.cursor import CURSOR_FILENAME, Cursor
from osmsync.replicator.store.sharding import shard_path

SOURCE = "https://replication.example.org/minute"


class StallingStream(httpx.AsyncByteStream):
    """Response body that sends a first chunk and then never finishes."""

    def __init__(self, stalled):
        self.stalled = stalled

    async def __aiter__(self):
        yield b"\x1f\x8b\x08 partial"
        self.stalled.set()
        await asyncio.sleep(3600)
        yield b""


class FakeProducer:
    """Replication source served through httpx.MockTransport.

    Attributes:
        latest: Sequence number announced in state.txt
        corrupt: IDs whose change file is served as garbage
        missing: IDs whose files answer 404
        stall: Event set once a file transfer hangs mid-body; None serves files normally
        requests: Paths requested so far
    """

    def __init__(self, latest, artifact_bytes):
        self.latest = latest
        self.artifact_bytes = artifact_bytes
        self.corrupt = set()
        self.missing = set()
        self.requests = []
        self.on_state = None
        self.reachable = True
        self.stall = None

    def handler(self, request):
        path = request.url.path[len("/minute/"):]
        self.requests.append(path)

        if not self.reachable:
            raise httpx.ConnectError("Connection refused", request=request)

        if path == "state.txt":
            if self.on_state is not None:
                self.on_state(self)
            return httpx.Response(
                200, text=f"sequenceNumber={self.latest}\ntimestamp=2026-10-18T00\\:00\\:00Z\n"
            )

        for kind in ArtifactKind:
            if path.endswith(kind.suffix):
                sequence_id = int(path[: -len(kind.suffix)].replace("/", ""))
                break
        else:
            return httpx.Response(404)

        if sequence_id > self.latest or sequence_id in self.missing:
            return httpx.Response(404)
        if self.stall is not None:
            return httpx.Response(200, stream=StallingStream(self.stall))
        if kind is ArtifactKind.CHANGE and sequence_id in self.corrupt:
            return httpx.Response(200, content=b"<html>oops</html>")
        return httpx.Response(200, content=self.artifact_bytes(sequence_id, kind))

    def file_requests(self):
        return [path for path in self.requests if path != "state.txt"]


class TestFetcher:
    """Tests for Fetcher."""

    @pytest.fixture
    def producer(self, artifact_bytes):
        return FakeProducer(5, artifact_bytes)

    @pytest.fixture
    def token(self):
        return CancellationToken()

    @pytest.fixture
    def fetch_cursor(self, diff_dir):
        return Cursor(diff_dir / CURSOR_FILENAME, "fetch")

    @pytest.fixture
    def apply_cursor(self, db_dir):
        return Cursor(db_dir / CURSOR_FILENAME, "apply")

    @pytest.fixture
    def make_fetcher(self, producer, token, store, fetch_cursor, apply_cursor):
        def _make(**overrides):
            values = dict(
                max_batch_size=360,
                parallelism=4,
                initial_delay=0,
                expected_interval=0,
                quick_retry_delay=0,
                quick_retry_count=2,
                slow_retry_delay=0,
                batch_retry_delay=0,
            )
            values.update(overrides)
            source = SourceConfig(
                url=SOURCE,
                download_retries=2,
                download_retry_delay=0,
                state_retries=1,
                state_retry_delay=0,
                outage_retry_delay=0,
            )
            http = HttpxFetcher(
                source, parallelism=4, token=token, transport=httpx.MockTransport(producer.handler)
            )
            remote = RemoteStateClient(http, SOURCE, token, outage_retry_delay=0)
            fetcher = Fetcher(
                FetcherConfig(**values), store, fetch_cursor, apply_cursor, remote, http, token
            )
            fetcher.current_id = fetcher.resolve_start()
            return fetcher

        return _make

    @pytest.mark.asyncio
    async def test_end_to_end_batch(self, make_fetcher, producer, store, fetch_cursor):
        """Producer at 5, cursors at 0: one batch 1-5, cursor 5."""
        fetcher = make_fetcher()

        await fetcher.run_iteration()

        assert fetch_cursor.read() == 5
        assert fetcher.current_id == 5
        assert all(store.is_available(i) for i in range(1, 6))
        assert len(producer.file_requests()) == 10
        assert f"{shard_path(3)}.osc.gz" in producer.file_requests()
        assert list(store.root.rglob("*.tmp")) == []
        assert fetcher.stats["batches_fetched"] == 1
        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_cached_batch_needs_no_requests(self, make_fetcher, producer, make_artifact, fetch_cursor):
        """A fully published batch is satisfied without network requests."""
        make_artifact(1, 2, 3, 4, 5)
        fetcher = make_fetcher()

        await fetcher.download_batch(Batch(0, 5))

        assert producer.requests == []
        assert not fetch_cursor.exists()
        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_second_download_is_idempotent(self, make_fetcher, producer):
        fetcher = make_fetcher()
        await fetcher.download_batch(Batch(0, 5))
        first = len(producer.requests)

        await fetcher.download_batch(Batch(0, 5))

        assert len(producer.requests) == first
        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_corrupt_local_file_is_downloaded_again(self, make_fetcher, producer, make_artifact, store):
        """A corrupt change file on disk counts as missing."""
        make_artifact(1, 2, 3, 4, 5)
        store.change_path(3).write_bytes(b"\x1f\x8b truncated")
        fetcher = make_fetcher()

        await fetcher.download_batch(Batch(0, 5))

        assert producer.file_requests() == [f"{shard_path(3)}.osc.gz"]
        assert store.is_available(3)
        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_corrupt_download_fails_batch(self, make_fetcher, producer, store, fetch_cursor):
        """A download that fails verification is never published."""
        producer.corrupt.add(3)
        fetcher = make_fetcher()

        with pytest.raises(PartialBatchError) as exc_info:
            await fetcher.download_batch(Batch(0, 5))

        assert exc_info.value.failed_ids == [3]
        assert not store.change_path(3).exists()
        assert all(store.is_available(i) for i in (1, 2, 4, 5))
        assert list(store.root.rglob("*.tmp")) == []
        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_cursor(self, make_fetcher, producer, store, fetch_cursor):
        """A failed transfer leaves the cursor where it was."""
        producer.missing.add(4)
        fetcher = make_fetcher()

        await fetcher.run_iteration()

        assert not fetch_cursor.exists()
        assert fetcher.current_id == 0
        assert fetcher.stats["failed_batches"] == 1
        assert not store.is_available(4)
        assert store.is_available(5)

        producer.missing.clear()
        producer.requests.clear()
        await fetcher.run_iteration()

        assert fetch_cursor.read() == 5
        assert sorted(producer.file_requests()) == [
            f"{shard_path(4)}.osc.gz",
            f"{shard_path(4)}.state.txt",
        ]
        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_batch_size_bound(self, make_fetcher, producer, fetch_cursor):
        producer.latest = 10
        fetcher = make_fetcher(max_batch_size=4)

        await fetcher.run_iteration()
        assert fetch_cursor.read() == 4

        await fetcher.run_iteration()
        assert fetch_cursor.read() == 8

        await fetcher.run_iteration()
        assert fetch_cursor.read() == 10
        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_auto_resume_from_furthest_cursor(self, make_fetcher, fetch_cursor, apply_cursor):
        """fetch=5, apply=2 resumes at 5; apply ahead wins otherwise."""
        fetch_cursor.write(5)
        apply_cursor.write(2)
        assert make_fetcher().current_id == 5

        apply_cursor.write(7)
        assert make_fetcher().current_id == 7

    @pytest.mark.asyncio
    async def test_explicit_start(self, make_fetcher, fetch_cursor):
        fetch_cursor.write(5)
        assert make_fetcher(start=3).current_id == 3

    @pytest.mark.asyncio
    async def test_quick_retry_picks_up_new_data(self, make_fetcher, producer, fetch_cursor):
        """No new data: quick retries poll until the producer moves on."""
        fetcher = make_fetcher()
        await fetcher.run_iteration()
        polls = []

        def advance(p):
            polls.append(p.latest)
            if len(polls) == 2:
                p.latest = 6

        producer.on_state = advance
        await fetcher.run_iteration()

        assert fetch_cursor.read() == 6
        assert len(polls) == 2
        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_falls_back_to_slow_retries(self, make_fetcher, producer, fetch_cursor):
        fetcher = make_fetcher(quick_retry_count=2)
        await fetcher.run_iteration()
        producer.requests.clear()

        await fetcher.run_iteration()

        assert producer.requests.count("state.txt") == 3
        assert fetcher._slow_retry

        producer.requests.clear()
        await fetcher.run_iteration()
        assert producer.requests.count("state.txt") == 1
        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_run_until_cancelled(self, make_fetcher, producer, token, fetch_cursor, store):
        """run() fetches, then returns once the token is cancelled."""

        def stop_after_catch_up(p):
            if fetch_cursor.read() == p.latest:
                token.cancel("test")

        producer.on_state = stop_after_catch_up
        fetcher = make_fetcher()

        await fetcher.run()

        assert fetch_cursor.read() == 5
        assert not fetcher.stats["running"]
        assert list(store.root.rglob("*.tmp")) == []
        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_unreachable_source_is_fatal(self, make_fetcher, producer):
        producer.reachable = False
        fetcher = make_fetcher()

        with pytest.raises(ConfigurationError):
            await fetcher.run()

        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_unwritable_shard_directory_fails_batch(self, make_fetcher, producer, diff_dir, fetch_cursor):
        """A shard directory that cannot be created fails the batch, the loop survives."""
        producer.latest = 3
        blocker = diff_dir / "000"
        blocker.write_text("not a directory")
        fetcher = make_fetcher()

        await fetcher.run_iteration()

        assert not fetch_cursor.exists()
        assert fetcher.current_id == 0
        assert fetcher.stats["failed_batches"] == 1
        assert producer.file_requests() == []

        blocker.unlink()
        await fetcher.run_iteration()

        assert fetch_cursor.read() == 3
        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_unwritable_cursor_retries_batch(self, make_fetcher, producer, store, fetch_cursor):
        fetch_cursor.path.mkdir()
        fetcher = make_fetcher(start=0)

        await fetcher.run_iteration()

        assert fetcher.current_id == 0
        assert fetcher.stats["failed_batches"] == 1
        assert all(store.is_available(i) for i in range(1, 6))

        fetch_cursor.path.rmdir()
        producer.requests.clear()
        await fetcher.run_iteration()

        assert fetch_cursor.read() == 5
        assert producer.file_requests() == []
        await fetcher.http.close()

    @pytest.mark.asyncio
    async def test_shutdown_during_transfers(self, make_fetcher, producer, token, store, fetch_cursor):
        """Cancelling mid-transfer stops promptly and leaves no temp files."""
        producer.stall = asyncio.Event()
        fetcher = make_fetcher()

        task = asyncio.create_task(fetcher.run())
        await asyncio.wait_for(producer.stall.wait(), timeout=5)
        assert list(store.root.rglob("*.tmp")) != []

        token.cancel("test")
        await asyncio.wait_for(task, timeout=5)

        assert not fetch_cursor.exists()
        assert list(store.root.rglob("*.tmp")) == []
        assert not any(store.is_available(i) for i in range(1, 6))
        assert not fetcher.stats["running"]
        await fetcher.http.close()
