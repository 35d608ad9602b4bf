"""
Error taxonomy for the replication pipeline.

Invariants:
    - ConfigurationError and ShutdownRequested are the only errors that
      end a running loop; everything else is retried locally
    - Transport errors carry a categorized reason for the logs

How to change safely:
    - New errors must subclass ReplicationError
    - Decide explicitly whether a new error is fatal or retried
"""

from __future__ import annotations


class ReplicationError(Exception):
    """Base exception for replication operations."""

    pass


class ConfigurationError(ReplicationError):
    """The replication source has never been reachable.

    Raised before the first successful contact with the producer, where a
    failure looks like a setup mistake rather than an outage.
    """

    pass


class TransientNetworkError(ReplicationError):
    """Network failure that is expected to clear on its own."""

    pass


class TransportError(TransientNetworkError):
    """A single HTTP transfer failed.

    Attributes:
        reason: Failure category (dns, connect, timeout, tls, http_status,
            partial_transfer, empty_reply, write, protocol)
        url: URL of the failed transfer
        status_code: HTTP status for http_status failures
    """

    def __init__(
        self, reason: str, url: str, detail: str = "", status_code: int | None = None
    ) -> None:
        self.reason = reason
        self.url = url
        self.detail = detail
        self.status_code = status_code
        message = f"{reason}: {url}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class IntegrityError(ReplicationError):
    """An artifact file failed verification."""

    pass


class PartialBatchError(ReplicationError):
    """Some artifacts of a batch could not be published."""

    def __init__(self, start: int, end: int, failed_ids: list[int]) -> None:
        self.start = start
        self.end = end
        self.failed_ids = failed_ids
        super().__init__(
            f"Batch ({start}, {end}] incomplete: {len(failed_ids)} artifact(s) not published"
        )


class GapError(ReplicationError):
    """The next required artifact is not present yet.

    Not a failure: callers treat it as a signal to wait.
    """

    def __init__(self, sequence_id: int) -> None:
        self.sequence_id = sequence_id
        super().__init__(f"OSC file {sequence_id} not available yet")


class CursorReadError(ReplicationError):
    """A persisted cursor is missing or does not hold a valid integer."""

    pass


class BatchPreparationError(ReplicationError):
    """A batch could not be decompressed into the scratch area."""

    pass


class ApplyToolFailure(ReplicationError):
    """The external apply tool exited with a failure code."""

    def __init__(self, exit_code: int) -> None:
        self.exit_code = exit_code
        super().__init__(f"Apply tool failed with exit code {exit_code}")


class MigrationError(ReplicationError):
    """The one-time database migration did not complete."""

    pass


class RetentionError(ReplicationError):
    """Retention refused to run."""

    pass


class LockHeldError(ReplicationError):
    """Another live process holds the role lock."""

    def __init__(self, path: str, pid: int) -> None:
        self.path = path
        self.pid = pid
        if pid > 0:
            super().__init__(f"Lock {path} is held by running process {pid}")
        else:
            super().__init__(f"Lock {path} has no readable owner yet, another process is taking it")


class ShutdownRequested(ReplicationError):
    """Cooperative shutdown, from a signal or from the apply tool.

    Attributes:
        exit_code: Process exit code to report to the supervisor
    """

    def __init__(self, message: str = "Shutdown requested", exit_code: int = 0) -> None:
        self.exit_code = exit_code
        super().__init__(message)
