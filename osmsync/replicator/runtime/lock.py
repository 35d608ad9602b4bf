"""
PID-stamped lock file for a replication role.

Only one Fetcher and one Applier may work on a directory at a time. The
lock file holds the PID of its owner; a lock whose owner is no longer
alive is stale and gets reclaimed.

Invariants:
    - The lock file appears with its PID already written (hard link of a
      fully written temp file), so a reader never sees a half-made lock
    - A lock without a readable PID counts as held until it is older than
      UNREADABLE_GRACE_SECONDS
    - Release only removes a lock owned by this process
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from pathlib import Path

from ..errors import LockHeldError

logger = logging.getLogger(__name__)

UNREADABLE_GRACE_SECONDS = 30.0


def pid_alive(pid: int) -> bool:
    """Whether a process with this PID exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    return True


class PidLock:
    """Exclusive per-role lock file.

    Example:
        >>> with PidLock("/opt/op/diff/fetch.pid"):
        ...     await fetcher.run()
    """

    def __init__(
        self,
        path: str | Path,
        pid: int | None = None,
        grace_seconds: float = UNREADABLE_GRACE_SECONDS,
    ) -> None:
        self.path = Path(path)
        self.pid = pid if pid is not None else os.getpid()
        self.grace_seconds = grace_seconds
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def read_owner(self) -> int | None:
        """PID stored in the lock file, or None if absent or unreadable."""
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        if text.isascii() and text.isdigit():
            return int(text)
        return None

    def lock_age(self) -> float | None:
        """Seconds since the lock file was last modified, None if absent."""
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def acquire(self) -> None:
        """Take the lock, reclaiming it if the previous owner died.

        Raises:
            LockHeldError: If a live process holds the lock, or an unreadable
                lock is still within its grace period
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        for _ in range(2):
            if self._link_new_lock():
                self._held = True
                return

            owner = self.read_owner()
            if owner is None:
                age = self.lock_age()
                if age is None:
                    continue
                if age < self.grace_seconds:
                    raise LockHeldError(str(self.path), -1)
            elif owner != self.pid and pid_alive(owner):
                raise LockHeldError(str(self.path), owner)

            logger.warning(
                "Removing stale lock file",
                extra={"path": str(self.path), "stale_pid": owner},
            )
            self.path.unlink(missing_ok=True)

        raise LockHeldError(str(self.path), self.read_owner() or -1)

    def _link_new_lock(self) -> bool:
        """Publish a lock file holding our PID. False if one already exists."""
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(f"{self.pid}\n")
                fh.flush()
                os.fsync(fh.fileno())
            try:
                os.link(tmp_path, self.path)
            except FileExistsError:
                return False
            return True
        finally:
            os.unlink(tmp_path)

    def release(self) -> None:
        if not self._held:
            return
        if self.read_owner() == self.pid:
            self.path.unlink(missing_ok=True)
        self._held = False

    def __enter__(self) -> PidLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
