"""
Persisted replication cursors.

A cursor is a single text integer in a file: the highest sequence ID
fully processed by one role. The fetch cursor lives in the diff
directory, the apply cursor in the database directory.

Invariants:
    - Writes go to a temp file, are fsynced, then renamed over the cursor
    - A reader sees the previous value or the new one, never a fragment
    - Corrupt content is reported, never coerced to 0

How to change safely:
    - Keep the file format a bare integer; the supervisor reads it too
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from ..errors import CursorReadError

logger = logging.getLogger(__name__)

CURSOR_FILENAME = "replicate_id"


def merge_cursors(*values: int) -> int:
    """Resume point of several cursors: the furthest one."""
    if not values:
        raise ValueError("merge_cursors() needs at least one value")
    return max(values)


class Cursor:
    """Atomically updated integer cursor.

    Example:
        >>> cursor = Cursor("/opt/op/diff/replicate_id", name="fetch")
        >>> cursor.write(5)
        >>> cursor.read()
        5
    """

    def __init__(self, path: str | Path, name: str = "cursor") -> None:
        self.path = Path(path)
        self.name = name

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> int:
        """Read the cursor, treating a missing or empty file as 0.

        Raises:
            CursorReadError: If the file holds anything but a non-negative integer
        """
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise CursorReadError(f"Cannot read {self.name} cursor {self.path}: {e}")

        if not text:
            return 0
        return self._parse(text)

    def read_strict(self) -> int:
        """Read the cursor, treating a missing or empty file as an error.

        Raises:
            CursorReadError: If the file is missing, empty or invalid
        """
        if not self.path.exists():
            raise CursorReadError(f"{self.name} cursor {self.path} does not exist")
        if not self.path.is_file():
            raise CursorReadError(f"{self.name} cursor {self.path} is not a regular file")

        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise CursorReadError(f"Cannot read {self.name} cursor {self.path}: {e}")

        if not text:
            raise CursorReadError(f"{self.name} cursor {self.path} is empty")
        return self._parse(text)

    def write(self, value: int) -> None:
        """Persist a new value atomically."""
        if value < 0:
            raise ValueError(f"Cursor value must be non-negative, got {value}")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent),
            prefix=f".{self.path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(f"{value}\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        logger.debug(f"{self.name} cursor updated", extra={"cursor": self.name, "value": value})

    def remove(self) -> bool:
        """Delete the cursor file. Returns whether a file was removed."""
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False

    def _parse(self, text: str) -> int:
        if not (text.isascii() and text.isdigit()):
            raise CursorReadError(f"{self.name} cursor {self.path} contains invalid data: {text!r}")
        return int(text)

    def __repr__(self) -> str:
        return f"Cursor(name={self.name!r}, path={str(self.path)!r})"
