"""
Disk retention for the diff directory.

Artifacts stay on disk for a while after they were applied so a database
restored from a slightly older backup can catch up without downloading
them again. Everything at or below ``apply_cursor - keep_count`` can go.

Invariants:
    - Nothing above the threshold is ever deleted
    - Retention refuses to run without a valid, non-zero apply cursor
    - Only numbered shard directories and artifact files are touched

How to change safely:
    - Keep the walk ordered and the subtree skipping by shard component
    - Test with cursors right at shard boundaries (…999 / …000)
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from ..errors import RetentionError
from ..fetch.remote_state import STATE_DOCUMENT
from ..store.cursor import CURSOR_FILENAME, Cursor
from ..store.sharding import sequence_id_from_parts, shard_parts

logger = logging.getLogger(__name__)

DEFAULT_KEEP_COUNT = 360

_SHARD_DIR = re.compile(r"^\d{3}$")
_ARTIFACT_FILE = re.compile(r"^(\d{3})\.(osc\.gz|state\.txt)$")


@dataclass
class RetentionResult:
    """Outcome of a retention run.

    Attributes:
        threshold: Highest sequence ID eligible for deletion (None for purge_all)
        files_deleted: Artifact files removed
        dirs_removed: Shard directories removed
    """

    threshold: int | None = None
    files_deleted: int = 0
    dirs_removed: int = 0


def _shard_dirs(parent: Path) -> Iterator[Path]:
    """Numbered child directories of ``parent``, in ascending order."""
    if not parent.is_dir():
        return
    for child in sorted(parent.iterdir()):
        if child.is_dir() and _SHARD_DIR.match(child.name):
            yield child


def _is_empty(path: Path) -> bool:
    return not any(path.iterdir())


class RetentionCleaner:
    """Deletes applied artifacts from a diff directory.

    Example:
        >>> cleaner = RetentionCleaner("/opt/op/diff", Cursor("/opt/op/db/replicate_id"))
        >>> result = cleaner.prune(keep_count=360)
    """

    def __init__(
        self,
        diff_dir: str | Path,
        apply_cursor: Cursor | None = None,
        fetch_cursor: Cursor | None = None,
    ) -> None:
        self.diff_dir = Path(diff_dir)
        self.apply_cursor = apply_cursor
        self.fetch_cursor = fetch_cursor or Cursor(self.diff_dir / CURSOR_FILENAME, "fetch")

    def purge_all(self) -> RetentionResult:
        """Delete every downloaded artifact and the local fetch state.

        Used for recovery, when the diff directory should start from scratch.
        """
        logger.info("Deleting ALL OSC files (recovery mode)")
        result = RetentionResult()

        for top in list(_shard_dirs(self.diff_dir)):
            for middle in _shard_dirs(top):
                result.files_deleted += sum(
                    1
                    for path in middle.iterdir()
                    if path.is_file() and _ARTIFACT_FILE.match(path.name)
                )
            shutil.rmtree(top)
            result.dirs_removed += 1

        (self.diff_dir / STATE_DOCUMENT).unlink(missing_ok=True)
        self.fetch_cursor.remove()

        logger.info(
            f"Deleted {result.files_deleted} files and removed {result.dirs_removed} directories"
        )
        return result

    def prune(self, keep_count: int = DEFAULT_KEEP_COUNT) -> RetentionResult:
        """Delete artifacts at or below ``apply cursor - keep_count``.

        Raises:
            CursorReadError: If the apply cursor is missing or corrupt
            RetentionError: If the apply cursor is 0 or keep_count is negative
        """
        if keep_count < 0:
            raise RetentionError(f"keep_count must be non-negative, got {keep_count}")
        if self.apply_cursor is None:
            raise RetentionError("An apply cursor is required to prune")

        current = self.apply_cursor.read_strict()
        if current == 0:
            raise RetentionError("Database state is 0, cannot determine what to clean")
        logger.info(f"Current database state: {current}")

        threshold = current - keep_count
        result = RetentionResult(threshold=threshold)
        if threshold <= 0:
            logger.info(f"Cleanup threshold is {threshold}, nothing to clean")
            return result

        logger.info(
            f"Cleaning OSC files older than {threshold} "
            f"(current state: {current}, keeping {keep_count} extra)"
        )
        limit1, limit2, _ = shard_parts(threshold)
        logger.debug(f"Threshold path: {'/'.join(shard_parts(threshold))}")

        for top in _shard_dirs(self.diff_dir):
            if int(top.name) > int(limit1):
                continue

            for middle in _shard_dirs(top):
                if top.name == limit1 and int(middle.name) > int(limit2):
                    continue

                result.files_deleted += self._delete_artifacts(
                    top.name, middle, threshold
                )
                if _is_empty(middle):
                    middle.rmdir()
                    result.dirs_removed += 1

            if _is_empty(top):
                top.rmdir()
                result.dirs_removed += 1

        if result.files_deleted:
            logger.info(
                f"Cleaned up {result.files_deleted} files and removed "
                f"{result.dirs_removed} empty directories"
            )
        else:
            logger.info("No files needed cleaning")
        return result

    def _delete_artifacts(self, top_name: str, middle: Path, threshold: int) -> int:
        deleted = 0
        for path in sorted(middle.iterdir()):
            match = _ARTIFACT_FILE.match(path.name)
            if match is None or not path.is_file():
                continue
            if sequence_id_from_parts(top_name, middle.name, match.group(1)) <= threshold:
                path.unlink()
                deleted += 1
        return deleted
