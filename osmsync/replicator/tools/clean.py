"""
Retention CLI tool for the osmsync replicator.

Removes applied artifacts from a diff directory, keeping a configurable
number of sequence IDs behind the database state so a slightly older
database can still catch up from local files.

Usage:
    osmsync-clean DB_DIR DIFF_DIR [KEEP_COUNT]   (default: RETENTION_KEEP_COUNT, 360)
    osmsync-clean --all DIFF_DIR

Invariants:
    - Without --all, nothing is deleted unless the apply cursor is valid and non-zero
    - --all also removes the local fetch cursor and state document

How to change safely:
    - Keep the positional interface, cron jobs call it directly
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from ..config import RetentionConfig
from ..errors import CursorReadError, RetentionError
from ..retention import RetentionCleaner, RetentionResult
from ..store.cursor import CURSOR_FILENAME, Cursor

logger = logging.getLogger(__name__)


class DirectoryError(ValueError):
    """A directory argument is unusable."""

    pass


def validate_directory(path: str, label: str, writable: bool = False) -> Path:
    """Check that ``path`` is an accessible directory.

    Raises:
        DirectoryError: With a message naming ``label`` if it is not
    """
    if not path:
        raise DirectoryError(f"{label} parameter is required")
    directory = Path(path)
    if not directory.exists():
        raise DirectoryError(f"{label} '{path}' does not exist")
    if not directory.is_dir():
        raise DirectoryError(f"'{path}' exists but is not a directory")
    if not os.access(directory, os.R_OK):
        raise DirectoryError(f"{label} '{path}' is not readable (check permissions)")
    if writable and not os.access(directory, os.W_OK):
        raise DirectoryError(f"{label} '{path}' is not writable (check permissions)")
    return directory


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="osmsync-clean",
        description=(
            "Remove .osc.gz and .state.txt files older than the current database "
            "state minus KEEP_COUNT"
        ),
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Delete ALL downloaded files and the local fetch state (recovery)",
    )
    parser.add_argument(
        "paths",
        nargs="+",
        metavar="DIR",
        help="DB_DIR DIFF_DIR [KEEP_COUNT], or DIFF_DIR with --all",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    return parser


def run(args: argparse.Namespace) -> RetentionResult:
    """Execute the cleanup described by parsed arguments.

    Raises:
        DirectoryError: If a directory argument is unusable
        CursorReadError: If the apply cursor cannot be read
        RetentionError: If the apply cursor is 0
    """
    if args.all:
        if len(args.paths) != 1:
            raise DirectoryError("--all takes exactly one directory: DIFF_DIR")
        diff_dir = validate_directory(args.paths[0], "Local directory", writable=True)
        logger.info(f"Starting cleanup process (ALL MODE), local directory: {diff_dir}")
        return RetentionCleaner(diff_dir).purge_all()

    if len(args.paths) not in (2, 3):
        raise DirectoryError("Expected DB_DIR DIFF_DIR [KEEP_COUNT]")

    db_dir = validate_directory(args.paths[0], "Database directory")
    diff_dir = validate_directory(args.paths[1], "Local directory", writable=True)
    keep_count = RetentionConfig.from_env().keep_count
    if len(args.paths) == 3:
        if not args.paths[2].isdigit():
            raise DirectoryError(f"KEEP_COUNT must be a non-negative integer, got '{args.paths[2]}'")
        keep_count = int(args.paths[2])

    logger.info(
        "Starting cleanup process",
        extra={"db_dir": str(db_dir), "diff_dir": str(diff_dir), "keep_count": keep_count},
    )
    cleaner = RetentionCleaner(diff_dir, Cursor(db_dir / CURSOR_FILENAME, "apply"))
    return cleaner.prune(keep_count)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the retention tool."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        result = run(args)
    except DirectoryError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except (CursorReadError, RetentionError) as e:
        logger.error(f"Failed to read current database state: {e}")
        sys.exit(1)

    print("Cleanup complete")
    if result.threshold is not None:
        print(f"  Threshold: {result.threshold}")
    print(f"  Files deleted: {result.files_deleted}")
    print(f"  Directories removed: {result.dirs_removed}")
    sys.exit(0)


if __name__ == "__main__":
    main()
