"""
On-disk artifact store for replication diffs.

Each sequence ID owns a pair of files below the diff directory:

    <root>/ddd/ddd/ddd.osc.gz      compressed change file
    <root>/ddd/ddd/ddd.state.txt   key=value metadata (sequenceNumber, timestamp)

Downloads land on ``<final name>.tmp`` and are only renamed into place
after they pass verification, so a reader either sees a complete,
verified file or nothing.

Invariants:
    - Final names are only ever created by os.replace of a verified temp file
    - A file that fails verification is treated as absent
    - Verification is side-effect free

How to change safely:
    - Keep suffixes in sync with the producer's layout
    - Never relax verification without a matching change in the Applier
"""

from __future__ import annotations

import gzip
import logging
import os
import zlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..errors import IntegrityError
from .sharding import shard_parts

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"
REQUIRED_STATE_KEYS = ("sequenceNumber", "timestamp")

_CHUNK_SIZE = 1024 * 1024


def verify_change_file(path: str | Path) -> bool:
    """Check that a compressed change file is non-empty and decompresses cleanly."""
    path = Path(path)
    try:
        if path.stat().st_size == 0:
            return False
        with gzip.open(path, "rb") as fh:
            while fh.read(_CHUNK_SIZE):
                pass
        return True
    except (OSError, EOFError, zlib.error):
        return False


def verify_state_file(path: str | Path) -> bool:
    """Check that a metadata file carries every required key."""
    path = Path(path)
    try:
        if path.stat().st_size == 0:
            return False
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False

    keys = {line.split("=", 1)[0] for line in text.splitlines() if "=" in line}
    return all(key in keys for key in REQUIRED_STATE_KEYS)


class ArtifactKind(Enum):
    """The two files making up one artifact."""

    CHANGE = ".osc.gz"
    STATE = ".state.txt"

    @property
    def suffix(self) -> str:
        return self.value

    def verify(self, path: str | Path) -> bool:
        if self is ArtifactKind.CHANGE:
            return verify_change_file(path)
        return verify_state_file(path)


@dataclass(frozen=True)
class ReplicationState:
    """Parsed metadata file.

    Attributes:
        sequence_number: Sequence number declared by the producer
        timestamp: Raw timestamp value, as published (colons may be escaped)
        values: Every key=value pair found in the file
    """

    sequence_number: int
    timestamp: str
    values: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, text: str) -> ReplicationState:
        """Parse ``key=value`` lines.

        Raises:
            IntegrityError: If a required key is missing or malformed
        """
        values: dict[str, str] = {}
        for line in text.splitlines():
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            values[key.strip()] = value.strip()

        missing = [k for k in REQUIRED_STATE_KEYS if k not in values]
        if missing:
            raise IntegrityError(f"State file missing keys: {missing}")

        try:
            sequence_number = int(values["sequenceNumber"])
        except ValueError:
            raise IntegrityError(f"Invalid sequenceNumber: {values['sequenceNumber']!r}")

        return cls(
            sequence_number=sequence_number,
            timestamp=values["timestamp"],
            values=values,
        )

    @property
    def display_timestamp(self) -> str:
        """Timestamp with the producer's backslash escapes removed."""
        return self.timestamp.replace("\\", "")


@dataclass
class PublishResult:
    """Outcome of publishing the temp files of one sequence ID.

    Attributes:
        sequence_id: Sequence ID that was published
        published: Kinds renamed into place
        discarded: Kinds whose temp file failed verification and was deleted
        ok: True when nothing was discarded and both final files exist
    """

    sequence_id: int
    published: list[ArtifactKind] = field(default_factory=list)
    discarded: list[ArtifactKind] = field(default_factory=list)
    ok: bool = False


class ArtifactStore:
    """Verified access to the artifact files below a diff directory.

    Example:
        >>> store = ArtifactStore("/opt/op/diff")
        >>> store.change_path(1234567)
        PosixPath('/opt/op/diff/001/234/567.osc.gz')
        >>> store.is_available(1234567)
        False
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def artifact_path(self, sequence_id: int, kind: ArtifactKind) -> Path:
        digit1, digit2, digit3 = shard_parts(sequence_id)
        return self.root / digit1 / digit2 / f"{digit3}{kind.suffix}"

    def change_path(self, sequence_id: int) -> Path:
        return self.artifact_path(sequence_id, ArtifactKind.CHANGE)

    def state_path(self, sequence_id: int) -> Path:
        return self.artifact_path(sequence_id, ArtifactKind.STATE)

    def temp_path(self, sequence_id: int, kind: ArtifactKind) -> Path:
        final = self.artifact_path(sequence_id, kind)
        return final.with_name(final.name + TEMP_SUFFIX)

    def ensure_directory(self, sequence_id: int) -> Path:
        """Create the shard directory of a sequence ID."""
        directory = self.change_path(sequence_id).parent
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def missing_kinds(self, sequence_id: int) -> list[ArtifactKind]:
        """Kinds whose final file is absent or fails verification."""
        return [
            kind
            for kind in ArtifactKind
            if not kind.verify(self.artifact_path(sequence_id, kind))
        ]

    def is_available(self, sequence_id: int) -> bool:
        """Whether both files exist at their final names and verify."""
        return not self.missing_kinds(sequence_id)

    def publish(self, sequence_id: int) -> PublishResult:
        """Move verified temp files of a sequence ID to their final names.

        Temp files that fail verification are deleted, never published.
        Kinds without a temp file are left untouched; they count towards
        ``ok`` only if their final file already exists.
        """
        result = PublishResult(sequence_id=sequence_id)

        for kind in ArtifactKind:
            temp = self.temp_path(sequence_id, kind)
            if not temp.exists():
                continue

            if kind.verify(temp):
                os.replace(temp, self.artifact_path(sequence_id, kind))
                result.published.append(kind)
            else:
                logger.error(
                    f"{kind.name.lower()} file failed verification: ID {sequence_id}",
                    extra={"sequence_id": sequence_id, "path": str(temp)},
                )
                temp.unlink(missing_ok=True)
                result.discarded.append(kind)

        result.ok = not result.discarded and all(
            self.artifact_path(sequence_id, kind).exists() for kind in ArtifactKind
        )
        return result

    def discard_temp(self, sequence_id: int) -> None:
        """Best-effort removal of the temp files of one sequence ID."""
        for kind in ArtifactKind:
            try:
                self.temp_path(sequence_id, kind).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove temp file for ID {sequence_id}: {e}")

    def discard_all_temp(self) -> int:
        """Best-effort removal of every temp file below the root.

        Returns:
            Number of files removed
        """
        removed = 0
        if not self.root.exists():
            return removed

        for temp in self.root.rglob(f"*{TEMP_SUFFIX}"):
            try:
                temp.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Could not remove temp file {temp}: {e}")
        return removed

    def read_state(self, sequence_id: int) -> ReplicationState:
        """Parse the metadata file of a sequence ID.

        Raises:
            IntegrityError: If the file is missing or incomplete
        """
        path = self.state_path(sequence_id)
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            raise IntegrityError(f"State file missing: {path}")
        return ReplicationState.parse(text)
