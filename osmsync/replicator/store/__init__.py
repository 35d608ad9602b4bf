"""
Filesystem state shared by the replication roles.

This module provides:
- sharding: sequence ID <-> ddd/ddd/ddd path mapping
- artifacts: verified publish/discard of diff artifact pairs
- cursor: atomically persisted per-role cursors
- batch: contiguous (start, end] ranges of sequence IDs

Invariants:
    - The filesystem is the only coordination medium between roles
    - Every visible artifact has passed verification
"""

from .artifacts import (
    ArtifactKind,
    ArtifactStore,
    PublishResult,
    ReplicationState,
    verify_change_file,
    verify_state_file,
)
from .batch import Batch
from .cursor import CURSOR_FILENAME, Cursor, merge_cursors
from .sharding import (
    MAX_SEQUENCE_ID,
    sequence_id_from_parts,
    sequence_id_from_path,
    shard_parts,
    shard_path,
)

__all__ = [
    "ArtifactKind",
    "ArtifactStore",
    "Batch",
    "PublishResult",
    "ReplicationState",
    "verify_change_file",
    "verify_state_file",
    "CURSOR_FILENAME",
    "Cursor",
    "merge_cursors",
    "MAX_SEQUENCE_ID",
    "sequence_id_from_parts",
    "sequence_id_from_path",
    "shard_parts",
    "shard_path",
]
