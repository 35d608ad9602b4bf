"""
Apply role: feeds published diffs into the database.

This module provides:
- applier: the batch apply loop that owns the apply cursor
- tools: apply tool, migration tool and decompressor capabilities

Invariants:
    - Sequence IDs are applied in order, without gaps
    - The apply cursor is written only after the database accepted a batch
"""

from .applier import SCRATCH_PREFIX, Applier, osc_filename
from .tools import (
    SHUTDOWN_EXIT_CODE,
    ApplyTool,
    Decompressor,
    GzipDecompressor,
    MigrationTool,
    SubprocessApplyTool,
    SubprocessMigrationTool,
    is_shutdown_exit,
)

__all__ = [
    "SCRATCH_PREFIX",
    "Applier",
    "osc_filename",
    "SHUTDOWN_EXIT_CODE",
    "ApplyTool",
    "Decompressor",
    "GzipDecompressor",
    "MigrationTool",
    "SubprocessApplyTool",
    "SubprocessMigrationTool",
    "is_shutdown_exit",
]
