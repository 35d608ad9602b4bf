"""
Sequence ID to shard path mapping.

A sequence ID is decomposed in base 1000 into three zero-padded
components, most significant first:

    1234567 -> 001/234/567

This bounds every directory level to 1000 entries and covers IDs in
[0, 1_000_000_000).

Invariants:
    - The mapping is a bijection over the supported range
    - Fetcher, Applier and Retention all use these functions
"""

from __future__ import annotations

import re
from pathlib import PurePath

SHARD_BASE = 1000
MAX_SEQUENCE_ID = SHARD_BASE**3 - 1

_COMPONENT = re.compile(r"^\d{3}$")
_ARTIFACT_SUFFIXES = (".osc.gz", ".state.txt")


def shard_parts(sequence_id: int) -> tuple[str, str, str]:
    """Split a sequence ID into its three path components.

    Raises:
        ValueError: If the ID is outside the supported range
    """
    if not 0 <= sequence_id <= MAX_SEQUENCE_ID:
        raise ValueError(f"Sequence ID out of range: {sequence_id}")

    digit3 = sequence_id % SHARD_BASE
    digit2 = (sequence_id // SHARD_BASE) % SHARD_BASE
    digit1 = sequence_id // (SHARD_BASE * SHARD_BASE)
    return f"{digit1:03d}", f"{digit2:03d}", f"{digit3:03d}"


def shard_path(sequence_id: int) -> str:
    """Return the relative shard path of a sequence ID, e.g. ``001/234/567``."""
    return "/".join(shard_parts(sequence_id))


def sequence_id_from_parts(digit1: str, digit2: str, digit3: str) -> int:
    """Rebuild a sequence ID from its three path components."""
    for part in (digit1, digit2, digit3):
        if not _COMPONENT.match(part):
            raise ValueError(f"Invalid shard component: {part!r}")
    return (int(digit1) * SHARD_BASE + int(digit2)) * SHARD_BASE + int(digit3)


def sequence_id_from_path(path: str | PurePath) -> int:
    """Inverse of :func:`shard_path`.

    Accepts the bare shard path or an artifact path ending in one of the
    artifact suffixes. Only the last three components are considered, so
    absolute paths below a diff directory work as well.

    Raises:
        ValueError: If the path does not end in a shard path
    """
    text = PurePath(path).as_posix()
    for suffix in _ARTIFACT_SUFFIXES:
        if text.endswith(suffix):
            text = text[: -len(suffix)]
            break

    parts = text.split("/")
    if len(parts) < 3:
        raise ValueError(f"Not a shard path: {path!s}")
    return sequence_id_from_parts(*parts[-3:])
