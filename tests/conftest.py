"""
Shared fixtures for the osmsync replicator tests.

Artifacts are generated on the fly: a change file is a small gzip
document naming its sequence ID, a state file carries the two keys the
store requires.
"""

import gzip
import tempfile
from pathlib import Path

import pytest

from osmsync.replicator.store.artifacts import ArtifactKind, ArtifactStore


def change_bytes(sequence_id: int) -> bytes:
    body = f'<osmChange version="0.6"><!-- {sequence_id} --></osmChange>\n'
    return gzip.compress(body.encode("utf-8"))


def state_text(sequence_id: int) -> str:
    return (
        "#Sat Oct 18 12:00:00 UTC 2026\n"
        f"sequenceNumber={sequence_id}\n"
        f"timestamp=2026-10-18T12\\:{sequence_id % 60:02d}\\:00Z\n"
    )


def write_artifact(store: ArtifactStore, sequence_id: int) -> None:
    store.ensure_directory(sequence_id)
    store.artifact_path(sequence_id, ArtifactKind.CHANGE).write_bytes(change_bytes(sequence_id))
    store.artifact_path(sequence_id, ArtifactKind.STATE).write_text(state_text(sequence_id))


@pytest.fixture
def diff_dir():
    """Create temporary diff directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_dir():
    """Create temporary database directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(diff_dir):
    """Artifact store over the temporary diff directory."""
    return ArtifactStore(diff_dir)


@pytest.fixture
def make_artifact(store):
    """Write a valid artifact pair for each given sequence ID."""

    def _make(*sequence_ids: int) -> None:
        for sequence_id in sequence_ids:
            write_artifact(store, sequence_id)

    return _make


@pytest.fixture
def artifact_bytes():
    """Producer-side content of an artifact file."""

    def _content(sequence_id: int, kind: ArtifactKind) -> bytes:
        if kind is ArtifactKind.CHANGE:
            return change_bytes(sequence_id)
        return state_text(sequence_id).encode("utf-8")

    return _content
