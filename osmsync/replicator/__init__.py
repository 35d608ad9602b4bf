"""
osmsync replicator - keeps a local database in step with a replication diff stream.

This package implements the replication sequence pipeline:
- Fetcher: downloads numbered diff artifacts from the producer
- Applier: applies contiguous artifacts to the database in batches
- Retention: reclaims disk space for artifacts that were already applied

Architecture:
    ┌──────────────┐     ┌─────────────┐     ┌──────────────────┐
    │   Producer   │────▶│   Fetcher   │────▶│  Diff directory  │
    │ (state.txt)  │ HTTP│  (batches)  │     │  ddd/ddd/ddd.*   │
    └──────────────┘     └─────────────┘     └────────┬─────────┘
                                                      │
                                 ┌────────────────────┼───────────────┐
                                 │                                    │
                                 ▼                                    ▼
                           ┌─────────┐                          ┌───────────┐
                           │ Applier │─────▶ update_from_dir    │ Retention │
                           └─────────┘                          └───────────┘

Invariants:
    - Sequence IDs are processed in increasing order, without gaps
    - A cursor only advances after a whole batch succeeded
    - Artifacts are published by atomic rename after verification
    - Fetcher and Applier only share the filesystem

How to change safely:
    - Keep the shard path scheme identical across all roles
    - Never write a cursor file without temp + rename
    - Test crash/restart scenarios for every new failure path

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
