"""
Fetch role: mirrors the producer's replication diffs into the diff directory.

This module provides:
- http: pooled HTTP transfers with categorized, bounded retries
- remote_state: latest sequence ID with outage vs misconfiguration handling
- fetcher: the batch download loop that owns the fetch cursor

Invariants:
    - The fetch cursor only moves past IDs whose artifacts are published
    - A batch never partially advances the cursor
"""

from .fetcher import Fetcher
from .http import HttpFetcher, HttpxFetcher, classify_error, is_retryable
from .remote_state import (
    STATE_DOCUMENT,
    RemoteStateClient,
    SourceState,
    StateParseError,
    parse_sequence_number,
)

__all__ = [
    "Fetcher",
    "HttpFetcher",
    "HttpxFetcher",
    "classify_error",
    "is_retryable",
    "STATE_DOCUMENT",
    "RemoteStateClient",
    "SourceState",
    "StateParseError",
    "parse_sequence_number",
]
