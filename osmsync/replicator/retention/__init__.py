"""
Retention: reclaims disk space in the diff directory.

Applied artifacts are deleted once they fall more than ``keep_count``
sequence IDs behind the apply cursor; ``purge_all`` resets the directory
for recovery.
"""

from .cleaner import DEFAULT_KEEP_COUNT, RetentionCleaner, RetentionResult

__all__ = [
    "DEFAULT_KEEP_COUNT",
    "RetentionCleaner",
    "RetentionResult",
]
