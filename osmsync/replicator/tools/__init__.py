"""
Operational tools for the osmsync replicator.

Tools:
- clean: retention of applied diffs (osmsync-clean)
"""
