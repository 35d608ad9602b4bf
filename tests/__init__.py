"""
osmsync replicator test suite.

This package contains:
- unit/: Unit tests (filesystem only, no network, no subprocesses)
- integration/: Integration tests (fetcher over httpx.MockTransport,
  applier with fake and shell-script tools, retention CLI)
"""
