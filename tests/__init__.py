"""
s2-cli Test Suite.

This package contains:
- unit/: Unit tests (types, batching, sources, transports, config)
- integration/: Session and command line tests against the in-memory stream
"""
