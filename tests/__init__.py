"""
TopoDB Test Suite.

This package contains:
- unit/: Unit tests (store, locks, config; SQLite temp files only)
- integration/: Integration tests (cascade, queries, HTTP API end to end)
"""
