"""
Docbase Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, pure helpers)
- integration/: Integration tests (query pipeline, SQLite, CLI)
"""
