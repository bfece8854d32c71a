"""
Docbase - data-access core of a schema-flexible document backend.

This package implements:
- A Schema Engine: an authoritative, reloadable registry of class schemas
  whose field types are inferred from client writes and committed once
- Class-level permissions (CLP) and row-level ACL scoping
- A Query Engine that desugars nested query operators ($select, $inQuery,
  ...) into primitive ones and expands pointer includes

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Caller    │────▶│  RestQuery  │────▶│  SchemaStore    │
    │ (CLI, HTTP) │     │  pipeline   │     │  (type registry)│
    └─────────────┘     └──────┬──────┘     └────────┬────────┘
                               │                     │
                               ▼                     ▼
                        ┌─────────────────────────────────────┐
                        │   DocumentStore (SQLite / memory)   │
                        └─────────────────────────────────────┘

Invariants:
    - Field types are append-only; a committed type never changes
    - At most one GeoPoint field per class
    - Desugared where trees hold no nested query operators
    - Every validation failure raises a DocbaseError subclass

How to change safely:
    - Persisted storage tokens ("string", "*Team", "relation<_User>") are
      part of the on-disk format and must not change
    - Error codes are part of the client contract

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
