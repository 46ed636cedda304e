"""
Persistence module.

This module stores vector indexes in SQLite so they survive restarts and can
be updated incrementally.
"""

from vaultsearch.persistence.store import SCHEMA_VERSION, VectorIndexStore

__all__ = ["SCHEMA_VERSION", "VectorIndexStore"]
