"""
Profile store adapters.

This module provides one adapter per backing store, all behind the
ProfileStore interface:
- RelationalStore (PostgreSQL/SQLite via SQLAlchemy, strong schema)
- DocumentStore (schemaless JSON documents via SQLAlchemy)
- HierarchicalStore (Redis tree of profile nodes, push on write)
- InMemoryProfileStore (single process, any role)

Configure via STORE_BACKEND environment variable:
- "sql" (default; RELATIONAL_DATABASE_URL, DOCUMENT_DATABASE_URL, REDIS_URL)
- "memory"
"""

from .base import (
    CRITICAL_STORES,
    DOCUMENT,
    HIERARCHICAL,
    PREFERENCE_ORDER,
    RELATIONAL,
    ProfileStore,
    StoreWrite,
    build_profile_stores,
)
from .document_store import DocumentStore
from .memory_store import InMemoryProfileStore
from .postgres_store import RelationalStore
from .redis_store import HierarchicalStore

__all__ = [
    "CRITICAL_STORES",
    "DOCUMENT",
    "HIERARCHICAL",
    "PREFERENCE_ORDER",
    "RELATIONAL",
    "ProfileStore",
    "StoreWrite",
    "build_profile_stores",
    "DocumentStore",
    "HierarchicalStore",
    "InMemoryProfileStore",
    "RelationalStore",
]
