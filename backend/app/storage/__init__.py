"""Persistence port and its DuckDB implementation.

Usage:
    from app.storage import DuckDBStore, PersistenceStore

    store: PersistenceStore = DuckDBStore(":memory:")
"""
from .base import (
    AttachmentRepository,
    ConversationRepository,
    PersistenceStore,
    TurnRepository,
)
from .duckdb_store import DuckDBStore

__all__ = [
    "AttachmentRepository",
    "ConversationRepository",
    "DuckDBStore",
    "PersistenceStore",
    "TurnRepository",
]
