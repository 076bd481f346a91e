"""Persistence backends."""

from __future__ import annotations

from .base import DUPLICATE_TOLERANCE, Store, same_event
from .memory import MemoryStore
from .sql import SqlStore, create_db_engine


def open_store(db_url: str) -> Store:
    """Open the store for a URL. ``memory://`` selects the in-process store."""
    if db_url == "memory://":
        return MemoryStore()
    return SqlStore.from_url(db_url)


__all__ = [
    "DUPLICATE_TOLERANCE",
    "MemoryStore",
    "SqlStore",
    "Store",
    "create_db_engine",
    "open_store",
    "same_event",
]
