"""
Persistence layer for the memory engines.

Provides:
- Async, row-set oriented store interface
- SQLite implementation with vector ordering and upserts
"""

from .base import PersistenceStore
from .sqlite_store import SQLiteMemoryStore

__all__ = [
    "PersistenceStore",
    "SQLiteMemoryStore",
]
