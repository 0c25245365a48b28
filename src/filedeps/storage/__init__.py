# Storage package

from .base import EdgeSnapshot, GraphStore, StorageBackend, get_storage
from .sqlite import SQLiteStorage

__all__ = [
    "EdgeSnapshot",
    "GraphStore",
    "SQLiteStorage",
    "StorageBackend",
    "get_storage",
]
